"""Constants shared across modules."""
from __future__ import annotations

# Every operation runs on one channel.
CHANNEL_ID = 1

# basic.qos prefetch-count is a short.
MAX_PREFETCH_COUNT = 65535

# Per-frame overhead: type, channel, size, frame-end.
FRAME_OVERHEAD = 8

STAGE_SEPARATOR = "|"


class DISPATCHER_STATE:
    SETUP = "SETUP"
    QOS_SET = "QOS_SET"
    CONSUMING = "CONSUMING"
    WAITING = "WAITING"
    DISPATCHING = "DISPATCHING"
    DONE = "DONE"
