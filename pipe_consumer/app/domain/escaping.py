"""Printable rendering of opaque byte strings such as queue names.

Uses the rabbitmqctl convention: control bytes and DEL become a backslash
followed by three octal digits. The backslash is escaped the same way so that
`unescape_bytes(stringify_bytes(b)) == b` for every input.
"""
from __future__ import annotations

import re

_ESCAPE_RE = re.compile(r"\\([0-3][0-7]{2})")


def _needs_escape(byte: int) -> bool:
    return byte < 32 or byte == 127 or byte == 0x5C


def stringify_bytes(data: bytes) -> str:
    parts = []
    for byte in data:
        if _needs_escape(byte):
            parts.append("\\%03o" % byte)
        else:
            parts.append(chr(byte))
    return "".join(parts)


def unescape_bytes(text: str) -> bytes:
    decoded = _ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), text)
    return decoded.encode("latin-1")
