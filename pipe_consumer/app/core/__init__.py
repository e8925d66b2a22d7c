SERVICE_NAME = "pipe-consumer"
