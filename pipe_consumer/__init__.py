__app_name__ = "pipe-consumer"
__version__ = "0.1.0"
