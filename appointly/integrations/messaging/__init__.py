from .loggingTransport import LoggingTransport

__all__ = ["LoggingTransport"]
