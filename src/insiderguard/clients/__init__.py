from insiderguard.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from insiderguard.clients.mail import HttpMailClient

__all__ = ["BaseHTTPClient", "HttpMailClient", "PermanentHTTPError", "RetryableHTTPError"]
