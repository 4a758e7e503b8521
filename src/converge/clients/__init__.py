from converge.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from converge.clients.digitalocean import DigitalOceanClient

__all__ = ["BaseHTTPClient", "DigitalOceanClient", "PermanentHTTPError", "RetryableHTTPError"]
