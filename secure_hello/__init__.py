"""Hello, World! HTTP/HTTPS service behind a security middleware stack."""

__version__ = "1.0.0"
