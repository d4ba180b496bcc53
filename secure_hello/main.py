"""ASGI application for external servers (``uvicorn secure_hello.main:app``)."""

from secure_hello.core.app_factory import create_app
from secure_hello.core.config import get_settings

app = create_app(get_settings())
