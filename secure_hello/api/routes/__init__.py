from __future__ import annotations

from secure_hello.api.routes.health import router as health_router
from secure_hello.api.routes.hello import router as hello_router

__all__ = ["health_router", "hello_router"]
