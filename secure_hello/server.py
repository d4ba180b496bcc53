"""Process entry point: listeners, graceful shutdown and crash handling.

One asyncio loop runs a uvicorn server per listener:
- plain HTTP on HOST:PORT (bind failure is fatal, exit code 1)
- optionally TLS on HOST:HTTPS_PORT (any failure is logged and the process
  continues HTTP-only)

SIGTERM/SIGINT stop every listener from accepting, let in-flight requests
finish and exit 0 once all listeners have closed; if they have not closed
within SHUTDOWN_TIMEOUT_SECONDS the process exits 1. Uncaught exceptions and
unhandled asynchronous failures are logged and exit 1.

Usage:
    python -m secure_hello     # or the ``secure-hello`` console script
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import signal
import socket
import sys
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Iterator

import uvicorn
from fastapi import FastAPI

from secure_hello.core.app_factory import create_app
from secure_hello.core.config import Settings, get_settings
from secure_hello.core.errors import CertificateError, ListenerError
from secure_hello.core.logging import configure_logging
from secure_hello.core.tls import MIN_TLS_VERSION, create_server_context, load_certificates

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

SECURITY_FEATURES = (
    "Rate limiting (per-client fixed window)",
    "Security headers (CSP, HSTS, framing, cross-origin isolation)",
    "CORS protection (origin whitelist)",
    "Body parsing with size limits",
)


class ManagedServer(uvicorn.Server):
    """uvicorn server whose signals are handled by ServerLifecycle."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


@dataclass
class Listener:
    """A bound socket and the server that will accept on it."""

    name: str
    sock: socket.socket
    server: ManagedServer
    url: str

    async def serve(self) -> None:
        await self.server.serve(sockets=[self.sock])
        logger.info("listener.closed", extra={"listener": self.name})


def _bind_error_message(exc: OSError, host: str, port: int) -> str:
    bind = f"Port {port}"
    if exc.errno == errno.EADDRINUSE:
        return f"{bind} is already in use"
    if exc.errno == errno.EACCES:
        if port < 1024:
            return f"{bind} requires elevated privileges (ports below 1024 are privileged)"
        return f"Permission denied binding {bind.lower()}"
    if exc.errno == errno.EADDRNOTAVAIL:
        return f"Address {host} is not available on this host"
    return f"Cannot bind {host}:{port}: {exc.strerror or exc}"


def bind_socket(host: str, port: int) -> socket.socket:
    """Create a bound TCP socket for ``host:port``.

    Raises:
        ListenerError: With a descriptive message when the bind fails.
    """

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise ListenerError(
            message=_bind_error_message(exc, host, port),
            details={"port": port, "errno": exc.errno or 0},
        ) from exc
    sock.set_inheritable(True)
    return sock


def _server_config(app: FastAPI, host: str, port: int) -> uvicorn.Config:
    return uvicorn.Config(
        app,
        host=host,
        port=port,
        lifespan="off",
        log_config=None,
        proxy_headers=False,
        server_header=False,
    )


def create_http_listener(app: FastAPI, settings: Settings) -> Listener:
    host, port = settings.server.host, settings.server.port
    sock = bind_socket(host, port)
    server = ManagedServer(_server_config(app, host, port))
    return Listener(name="http", sock=sock, server=server, url=f"http://{host}:{port}/")


def create_https_listener(app: FastAPI, settings: Settings) -> Listener:
    """Load TLS material, then bind the TLS port.

    Raises:
        CertificateError: Key or certificate unusable.
        ListenerError: TLS port cannot be bound.
    """

    host, port = settings.server.host, settings.server.https_port
    logger.info("https.initializing", extra={"port": port})

    bundle = load_certificates(settings.server.ssl_key_path, settings.server.ssl_cert_path)
    context = create_server_context(bundle)
    sock = bind_socket(host, port)

    config = _server_config(app, host, port)
    config.load()
    config.ssl = context
    config.ssl_keyfile = str(bundle.key_path)
    config.ssl_certfile = str(bundle.cert_path)

    return Listener(
        name="https",
        sock=sock,
        server=ManagedServer(config),
        url=f"https://{host}:{port}/",
    )


@dataclass
class ServerLifecycle:
    """Runs the listeners and joins on all of them closing."""

    listeners: list[Listener]
    shutdown_timeout: float
    exit_code: int = 0
    _shutdown: asyncio.Event = field(default_factory=asyncio.Event)

    def request_shutdown(self, reason: str, *, fatal: bool = False) -> None:
        if self._shutdown.is_set():
            if fatal:
                self.exit_code = 1
            return

        if fatal:
            self.exit_code = 1
        logger.info("shutdown.started", extra={"reason": reason})
        for listener in self.listeners:
            listener.server.should_exit = True
        self._shutdown.set()

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        """Unhandled asynchronous failure: log it and shut down with exit code 1."""

        exc = context.get("exception")
        logger.critical(
            "unhandled_async_error",
            extra={"detail": context.get("message", "")},
            exc_info=exc if isinstance(exc, BaseException) else None,
        )
        self.request_shutdown("unhandled asynchronous error", fatal=True)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(
                    sig,
                    lambda signum, _frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signal.Signals(signum).name
                    ),
                )

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self.handle_loop_exception)
        self.install_signal_handlers(loop)

        serving = asyncio.gather(*(listener.serve() for listener in self.listeners))
        shutdown_requested = asyncio.ensure_future(self._shutdown.wait())

        await asyncio.wait({serving, shutdown_requested}, return_when=asyncio.FIRST_COMPLETED)

        if serving.done():
            shutdown_requested.cancel()
            serving.result()
            return self.exit_code

        try:
            await asyncio.wait_for(asyncio.shield(serving), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "shutdown.forced",
                extra={"timeout_s": self.shutdown_timeout},
            )
            for listener in self.listeners:
                listener.server.force_exit = True
            return 1

        logger.info("shutdown.completed", extra={"exit_code": self.exit_code})
        return self.exit_code


def _log_startup(listeners: list[Listener]) -> None:
    for listener in listeners:
        extra: dict[str, Any] = {"listener": listener.name, "url": listener.url}
        if listener.name == "https":
            extra["tls_min_version"] = MIN_TLS_VERSION.name
        logger.info("listener.started", extra=extra)
    logger.info("security.features", extra={"features": list(SECURITY_FEATURES)})


def build_listeners(app: FastAPI, settings: Settings) -> list[Listener]:
    """Bind the plain listener and, when enabled, the TLS listener.

    Raises:
        ListenerError: When the plain listener cannot bind.
    """

    listeners = [create_http_listener(app, settings)]

    if settings.server.enable_https:
        try:
            listeners.append(create_https_listener(app, settings))
        except (CertificateError, ListenerError) as exc:
            logger.error(
                "https.unavailable",
                extra={
                    "error_msg": exc.message,
                    "hint": (exc.details or {}).get("hint", ""),
                    "fallback": "continuing with HTTP server only",
                },
            )

    return listeners


async def serve(app: FastAPI, settings: Settings) -> int:
    """Run all listeners until shutdown; returns the process exit code."""

    listeners = build_listeners(app, settings)
    _log_startup(listeners)
    lifecycle = ServerLifecycle(
        listeners=listeners,
        shutdown_timeout=settings.server.shutdown_timeout_seconds,
    )
    return await lifecycle.run()


def _log_uncaught(
    exc_type: type[BaseException],
    exc: BaseException,
    tb: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("uncaught_exception", exc_info=(exc_type, exc, tb))


def main() -> None:
    """Start the server; exits with the lifecycle's exit code."""

    settings = get_settings()
    configure_logging(settings.log)
    sys.excepthook = _log_uncaught

    app = create_app(settings, configure_logs=False)

    try:
        exit_code = asyncio.run(serve(app, settings))
    except ListenerError as exc:
        logger.critical("listener.bind_failed", extra={"error_msg": exc.message})
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
