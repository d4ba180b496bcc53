"""TLS material loading for the HTTPS listener.

Key and certificate are read synchronously at startup, before any listener
binds, and checked for existence, readability and content. Every failure is
raised as CertificateError with remediation guidance, so the caller can
fall back to plain HTTP.
"""

from __future__ import annotations

import errno
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path

from secure_hello.core.config import DEFAULT_CERT_PATH, DEFAULT_KEY_PATH
from secure_hello.core.errors import CertificateError

logger = logging.getLogger(__name__)

MIN_TLS_VERSION = ssl.TLSVersion.TLSv1_2

REMEDIATION_HINT = (
    "Set SSL_KEY_PATH and SSL_CERT_PATH, or place certificates at "
    f"{DEFAULT_KEY_PATH} and {DEFAULT_CERT_PATH}"
)


@dataclass(frozen=True)
class CertificateBundle:
    """Resolved key/certificate paths with their PEM contents."""

    key_path: Path
    cert_path: Path
    key: bytes
    cert: bytes


def _read_material(path: Path, label: str) -> bytes:
    if not path.exists():
        raise CertificateError(
            message=f"SSL {label} file not found at {path}",
            details={"hint": REMEDIATION_HINT, "path": str(path)},
        )
    try:
        data = path.read_bytes()
    except IsADirectoryError as exc:
        raise CertificateError(
            message=f"SSL {label} path points to a directory instead of a file: {path}",
            details={"hint": REMEDIATION_HINT, "path": str(path), "errno": exc.errno},
        ) from exc
    except PermissionError as exc:
        raise CertificateError(
            message=f"Permission denied when reading SSL {label} file: {path}",
            details={"hint": "Check file permissions", "path": str(path), "errno": exc.errno},
        ) from exc
    except OSError as exc:
        raise CertificateError(
            message=f"Failed to read SSL {label} file {path}: {exc.strerror or exc}",
            details={"hint": REMEDIATION_HINT, "path": str(path), "errno": exc.errno or errno.EIO},
        ) from exc

    if not data.strip():
        raise CertificateError(
            message=f"SSL {label} file is empty: {path}",
            details={"hint": REMEDIATION_HINT, "path": str(path)},
        )
    return data


def load_certificates(key_path: str, cert_path: str) -> CertificateBundle:
    """Read and sanity-check the private key and certificate.

    Args:
        key_path: PEM private key path (relative paths resolve from the CWD).
        cert_path: PEM certificate path.

    Raises:
        CertificateError: When either file is missing, unreadable or empty.
    """

    resolved_key = Path(key_path).expanduser().resolve()
    resolved_cert = Path(cert_path).expanduser().resolve()

    key = _read_material(resolved_key, "private key")
    cert = _read_material(resolved_cert, "certificate")
    return CertificateBundle(key_path=resolved_key, cert_path=resolved_cert, key=key, cert=cert)


def harden_context(context: ssl.SSLContext) -> ssl.SSLContext:
    """Refuse anything older than TLS 1.2."""

    context.minimum_version = MIN_TLS_VERSION
    return context


def create_server_context(bundle: CertificateBundle) -> ssl.SSLContext:
    """Build a server-side SSL context from a loaded bundle.

    Raises:
        CertificateError: When the PEM material is not a usable key pair.
    """

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    harden_context(context)
    try:
        context.load_cert_chain(certfile=str(bundle.cert_path), keyfile=str(bundle.key_path))
    except (ssl.SSLError, OSError) as exc:
        raise CertificateError(
            message=f"Invalid SSL key or certificate: {exc}",
            details={"hint": REMEDIATION_HINT},
        ) from exc
    return context
