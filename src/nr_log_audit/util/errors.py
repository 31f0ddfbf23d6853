from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional, Tuple


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    INVALID_CREDENTIAL = 3
    PAGINATION_STALLED = 4
    FATAL_TRUST = 5
    RUNTIME_ERROR = 6


CERT_ERROR_HELP = """
Uh oh, it looks like you're behind an HTTPS proxy with a self-signed or internal
certificate, which makes requests to the New Relic API fail TLS verification.
CAUTION: Someone could be maliciously intercepting your network traffic.
If you're sure this is a trusted proxy, you can work around this issue
in two ways:
1. Recommended: point the tool at a PEM file containing your proxy's
   certificate chain:
	nr-log-audit run --ca-bundle proxy-ca-root-cert.pem
   (or set REQUESTS_CA_BUNDLE=proxy-ca-root-cert.pem)
2. Unadvisable: pass --insecure (or set NR_AUDIT_INSECURE=1) to disable
   certificate verification. This removes all protection against traffic
   interception, including theft of your API key.
"""


class AuditError(Exception):
    """Base error for the log audit pipeline."""


class ConfigError(AuditError):
    """Raised for configuration or argument issues."""


class InvalidCredentialError(AuditError):
    """Raised when the API key cannot list any account."""


class FatalTrustError(AuditError):
    """Raised when TLS certificate validation fails in a way retrying cannot fix."""

    help_text = CERT_ERROR_HELP


class PaginationStalledError(AuditError):
    """
    Raised when a paginated listing stops making progress.
    partial carries the records gathered before the stall, when the listing hands them back.
    """

    def __init__(
        self,
        message: str,
        *,
        page: Optional[int] = None,
        cursor: Optional[str] = None,
        context: Optional[str] = None,
    ) -> None:
        self.page = page
        self.cursor = cursor
        self.context = context
        self.partial: Tuple[Any, ...] = ()
        parts = [message]
        if context:
            parts.append(f"context={context}")
        if page is not None:
            parts.append(f"page={page}")
        if cursor:
            parts.append(f"cursor={cursor}")
        super().__init__(" ".join(parts))


class ExportError(AuditError):
    """Raised when writing audit artifacts fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, InvalidCredentialError):
        return int(ExitCode.INVALID_CREDENTIAL)
    if isinstance(exc, PaginationStalledError):
        return int(ExitCode.PAGINATION_STALLED)
    if isinstance(exc, FatalTrustError):
        return int(ExitCode.FATAL_TRUST)
    if isinstance(exc, (ExportError, AuditError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1
