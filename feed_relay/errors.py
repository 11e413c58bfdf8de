from __future__ import annotations

import asyncio
import errno
from enum import Enum

import httpx


_TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EPIPE,
}


class RelayError(Exception):
    pass


class SourceApiError(RelayError):
    """Non-2xx response from one of the upstream feeds."""

    def __init__(self, status: int, url: str, message: str = "") -> None:
        self.status = int(status)
        self.url = str(url)
        super().__init__(message or f"HTTP {self.status} from {self.url}")

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500


class NoCredentialsError(RelayError):
    pass


class CheckpointExistsError(RelayError):
    pass


class SubscriptionExistsError(RelayError):
    pass


class SubscriptionLimitError(RelayError):
    pass


class NotFoundError(RelayError):
    def __init__(self, what: str, ident: str) -> None:
        self.what = what
        self.ident = str(ident)
        super().__init__(f"{what} {self.ident} not found")


class PlatformErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    UNKNOWN = "unknown"


class PlatformError(RelayError):
    """Classified failure of a chat platform operation."""

    def __init__(
        self,
        kind: PlatformErrorKind,
        *,
        status: int | None = None,
        code: int | None = None,
        message: str = "",
    ) -> None:
        self.kind = kind
        self.status = status
        self.code = code
        detail = message or kind.value
        super().__init__(f"{detail} (status={status} code={code})")


def is_transient_error(exc: BaseException) -> bool:
    """True for network-class faults worth a temporary switch to polling."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, SourceApiError):
        return exc.is_server_error
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    return "network" in str(exc).lower()
