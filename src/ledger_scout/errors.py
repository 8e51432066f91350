from __future__ import annotations

from typing import Optional, Sequence


class LedgerScoutError(Exception):
    """Base class for resolution layer errors."""


class MalformedIdentifier(LedgerScoutError):
    def __init__(self, identifier: str, reason: str = "") -> None:
        self.identifier = identifier
        self.reason = reason
        message = f"Malformed identifier: {identifier!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class GatewayError(LedgerScoutError):
    def __init__(self, url: str, message: str = "") -> None:
        self.url = url
        super().__init__(message or f"Gateway request failed: {url}")


class GatewayTimeout(GatewayError):
    def __init__(self, url: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(url, f"Gateway timed out after {timeout_seconds}s: {url}")


class GatewayUnreachable(GatewayError):
    def __init__(self, url: str, status: Optional[int] = None, detail: str = "") -> None:
        self.status = status
        parts = [f"Gateway unreachable: {url}"]
        if status is not None:
            parts.append(f"status={status}")
        if detail:
            parts.append(detail)
        super().__init__(url, " ".join(parts))


class GatewayExhausted(LedgerScoutError):
    """Every candidate for an identifier failed."""

    def __init__(self, identifier: str, attempts: Sequence[GatewayError]) -> None:
        self.identifier = identifier
        self.attempts = list(attempts)
        super().__init__(f"All {len(self.attempts)} gateway candidates failed for {identifier!r}")


class LedgerCheckFailed(LedgerScoutError):
    def __init__(self, index: int, cause: BaseException) -> None:
        self.index = index
        self.cause = cause
        super().__init__(f"Ledger check failed for index {index}: {cause!r}")
