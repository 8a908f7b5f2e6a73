from __future__ import annotations

from typing import Any


class FarebridgeError(Exception):
    """Base class for engine errors."""


class InvalidAmountFormat(FarebridgeError, ValueError):
    def __init__(self, amount: str) -> None:
        super().__init__(f"Invalid amount format: {amount!r}")
        self.amount = amount


class Unauthorized(FarebridgeError):
    pass


class ProviderError(FarebridgeError):
    def __init__(self, provider: str, message: str, status_code: int | None = None, detail: Any = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class ProviderTimeout(ProviderError):
    """The call may or may not have taken effect on the provider side."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, message, status_code=None)


class SettlementFailed(FarebridgeError):
    pass


class UniqueViolationError(FarebridgeError):
    pass


class MissingConstraintError(FarebridgeError):
    pass
