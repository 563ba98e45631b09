"""
Error taxonomy and call results for the reconciliation engine.

Transports and catalogs raise; CartMirror turns the two I/O error kinds
into CallResult values so each caller decides how a failure is handled:

  TransportError      network / 5xx       abort the pass, retry on next trigger
  RejectedByRemote    4xx (sold out ...)  skip this tier/offer for the pass
  ConfigurationError  malformed rules     offer matches nothing
  AllocationInvariantViolation            programming defect, never caught
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class PopcartError(Exception):
    """Base class for engine errors."""


class TransportError(PopcartError):
    """The remote could not be reached or answered with a server error."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RejectedByRemote(PopcartError):
    """The remote refused the request (unknown variant, sold out, ...)."""

    def __init__(self, message: str, status: int = 422, description: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.description = description or message


class ConfigurationError(PopcartError, ValueError):
    """Promotion rules could not be interpreted."""


class AllocationInvariantViolation(PopcartError, AssertionError):
    """A free-unit allocation broke its guarantees. Always a bug."""


@dataclass(frozen=True, slots=True)
class CallResult(Generic[T]):
    """Outcome of one I/O call: either a value or an error, never both."""

    value: Optional[T] = None
    error: Optional[PopcartError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def rejected(self) -> bool:
        return isinstance(self.error, RejectedByRemote)

    @property
    def transport_failed(self) -> bool:
        return isinstance(self.error, TransportError)

    def unwrap(self) -> T:
        """Return the value or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @staticmethod
    def success(value: T) -> "CallResult[T]":
        return CallResult(value=value)

    @staticmethod
    def failure(error: PopcartError) -> "CallResult[T]":
        return CallResult(error=error)
