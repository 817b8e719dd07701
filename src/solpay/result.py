"""Tagged results returned at the oracle and settlement-provider boundary.

Adapters translate loosely-typed HTTP payloads into ``Ok`` or ``Err`` so the
core never branches on raw response fields.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure categories reported by external adapters."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful call carrying its parsed value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed call with a category and human-readable detail."""

    kind: ErrorKind
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
