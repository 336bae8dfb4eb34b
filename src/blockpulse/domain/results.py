from __future__ import annotations
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(slots=True, frozen=True)
class NotFound:
    what: str = ""


@dataclass(slots=True, frozen=True)
class TransientError:
    """Infrastructure-caused unavailability; the caller may retry later."""
    reason: str
    retryable: bool = True


Lookup = Union[Found[T], NotFound, TransientError]
