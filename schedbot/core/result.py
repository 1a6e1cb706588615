"""
Result type for operations that can fail in expected ways.

Lifecycle and vote operations return ``Success`` or ``Failure`` instead of
raising, so callers branch on the outcome explicitly:

    result = await coordinator.submit(vote)
    match result:
        case Success(response):
            ...
        case Failure(ConflictError() as error):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union, cast

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Represents a successful operation result."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, _default: T) -> T:
        return self.value

    def map(self, func: Callable[[T], U]) -> Result[U, E]:
        return Success(func(self.value))

    def flat_map(self, func: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return func(self.value)

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """Represents a failed operation result."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the error when trying to extract a value."""
        if isinstance(self.error, Exception):
            raise self.error
        raise RuntimeError(f"Operation failed: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, _func: Callable[[T], U]) -> Result[U, E]:
        return cast(Result[U, E], self)

    def flat_map(self, _func: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return cast(Result[U, E], self)

    def __repr__(self) -> str:
        return f"Failure({self.error!r})"


Result = Union[Success[T], Failure[E]]


def success(value: T) -> Success[T]:
    return Success(value)


def failure(error: E) -> Failure[E]:
    return Failure(error)


@dataclass(frozen=True, slots=True)
class NotFoundError:
    """Entity not found error."""

    entity_type: str
    entity_id: str | int
    message: str | None = None

    def __str__(self) -> str:
        if self.message:
            return self.message
        return f"{self.entity_type} with id={self.entity_id} not found"


@dataclass(frozen=True, slots=True)
class ValidationError:
    """Input rejected before anything was written."""

    field: str
    message: str
    value: str | None = None

    def __str__(self) -> str:
        if self.value:
            return f"{self.field}: {self.message} (got: {self.value})"
        return f"{self.field}: {self.message}"


@dataclass(frozen=True, slots=True)
class DatabaseError:
    """Database operation error."""

    operation: str
    message: str
    original_exception: Exception | None = None

    def __str__(self) -> str:
        return f"Database error during {self.operation}: {self.message}"


@dataclass(frozen=True, slots=True)
class ConflictError:
    """A concurrent writer changed the row between read and write."""

    entity_type: str
    message: str
    conflicting_field: str | None = None

    def __str__(self) -> str:
        if self.conflicting_field:
            return f"{self.entity_type} conflict on {self.conflicting_field}: {self.message}"
        return f"{self.entity_type} conflict: {self.message}"


def collect_results(results: list[Result[T, E]]) -> Result[list[T], E]:
    """
    Collect a list of Results into a single Result.

    Returns the first Failure, or Success with every value in order.
    """
    values: list[T] = []
    for result in results:
        if result.is_failure():
            return cast(Result[list[T], E], result)
        values.append(result.unwrap())
    return Success(values)


__all__ = [
    "Result",
    "Success",
    "Failure",
    "success",
    "failure",
    "NotFoundError",
    "ValidationError",
    "DatabaseError",
    "ConflictError",
    "collect_results",
]
