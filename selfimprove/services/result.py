"""
Generic Result type for explicit handling of expected failures.

Phases return `Result[value, blocked]` when a refusal is normal business logic
(analysis blocked, execution blocked, learning blocked) and raise only for
genuine failures.
"""

from typing import Generic

from typing_extensions import TypeVar

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException, default=Exception)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Either a value or an error, never both.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore[return-value]

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error

    def __repr__(self) -> str:
        if self._error is not None:
            return f"Result.err({self._error!r})"
        return f"Result.ok({self._value!r})"
