"""
Tagged success/failure values for operations whose callers must branch on the
outcome instead of trusting the shape of a return value.

    result = await provider.embed(text)
    if isinstance(result, Err):
        ...handle result.error...
    vector = result.value
"""
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .error_handlers import AppError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: AppError

    @property
    def ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.error, "retryable", False))


Result = Union[Ok[T], Err]
