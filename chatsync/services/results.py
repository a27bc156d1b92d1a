from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from chatsync.services.exceptions import FailureKind, SyncError

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a coordinator operation: a value or a classified failure."""

    value: Optional[T] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> FailureKind | None:
        return self.error.kind if self.error else None

    @staticmethod
    def success(value: Any = None) -> "OperationResult":
        return OperationResult(value=value)

    @staticmethod
    def failure(error: SyncError) -> "OperationResult":
        return OperationResult(error=error)
