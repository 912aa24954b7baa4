"""
Result Pattern Implementation
Type-safe error handling with a typed failure taxonomy
"""

from enum import Enum
from typing import Generic, TypeVar, Optional

from pydantic import BaseModel, ConfigDict

T = TypeVar('T')


class ErrorKind(str, Enum):
    """Failure classes surfaced by jobs, storage and the pipeline"""
    INPUT = "input"
    TRANSIENT = "transient"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    STORAGE = "storage"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        """Only network-class failures are retried automatically"""
        return self is ErrorKind.TRANSIENT


class Result(BaseModel, Generic[T]):
    """Result type for type-safe error handling"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: T = None) -> 'Result[T]':
        """Create a successful result"""
        return cls(success=True, data=data)

    @classmethod
    def err(cls, error: str, kind: ErrorKind = ErrorKind.PROVIDER) -> 'Result[T]':
        """Create an error result"""
        return cls(success=False, error=error, kind=kind)

    def is_ok(self) -> bool:
        """Check if result is successful"""
        return self.success

    def is_err(self) -> bool:
        """Check if result is an error"""
        return not self.success

    def unwrap(self) -> T:
        """Unwrap successful result or raise on error"""
        if self.success and self.data is not None:
            return self.data
        raise ValueError(f"Result unwrap failed: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Unwrap successful result or return default"""
        if self.success and self.data is not None:
            return self.data
        return default

    def map(self, func):
        """Map successful result through a function"""
        if self.success and self.data is not None:
            try:
                return Result.ok(func(self.data))
            except Exception as e:
                return Result.err(str(e))
        return self

    def propagate(self) -> 'Result':
        """Re-wrap a failure so it can be returned from a differently typed call"""
        return Result(success=False, error=self.error, kind=self.kind)
