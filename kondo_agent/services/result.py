from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Closed set of failure kinds reported by collaborators.
ERROR_TIMEOUT = "timeout"
ERROR_HTTP = "http_error"
ERROR_EMPTY_RESPONSE = "empty_response"
ERROR_NOT_CONFIGURED = "not_configured"
ERROR_INVALID_INPUT = "invalid_input"
ERROR_UNKNOWN = "unknown"

ERROR_CODES = frozenset(
    {
        ERROR_TIMEOUT,
        ERROR_HTTP,
        ERROR_EMPTY_RESPONSE,
        ERROR_NOT_CONFIGURED,
        ERROR_INVALID_INPUT,
        ERROR_UNKNOWN,
    }
)


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = ERROR_UNKNOWN) -> "Result[T]":
        if code not in ERROR_CODES:
            code = ERROR_UNKNOWN
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def describe_error(self) -> str:
        """`code: message` form stored in QueueJob.error_message."""
        return f"{self.error_code or ERROR_UNKNOWN}: {self.error or 'no details'}"
