from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a tool call or a domain attempt that fails without raising."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def to_payload(self) -> dict[str, Any]:
        """Shape handed back to the model as a tool result and stored in run results."""
        if self.ok:
            return {"ok": True, "result": self.value}
        return {"ok": False, "error": self.error, "code": self.error_code}
