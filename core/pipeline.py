"""Shared consumer/processor/producer scaffolding."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

from .cli_errors import CLIError, ExitCode

ResultT = TypeVar("ResultT")
RequestT = TypeVar("RequestT")
T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ResultEnvelope(Generic[ResultT]):
    status: str
    payload: Optional[ResultT] = None
    diagnostics: Optional[Dict[str, Any]] = None

    def ok(self) -> bool:
        return self.status.lower() == "success"

    def unwrap(self) -> ResultT:
        """Return payload or raise ValueError. Use after ok() check."""
        if self.payload is None:
            msg = (self.diagnostics or {}).get("message", "No payload")
            raise ValueError(msg)
        return self.payload

    @property
    def code(self) -> int:
        if self.ok():
            return int(ExitCode.SUCCESS)
        return int((self.diagnostics or {}).get("code", ExitCode.USAGE))


class RequestConsumer(Generic[RequestT]):
    """Generic consumer that hands back a prepared request object."""

    def __init__(self, request: RequestT) -> None:
        self._request = request

    def consume(self) -> RequestT:  # pragma: no cover - trivial
        return self._request


class SafeProcessor(Generic[T, R]):
    """Base processor that turns exceptions into error envelopes.

    Subclasses implement _process_safe(). CLIError subclasses keep their exit
    code and hint in the diagnostics; anything else maps to ExitCode.ERROR.
    """

    def process(self, payload: T) -> ResultEnvelope[R]:
        try:
            result = self._process_safe(payload)
            return ResultEnvelope(status="success", payload=result)
        except CLIError as e:
            diagnostics: Dict[str, Any] = {"message": e.message, "code": int(e.code), "error": type(e).__name__}
            if e.hint:
                diagnostics["hint"] = e.hint
            return ResultEnvelope(status="error", diagnostics=diagnostics)
        except Exception as e:
            return ResultEnvelope(
                status="error",
                diagnostics={"message": str(e), "code": int(ExitCode.ERROR), "error": type(e).__name__},
            )

    def _process_safe(self, payload: T) -> R:
        raise NotImplementedError("Subclass must implement _process_safe")


class BaseProducer:
    """Base class for pipeline producers with common error handling.

    Subclasses override _produce_success(); failed envelopes print their
    message (and hint) here.
    """

    def produce(self, result: ResultEnvelope) -> None:
        if not result.ok():
            self.print_error(result)
            return
        if result.payload is not None:
            self._produce_success(result.payload, result.diagnostics)

    def _produce_success(self, payload: Any, diagnostics: Optional[Dict[str, Any]]) -> None:
        raise NotImplementedError("Subclass must implement _produce_success")

    @staticmethod
    def print_error(result: ResultEnvelope) -> bool:
        """Print error message if result failed. Returns True if error was printed."""
        if result.ok():
            return False
        diag = result.diagnostics or {}
        msg = diag.get("message")
        if msg:
            print(msg)
        if diag.get("hint"):
            print(f"Hint: {diag['hint']}")
        return True
