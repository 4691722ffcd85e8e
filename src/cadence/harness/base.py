from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass


class HarnessError(RuntimeError):
    """Raised when a harness invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        harness: str | None = None,
        exit_code: int | None = None,
        output: str = "",
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.harness = harness
        self.exit_code = exit_code
        self.output = output
        self.retriable = retriable
        self.retry_count = 0
        self.retry_reason = ""


class HarnessProcessError(HarnessError):
    """Raised when the harness process cannot be started."""


@dataclass(slots=True)
class HarnessResult:
    output: str
    retry_count: int = 0
    retry_reason: str = ""


class Harness(ABC):
    @abstractmethod
    async def run(
        self,
        prompt: str,
        *,
        model: str,
        args: str,
        on_output: Callable[[str], None] | None = None,
    ) -> HarnessResult:
        """Run the agent once with ``prompt`` and return its tail-truncated output.

        ``on_output`` receives each output line as it is produced.
        """
