"""Chaining iteration runs: ordered steps gated by ``if`` and ``until`` conditions."""

from __future__ import annotations

from collections.abc import Callable

from cadence.config import StrategyStep
from cadence.loop import ExitReason, IterationController, IterationResult


def _normalize(condition: str) -> str:
    return condition.strip().lower()


def should_run_step(
    step: StrategyStep,
    last_result: IterationResult,
    warn: Callable[[str], None] | None = None,
) -> bool:
    """Gate a step on the previous step's result; unknown conditions run the step."""
    condition = _normalize(step.if_)
    if not condition:
        return True
    if condition == "stalled":
        return last_result.stalled
    if condition == "verify_fail":
        return last_result.verify_status == "fail"
    if condition == "verify_pass":
        return last_result.verify_status == "pass"
    if warn:
        warn(f"Unknown strategy condition if={step.if_!r}; running step.")
    return True


def should_continue_until(
    step: StrategyStep,
    result: IterationResult,
    warn: Callable[[str], None] | None = None,
) -> bool:
    """True while the step's ``until`` condition is not yet satisfied."""
    condition = _normalize(step.until)
    if not condition:
        return False
    if condition == "verify_pass":
        return result.verify_status != "pass"
    if condition == "verify_fail":
        return result.verify_status != "fail"
    if warn:
        warn(f"Unknown strategy condition until={step.until!r}; stopping step.")
    return False


class StrategySequencer:
    def __init__(
        self,
        controller: IterationController,
        *,
        model_override: str = "",
        warn: Callable[[str], None] | None = None,
    ) -> None:
        self.controller = controller
        self.model_override = model_override
        self.warn = warn

    async def run(self, steps: list[StrategyStep]) -> IterationResult:
        """Run ``steps`` in order and return the result of the last invocation."""
        last_result = IterationResult()
        for step in steps:
            if not should_run_step(step, last_result, self.warn):
                continue
            invocations = step.iterations if step.iterations > 0 else 1
            no_progress = 0
            for _ in range(invocations):
                result = await self.controller.run_mode(
                    step.mode,
                    max_iterations=1,
                    model_override=self.model_override,
                    step_model=step.model,
                    start_no_progress=no_progress,
                )
                if result.iteration == 0:
                    # Nothing ran (no unchecked tasks); keep the previous result for gating.
                    break
                last_result = result
                no_progress = result.no_progress
                if result.exit_reason == ExitReason.NO_PROGRESS:
                    break
                if not should_continue_until(step, result, self.warn):
                    break
        return last_result
