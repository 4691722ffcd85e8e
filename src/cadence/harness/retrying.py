from __future__ import annotations

import asyncio
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from cadence.config import DEFAULT_RETRY_MATCH, RetryConfig
from cadence.harness.base import Harness, HarnessError, HarnessResult

HarnessEventHook = Callable[[dict[str, Any]], None]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RetryPolicy:
    enabled: bool = False
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    jitter: bool = True
    match: list[str] = field(default_factory=lambda: list(DEFAULT_RETRY_MATCH))
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)
    _rng_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def from_config(cls, config: RetryConfig, rng: random.Random | None = None) -> RetryPolicy:
        match = list(config.match)
        if config.enabled and not match:
            match = list(DEFAULT_RETRY_MATCH)
        return cls(
            enabled=config.enabled,
            max_attempts=max(0, int(config.max_attempts)),
            backoff_base_seconds=max(0.0, float(config.backoff_base_seconds)),
            backoff_max_seconds=max(0.0, float(config.backoff_max_seconds)),
            jitter=config.jitter,
            match=match,
            rng=rng or random.Random(),
        )

    def delay_for(self, attempt: int) -> float:
        with self._rng_lock:
            return backoff_duration(
                self.backoff_base_seconds,
                self.backoff_max_seconds,
                attempt,
                jitter=self.jitter,
                rng=self.rng,
            )


def matched_retry_token(output: str, match: list[str]) -> str:
    """Return the first token in ``match`` found in ``output`` (case-insensitive), or ``""``.

    The literal token ``*`` matches any output.
    """
    lowered = output.lower()
    for token in match:
        token = token.strip()
        if not token:
            continue
        if token == "*" or token.lower() in lowered:
            return token
    return ""


def backoff_duration(
    base: float,
    maximum: float,
    attempt: int,
    jitter: bool = False,
    rng: random.Random | None = None,
) -> float:
    if base <= 0:
        base = 2.0
    attempt = max(1, attempt)
    delay = base * (2 ** (attempt - 1))
    if maximum > 0 and delay > maximum:
        delay = maximum
    if jitter:
        delay *= 0.5 + (rng or random.Random()).random()
    return delay


class RetryingHarness(Harness):
    """Retries a harness when its failure output matches a transient-failure token.

    Cancellation is never retried: ``asyncio.CancelledError`` raised by the
    wrapped harness or by the backoff sleep propagates immediately.
    """

    def __init__(
        self,
        harness: Harness,
        policy: RetryPolicy,
        *,
        event_hook: HarnessEventHook | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.harness = harness
        self.policy = policy
        self.event_hook = event_hook
        self.sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        prompt: str,
        *,
        model: str,
        args: str,
        on_output: Callable[[str], None] | None = None,
    ) -> HarnessResult:
        attempts = 0
        reason = ""
        while True:
            try:
                result = await self.harness.run(
                    prompt, model=model, args=args, on_output=on_output
                )
            except HarnessError as exc:
                token = ""
                if self.policy.enabled and self.policy.max_attempts > 0 and exc.retriable:
                    token = matched_retry_token(exc.output, self.policy.match)
                self._emit(
                    {
                        "event": "harness_attempt_failed",
                        "attempt": attempts,
                        "exit_code": exc.exit_code,
                        "error": str(exc),
                        "matched": token,
                    }
                )
                if not token or attempts >= self.policy.max_attempts:
                    exc.retry_count = attempts
                    exc.retry_reason = token or reason
                    raise
                attempts += 1
                reason = token
                delay = self.policy.delay_for(attempts)
                self._emit(
                    {
                        "event": "harness_retry",
                        "level": "warning",
                        "attempt": attempts,
                        "max_attempts": self.policy.max_attempts,
                        "matched": token,
                        "delay_seconds": delay,
                        "message": (
                            "Harness error matched retry rule; "
                            f"sleeping {delay:.1f}s before retry "
                            f"{attempts}/{self.policy.max_attempts}"
                        ),
                    }
                )
                await self.sleep(delay)
                continue

            result.retry_count = attempts
            result.retry_reason = reason
            return result
