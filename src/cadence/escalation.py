"""Switching between the default and a stronger model under sustained failure."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum

from cadence.config import EscalationConfig
from cadence.state import RunState

MAX_ESCALATIONS_REACHED = "max_escalations_reached"
MIN_STRONG_ITERATIONS_ACTIVE = "min_strong_iterations_active"
MIN_STRONG_ITERATIONS_EXPIRED = "min_strong_iterations_expired"


class EscalationType(StrEnum):
    ESCALATED = "escalated"
    DE_ESCALATED = "de_escalated"
    SUPPRESSED = "suppressed"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class EscalationEvent:
    type: EscalationType = EscalationType.NONE
    from_model: str = ""
    to_model: str = ""
    reason: str = ""
    cooldown: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "event": "model_escalation",
            "type": str(self.type),
            "from_model": self.from_model,
            "to_model": self.to_model,
            "reason": self.reason,
            "cooldown": self.cooldown,
        }


def should_escalate_model(state: RunState, config: EscalationConfig) -> tuple[bool, str, str]:
    """Return ``(should_escalate, trigger, suppression_reason)``."""
    if not config.enabled or not config.model_strong:
        return False, "", ""

    trigger = ""
    if 0 < config.consecutive_verify_fails <= state.consecutive_verify_fails:
        trigger = "consecutive_verify_fails"
    elif 0 < config.no_progress_iters <= state.no_progress_streak:
        trigger = "no_progress_iters"
    elif 0 < config.guardrail_failures <= state.consecutive_guardrail_fails:
        trigger = "guardrail_failures"

    if not trigger:
        return False, "", ""
    if state.escalation_count >= config.max_escalations:
        return False, trigger, MAX_ESCALATIONS_REACHED
    if state.current_model == config.model_strong and state.min_strong_iterations_remaining > 0:
        return False, trigger, MIN_STRONG_ITERATIONS_ACTIVE
    return True, trigger, ""


def should_deescalate_model(state: RunState, config: EscalationConfig) -> bool:
    if not config.enabled or not config.model_strong:
        return False
    return state.current_model == config.model_strong and state.min_strong_iterations_remaining <= 0


def update_model_escalation_state(
    state: RunState, config: EscalationConfig
) -> tuple[RunState, EscalationEvent]:
    """Advance the escalation state machine by one iteration.

    Expects the failure counters to be current (see
    :func:`cadence.recovery.update_backpressure_state`). The strong-model cooldown
    is decremented first, then escalation, suppression, and de-escalation are
    checked in that order.
    """
    if not config.enabled:
        return state, EscalationEvent()

    if state.min_strong_iterations_remaining > 0:
        state = replace(
            state, min_strong_iterations_remaining=state.min_strong_iterations_remaining - 1
        )

    current = state.current_model or config.model_default
    escalate, trigger, suppressed = should_escalate_model(state, config)
    if escalate:
        if state.current_model == config.model_strong:
            return state, EscalationEvent()
        cooldown = config.min_strong_iterations
        event = EscalationEvent(
            type=EscalationType.ESCALATED,
            from_model=current,
            to_model=config.model_strong,
            reason=trigger,
            cooldown=cooldown,
        )
        return (
            replace(
                state,
                current_model=config.model_strong,
                escalation_count=state.escalation_count + 1,
                min_strong_iterations_remaining=cooldown,
                last_escalation_reason=trigger,
            ),
            event,
        )

    if suppressed:
        return state, EscalationEvent(
            type=EscalationType.SUPPRESSED,
            from_model=current,
            to_model=config.model_strong,
            reason=f"trigger={trigger}, blocker={suppressed}",
            cooldown=state.min_strong_iterations_remaining,
        )

    if should_deescalate_model(state, config):
        return (
            replace(state, current_model=config.model_default, last_escalation_reason=""),
            EscalationEvent(
                type=EscalationType.DE_ESCALATED,
                from_model=state.current_model,
                to_model=config.model_default,
                reason=MIN_STRONG_ITERATIONS_EXPIRED,
            ),
        )
    return state, EscalationEvent()


def compute_effective_model(state: RunState, config: EscalationConfig, mode_default: str) -> str:
    """Model for the next harness call: the escalation state's model, else ``mode_default``."""
    if not config.enabled:
        return mode_default
    if state.current_model:
        return state.current_model
    return config.model_default or mode_default


def is_escalated(state: RunState, config: EscalationConfig) -> bool:
    return (
        config.enabled
        and bool(config.model_strong)
        and state.current_model == config.model_strong
    )
