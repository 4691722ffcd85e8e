from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

STATE_FILE = "state.json"
SUMMARY_FILE = "state.md"
SUMMARY_OUTPUT_LIMIT = 4 * 1024


class CadenceStateError(RuntimeError):
    """Raised when run state cannot be persisted."""


class RecoveryMode(StrEnum):
    NONE = ""
    GUARDRAIL = "guardrail"
    VERIFY = "verify"
    NO_PROGRESS = "no_progress"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Hypothesis:
    iteration: int
    hypothesis: str
    different_action: str
    verify_command: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass(slots=True)
class RunState:
    last_verification_status: str = ""
    last_verification_command: str = ""
    last_verification_output: str = ""
    last_verification_hash: str = ""
    consecutive_verify_fails: int = 0
    consecutive_guardrail_fails: int = 0
    no_progress_streak: int = 0
    recovery_mode: RecoveryMode = RecoveryMode.NONE
    current_model: str = ""
    escalation_count: int = 0
    min_strong_iterations_remaining: int = 0
    last_escalation_reason: str = ""
    prior_guardrail_status: str = ""
    prior_guardrail_reason: str = ""
    prior_exit_reason: str = ""
    plan_hash_before: str = ""
    plan_hash_after: str = ""
    plan_diff_summary: str = ""
    prior_retry_count: int = 0
    prior_retry_reason: str = ""
    backpressure_injected: bool = False
    hypotheses: list[Hypothesis] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["recovery_mode"] = str(self.recovery_mode)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        """Build state from JSON, keeping defaults for missing or mistyped fields."""
        state = cls()
        for item in fields(cls):
            if item.name not in data or item.name in {"hypotheses", "recovery_mode"}:
                continue
            value = data[item.name]
            default = getattr(state, item.name)
            if isinstance(default, bool):
                if isinstance(value, bool):
                    setattr(state, item.name, value)
            elif isinstance(default, int):
                if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                    setattr(state, item.name, value)
            elif isinstance(value, str):
                setattr(state, item.name, value)

        try:
            state.recovery_mode = RecoveryMode(data.get("recovery_mode") or "")
        except ValueError:
            state.recovery_mode = RecoveryMode.NONE

        raw_hypotheses = data.get("hypotheses")
        if isinstance(raw_hypotheses, list):
            for raw in raw_hypotheses:
                if not isinstance(raw, dict):
                    continue
                try:
                    state.hypotheses.append(
                        Hypothesis(
                            iteration=int(raw.get("iteration", 0)),
                            hypothesis=str(raw.get("hypothesis", "")),
                            different_action=str(raw.get("different_action", "")),
                            verify_command=str(raw.get("verify_command", "")),
                            timestamp=str(raw.get("timestamp", "")),
                        )
                    )
                except (TypeError, ValueError):
                    continue
        return state


class StateStore:
    """Reads and atomically rewrites ``<state_dir>/state.json`` and its Markdown summary."""

    def __init__(self, state_dir: Path, warn: Callable[[str], None] | None = None) -> None:
        self.state_dir = state_dir
        self.state_path = state_dir / STATE_FILE
        self.summary_path = state_dir / SUMMARY_FILE
        self._warn = warn

    def _warning(self, message: str) -> None:
        if self._warn:
            self._warn(message)

    def load(self) -> RunState:
        try:
            content = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return RunState()
        except OSError as exc:
            self._warning(f"failed to read state file {self.state_path}: {exc}")
            return RunState()
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            self._warning(f"failed to parse state file {self.state_path}: {exc} (using empty state)")
            return RunState()
        if not isinstance(payload, dict):
            self._warning(f"state file {self.state_path} is not a JSON object (using empty state)")
            return RunState()
        return RunState.from_dict(payload)

    def _atomic_write(self, path: Path, content: str, prefix: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def save(self, state: RunState) -> None:
        content = json.dumps(state.to_dict(), ensure_ascii=False, indent=2) + "\n"
        try:
            self._atomic_write(self.state_path, content, ".state-")
        except OSError as exc:
            raise CadenceStateError(f"failed to save state: {exc}") from exc
        try:
            self._atomic_write(self.summary_path, render_summary(state), ".state-summary-")
        except OSError as exc:
            self._warning(f"failed to write state summary: {exc}")


def _truncate_summary(value: str) -> str:
    encoded = value.encode("utf-8")
    if len(encoded) <= SUMMARY_OUTPUT_LIMIT:
        return value
    return encoded[:SUMMARY_OUTPUT_LIMIT].decode("utf-8", errors="ignore")


def render_summary(state: RunState) -> str:
    lines = [
        "# cadence state",
        "",
        f"Updated: {_utcnow_iso()}",
        "",
        f"Last verification status: {state.last_verification_status or 'unknown'}",
        f"Last verification command: {state.last_verification_command.strip() or 'none'}",
    ]
    if state.last_verification_output.strip():
        lines += [
            "",
            "Last verification output (truncated):",
            "",
            "```text",
            _truncate_summary(state.last_verification_output),
            "```",
        ]
    if state.current_model or state.escalation_count > 0:
        lines += ["", "## Model Escalation", "", f"Current model: {state.current_model or 'default'}"]
        if state.escalation_count > 0:
            lines.append(f"Escalations: {state.escalation_count}")
        if state.min_strong_iterations_remaining > 0:
            lines.append(f"Min strong iterations remaining: {state.min_strong_iterations_remaining}")
        if state.last_escalation_reason:
            lines.append(f"Last escalation reason: {state.last_escalation_reason}")
    if state.recovery_mode:
        lines += ["", "## Recovery Mode", "", f"Mode: {state.recovery_mode}"]
    return "\n".join(lines) + "\n"
