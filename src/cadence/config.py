from __future__ import annotations

import json
import re
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

WarningHook = Callable[[str], None]

MODES = ("architect", "plan", "build")
DEFAULT_RETRY_MATCH = ["rate limit", "429", "overloaded", "timeout"]
VERIFY_MISSING_POLICIES = ("strict", "agent_enforced", "fallback")
VERIFY_FAIL_POLICIES = ("soft_reset", "hard_reset", "wip_branch", "keep_commit", "no_push_only")
PLAN_LINT_POLICIES = ("warn", "fail", "off")

_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")
_INVALID = object()


@dataclass(slots=True)
class HarnessConfig:
    command: str = "claude"
    args: str = ""
    yolo: bool = False
    model_flag: str = "--model"
    models: dict[str, str] = field(default_factory=dict)

    def model_for(self, mode: str) -> str:
        configured = self.models.get(mode, "").strip()
        if configured:
            return configured
        return "sonnet" if mode == "build" else "opus"


@dataclass(slots=True)
class RetryConfig:
    enabled: bool = False
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    jitter: bool = True
    match: list[str] = field(default_factory=lambda: list(DEFAULT_RETRY_MATCH))


@dataclass(slots=True)
class GuardrailsConfig:
    max_files_changed: int = 0
    max_commits_per_iteration: int = 0
    forbidden_paths: list[str] = field(default_factory=list)
    require_verify_on_change: bool = False
    require_verify_for_plan_update: bool = False


@dataclass(slots=True)
class VerifyConfig:
    missing_policy: str = "strict"
    allow_fallback: bool = False
    on_fail: str = "soft_reset"
    plan_lint_policy: str = "warn"

    def effective_missing_policy(self) -> str:
        if self.missing_policy == "fallback" and not self.allow_fallback:
            return "strict"
        return self.missing_policy


@dataclass(slots=True)
class RecoveryConfig:
    consecutive_verify_fails: int = 2
    no_progress_iters: int = 2
    guardrail_failures: int = 2


@dataclass(slots=True)
class EscalationConfig:
    enabled: bool = False
    consecutive_verify_fails: int = 2
    no_progress_iters: int = 2
    guardrail_failures: int = 2
    min_strong_iterations: int = 2
    max_escalations: int = 2
    model_default: str = ""
    model_strong: str = ""


@dataclass(slots=True)
class LoopConfig:
    plan_path: str = "IMPLEMENTATION_PLAN.md"
    agents_file: str = "AGENTS.md"
    log_dir: str = "logs"
    state_dir: str = ".cadence"
    no_push: bool = False
    no_progress_iterations: int = 2


@dataclass(slots=True)
class StrategyStep:
    mode: str = "build"
    model: str = ""
    iterations: int = 1
    until: str = ""
    if_: str = ""


_CHOICES: dict[tuple[str, str], tuple[str, ...]] = {
    ("verify", "missing_policy"): VERIFY_MISSING_POLICIES,
    ("verify", "on_fail"): VERIFY_FAIL_POLICIES,
    ("verify", "plan_lint_policy"): PLAN_LINT_POLICIES,
}


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return value if isinstance(value, bool) else _INVALID
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return _INVALID
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return _INVALID
        return float(value)
    if isinstance(default, str):
        return value.strip() if isinstance(value, str) else _INVALID
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            return _INVALID
        return [item.strip() for item in value if item.strip()]
    if isinstance(default, dict):
        if not isinstance(value, dict) or not all(
            isinstance(key, str) and isinstance(item, str) for key, item in value.items()
        ):
            return _INVALID
        return dict(value)
    return _INVALID


def _build_section(cls: type, raw: Any, section: str, warn: WarningHook) -> Any:
    instance = cls()
    if raw is None:
        return instance
    if not isinstance(raw, dict):
        warn(f"[{section}] must be a table; using defaults.")
        return instance
    names = {item.name for item in fields(cls)}
    for key, value in raw.items():
        attr = "if_" if key == "if" and "if_" in names else key
        if attr not in names:
            warn(f"Unknown config key {section}.{key}; ignoring.")
            continue
        coerced = _coerce(value, getattr(instance, attr))
        choices = _CHOICES.get((section, key))
        if choices is not None and coerced is not _INVALID:
            coerced = coerced.lower()
            if coerced not in choices:
                coerced = _INVALID
        if coerced is _INVALID:
            warn(f"Ignoring malformed value for {section}.{key}: {value!r}")
            continue
        setattr(instance, attr, coerced)
    return instance


def _ignore_warning(message: str) -> None:
    _ = message


@dataclass(slots=True)
class CadenceConfig:
    harness: HarnessConfig = field(default_factory=HarnessConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    strategy: list[StrategyStep] = field(default_factory=list)

    @classmethod
    def default(cls) -> CadenceConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict, warn: WarningHook | None = None) -> CadenceConfig:
        hook = warn or _ignore_warning
        known = {"harness", "retry", "guardrails", "verify", "recovery", "escalation", "loop"}
        for key in data:
            if key not in known and key != "strategy":
                hook(f"Unknown config section [{key}]; ignoring.")

        steps: list[StrategyStep] = []
        raw_steps = data.get("strategy", [])
        if isinstance(raw_steps, list):
            for index, raw_step in enumerate(raw_steps):
                step = _build_section(StrategyStep, raw_step, f"strategy[{index}]", hook)
                step.mode = step.mode.lower()
                if step.mode not in MODES:
                    hook(f"Ignoring strategy step {index} with unknown mode {step.mode!r}.")
                    continue
                steps.append(step)
        else:
            hook("[[strategy]] must be an array of tables; ignoring.")

        return cls(
            harness=_build_section(HarnessConfig, data.get("harness"), "harness", hook),
            retry=_build_section(RetryConfig, data.get("retry"), "retry", hook),
            guardrails=_build_section(GuardrailsConfig, data.get("guardrails"), "guardrails", hook),
            verify=_build_section(VerifyConfig, data.get("verify"), "verify", hook),
            recovery=_build_section(RecoveryConfig, data.get("recovery"), "recovery", hook),
            escalation=_build_section(EscalationConfig, data.get("escalation"), "escalation", hook),
            loop=_build_section(LoopConfig, data.get("loop"), "loop", hook),
            strategy=steps,
        )

    def to_dict(self) -> dict:
        def _section(instance: Any) -> dict[str, Any]:
            payload: dict[str, Any] = {}
            for item in fields(instance):
                value = getattr(instance, item.name)
                if isinstance(value, (list, dict)):
                    value = type(value)(value)
                payload["if" if item.name == "if_" else item.name] = value
            return payload

        return {
            "harness": _section(self.harness),
            "retry": _section(self.retry),
            "guardrails": _section(self.guardrails),
            "verify": _section(self.verify),
            "recovery": _section(self.recovery),
            "escalation": _section(self.escalation),
            "loop": _section(self.loop),
            "strategy": [_section(step) for step in self.strategy],
        }


def _toml_key(key: str) -> str:
    return key if _BARE_KEY.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{_toml_key(k)} = {_toml_value(v)}" for k, v in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CadenceConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["harness", "retry", "guardrails", "verify", "recovery", "escalation", "loop"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    for step in data["strategy"]:
        lines.append("[[strategy]]")
        for key, value in step.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, warn: WarningHook | None = None) -> CadenceConfig:
    if not path.exists():
        return CadenceConfig.default()
    return CadenceConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")), warn=warn)


def save_config(path: Path, config: CadenceConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
