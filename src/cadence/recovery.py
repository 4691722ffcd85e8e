"""Failure counters, recovery mode, and the corrective "backpressure pack"."""

from __future__ import annotations

import re
from dataclasses import replace

from cadence.config import RecoveryConfig
from cadence.fence import any_line_outside_fences, lines_outside_fences
from cadence.guardrails import GuardrailCode, GuardrailVerdict
from cadence.state import RecoveryMode, RunState

COMPLETION_SENTINEL = "CADENCE_COMPLETE"
BACKPRESSURE_RESPONSE_HEADING = "## Backpressure Response"
DEFAULT_THRESHOLD = 2
HYPOTHESIS_THRESHOLD = 2
KEY_ERROR_LINES = 30

_HIGH_SIGNAL_PATTERNS = [
    re.compile(r"\bFAIL\b", re.IGNORECASE),
    re.compile(r"\bFAILED\b", re.IGNORECASE),
    re.compile(r"\bERROR\b", re.IGNORECASE),
    re.compile(r"\bpanic\b", re.IGNORECASE),
    re.compile(r"\bundefined\b", re.IGNORECASE),
    re.compile(r"no such file", re.IGNORECASE),
    re.compile(r"\w+\.\w+:\d+"),
    re.compile(r"^---\s*(FAIL|PASS):"),
    re.compile(r"^=== (RUN|FAIL)", re.IGNORECASE),
    re.compile(r"expected.*got", re.IGNORECASE),
    re.compile(r"assertion failed", re.IGNORECASE),
    re.compile(r"Traceback \(most recent call last\)"),
]

_GUARDRAIL_ACTIONS = {
    GuardrailCode.MAX_FILES_CHANGED: "Reduce scope: modify fewer files. Prefer smaller, focused patches.",
    GuardrailCode.MAX_COMMITS_EXCEEDED: "Squash work into fewer commits. Complete one task at a time.",
    GuardrailCode.VERIFY_REQUIRED_FOR_CHANGE: (
        "You must run Verify successfully before changing files. "
        "Define or fix verification first."
    ),
    GuardrailCode.PLAN_UPDATE_WITHOUT_VERIFY: (
        "Plan changed but verification didn't pass. Fix verification before modifying the plan."
    ),
    GuardrailCode.MISSING_VERIFY_PLAN_NOT_UPDATED: (
        "Verification is missing. Update the plan to add a valid Verify command."
    ),
    GuardrailCode.MISSING_VERIFY_NON_PLAN_CHANGE: (
        "Verification is missing. You may only update the plan until Verify is defined."
    ),
    GuardrailCode.GIT_ERROR_COMMIT_COUNT: (
        "The commit count could not be checked. Leave the repository in a readable state."
    ),
    GuardrailCode.GIT_ERROR_FILE_LIST: (
        "The changed files could not be listed. Leave the repository in a readable state."
    ),
}

_RECOVERY_BANNERS = {
    RecoveryMode.GUARDRAIL: (
        "### GUARDRAIL RECOVERY\n\n"
        "Guardrails blocked several iterations in a row. Stay strictly inside the allowed "
        "scope until the block clears.\n\n"
    ),
    RecoveryMode.VERIFY: (
        "### VERIFY RECOVERY\n\n"
        "Verification keeps failing. Work only on making Verify pass.\n\n"
    ),
    RecoveryMode.NO_PROGRESS: (
        "### NO-PROGRESS RECOVERY\n\n"
        "Recent iterations changed nothing. Make one small, concrete change.\n\n"
    ),
}


def _threshold(value: int) -> int:
    return value if value > 0 else DEFAULT_THRESHOLD


def update_backpressure_state(
    state: RunState,
    config: RecoveryConfig,
    *,
    verify_failed: bool,
    guardrail_failed: bool,
    no_progress: bool,
) -> RunState:
    verify_fails = state.consecutive_verify_fails + 1 if verify_failed else 0
    guardrail_fails = state.consecutive_guardrail_fails + 1 if guardrail_failed else 0
    streak = state.no_progress_streak + 1 if no_progress else 0

    if guardrail_fails >= _threshold(config.guardrail_failures):
        mode = RecoveryMode.GUARDRAIL
    elif verify_fails >= _threshold(config.consecutive_verify_fails):
        mode = RecoveryMode.VERIFY
    elif streak >= _threshold(config.no_progress_iters):
        mode = RecoveryMode.NO_PROGRESS
    else:
        mode = RecoveryMode.NONE

    return replace(
        state,
        consecutive_verify_fails=verify_fails,
        consecutive_guardrail_fails=guardrail_fails,
        no_progress_streak=streak,
        recovery_mode=mode,
    )


def format_guardrail_backpressure(reason: str) -> str:
    if not reason:
        return ""
    try:
        verdict = GuardrailVerdict.from_reason(reason)
    except ValueError:
        return f"Guardrail violation: {reason}"
    if verdict.code is GuardrailCode.FORBIDDEN_PATH:
        return (
            f"You attempted to modify forbidden directory: {verdict.path}. "
            "Choose an alternative file/approach."
        )
    if verdict.code is None:
        return ""
    return _GUARDRAIL_ACTIONS.get(verdict.code, f"Guardrail violation: {reason}")


def summarize_verify_output(output: str, max_lines: int = KEY_ERROR_LINES) -> list[str]:
    if not output or max_lines <= 0:
        return []
    result: list[str] = []
    for line in output.split("\n"):
        if len(result) >= max_lines:
            break
        trimmed = line.strip()
        if not trimmed:
            continue
        if any(pattern.search(line) for pattern in _HIGH_SIGNAL_PATTERNS):
            result.append(trimmed)
    return result


def hypothesis_required(state: RunState) -> bool:
    return (
        state.last_verification_status == "fail"
        and state.consecutive_verify_fails >= HYPOTHESIS_THRESHOLD
    )


def build_backpressure_pack(state: RunState, git_available: bool = True) -> str:
    """Markdown injected ahead of the next prompt, or ``""`` when nothing went wrong."""
    has_guardrail = state.prior_guardrail_status == "fail" and bool(state.prior_guardrail_reason)
    has_verify_fail = state.last_verification_status == "fail"
    has_exit_reason = bool(state.prior_exit_reason) and state.prior_exit_reason != "agent_complete"
    has_plan_drift = (
        bool(state.plan_hash_before)
        and bool(state.plan_hash_after)
        and state.plan_hash_before != state.plan_hash_after
    )
    has_retry = state.prior_retry_count > 0

    if not (has_guardrail or has_verify_fail or has_exit_reason or has_plan_drift or has_retry):
        return ""

    parts = [
        "## Backpressure Pack (from previous iteration)\n\n",
        "**IMPORTANT: Address these issues FIRST before any new work.**\n\n",
        f"Start your reply with a `{BACKPRESSURE_RESPONSE_HEADING}` section explaining "
        "how you address each item below.\n\n",
    ]
    banner = _RECOVERY_BANNERS.get(state.recovery_mode)
    if banner:
        parts.append(banner)
    parts.append(
        "**Priority:**\n"
        "1. Resolve Guardrail Failures\n"
        "2. Fix Verification Failures\n"
        "3. Address Plan Changes\n"
        "4. Address stalling/retry issues if present "
        "(often caused by excessive output or repeated tool usage)\n\n"
    )

    if has_guardrail:
        parts.append(
            "### Guardrail Failure\n\n"
            "- Status: **BLOCKED**\n"
            f"- Reason: `{state.prior_guardrail_reason}`\n"
            f"- Action Required: {format_guardrail_backpressure(state.prior_guardrail_reason)}\n\n"
        )

    if has_verify_fail:
        parts.append(
            "### Verification Failure\n\n"
            f"- Verify Command: `{state.last_verification_command}`\n"
            "- Status: **FAIL**\n"
        )
        if state.consecutive_verify_fails >= HYPOTHESIS_THRESHOLD:
            parts.append(
                f"- Consecutive Failures: {state.consecutive_verify_fails}\n"
                "- **HYPOTHESIS REQUIRED**: Before attempting another fix, you MUST:\n"
                "  1. State your diagnosis of why the previous fix failed (`HYPOTHESIS: ...`)\n"
                "  2. Explain what you will do differently this time (`DIFFERENT_THIS_TIME: ...`)\n"
                "  3. Only then proceed with the fix\n\n"
            )
        else:
            parts.append("- Action Required: Fix these errors before any new work.\n\n")
        key_errors = summarize_verify_output(state.last_verification_output)
        if key_errors:
            parts.append("**Key Errors:**\n\n```\n" + "\n".join(key_errors) + "\n```\n\n")
        elif not state.last_verification_output.strip():
            parts.append("- Output: (no output)\n\n")

    if has_exit_reason:
        parts.append(f"### Prior Exit Reason\n\n- Reason: `{state.prior_exit_reason}`\n")
        if state.prior_exit_reason == "no_progress":
            parts.append(
                "- Action Required: Make meaningful progress. Consider:\n"
                "  - Reducing scope to a smaller change\n"
                "  - Re-running verification with additional diagnostics\n"
                "  - Abandoning the current approach and trying a different strategy\n\n"
            )
        elif state.prior_exit_reason == "no_unchecked_tasks":
            parts.append(f"- Note: All tasks complete. Emit {COMPLETION_SENTINEL} if done.\n\n")
        else:
            parts.append("\n")

    if has_plan_drift:
        parts.append(
            "### Plan Changes Detected\n\n"
            "- Plan was modified in the previous iteration.\n"
            "- Action Required: Keep plan edits minimal and justify them explicitly.\n"
        )
        if state.plan_diff_summary:
            parts.append(f"\n**Diff excerpt:**\n\n```diff\n{state.plan_diff_summary}\n```\n")
        elif not git_available:
            parts.append("- Diff: unavailable (git not detected).\n")
        parts.append("\n")

    if has_retry:
        parts.append(f"### Harness Retries\n\n- Retries: {state.prior_retry_count}\n")
        if state.prior_retry_reason:
            parts.append(f"- Matched: `{state.prior_retry_reason}`\n")
        parts.append(
            "- Note: The harness experienced transient failures (e.g., rate limits).\n"
            "- Action: Keep responses concise, avoid large file dumps, "
            "reduce tool calls per iteration.\n\n"
        )

    parts.append("---\n\n")
    return "".join(parts)


def has_backpressure_response(output: str) -> bool:
    return any_line_outside_fences(
        output, lambda line: line.startswith(BACKPRESSURE_RESPONSE_HEADING)
    )


def has_completion_sentinel(output: str) -> bool:
    return any_line_outside_fences(output, lambda line: line == COMPLETION_SENTINEL)


def extract_hypothesis(output: str) -> tuple[str, str]:
    """Return ``(hypothesis, different_action)`` declared outside code fences."""
    hypothesis = ""
    different = ""
    for line in lines_outside_fences(output):
        if line.startswith("HYPOTHESIS:"):
            hypothesis = line.removeprefix("HYPOTHESIS:").strip()
        if line.startswith("DIFFERENT_THIS_TIME:"):
            different = line.removeprefix("DIFFERENT_THIS_TIME:").strip()
        if line.startswith("DIFFERENT:") and not different:
            different = line.removeprefix("DIFFERENT:").strip()
    return hypothesis, different


def has_required_hypothesis(output: str) -> bool:
    hypothesis, different = extract_hypothesis(output)
    return bool(hypothesis) and bool(different)
