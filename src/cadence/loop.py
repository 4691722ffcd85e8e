from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from cadence.config import CadenceConfig
from cadence.escalation import (
    EscalationEvent,
    EscalationType,
    compute_effective_model,
    is_escalated,
    update_model_escalation_state,
)
from cadence.gitops import GitError, GitRepo
from cadence.guardrails import (
    GuardrailVerdict,
    enforce_guardrails,
    enforce_missing_verify_guardrail,
    enforce_missing_verify_no_git,
    enforce_verification_guardrails,
)
from cadence.harness import Harness, HarnessError, TailBuffer, apply_model_choice
from cadence.harness.process import pump_output
from cadence.plan import (
    PlanTask,
    file_hash,
    format_verify_commands,
    has_unchecked_tasks,
    hash_text,
    lint_task,
    read_active_task,
    read_agents_verify_fallback,
    workspace_fingerprint,
)
from cadence.prompts import PromptData, build_context_pack, read_limited, render_prompt
from cadence.questions import Question, extract_questions, format_answers, question_budget
from cadence.recovery import (
    COMPLETION_SENTINEL,
    build_backpressure_pack,
    extract_hypothesis,
    has_backpressure_response,
    has_completion_sentinel,
    has_required_hypothesis,
    hypothesis_required,
    update_backpressure_state,
)
from cadence.runlog import IterationLog
from cadence.state import Hypothesis, RunState, StateStore

EventHook = Callable[[dict[str, Any]], None]
OutputHook = Callable[[str], None]
AskHook = Callable[[str], str]

VERIFY_COMMAND_OUTPUT_LIMIT = 16 * 1024
VERIFY_OUTPUT_LIMIT = 12 * 1024
PLAN_DIFF_LINES = 50
WIP_BRANCH_PROBES = 10
CONTEXT_FILE = "context.md"
DEFAULT_MAX_ITERATIONS = {"architect": 10, "plan": 1, "build": 0}


class ExitReason(StrEnum):
    NONE = ""
    AGENT_COMPLETE = "agent_complete"
    NO_PROGRESS = "no_progress"
    NO_UNCHECKED_TASKS = "no_unchecked_tasks"


class IterationError(RuntimeError):
    """Raised when an iteration cannot continue (unreadable HEAD, broken plan policy)."""


class VerifyPolicyError(IterationError):
    """Raised when the verify-missing or plan-lint policy forbids running the task."""


@dataclass(slots=True)
class IterationResult:
    mode: str = ""
    iteration: int = 0
    verify_status: str = ""
    verify_output: str = ""
    stalled: bool = False
    head_before: str = ""
    head_after: str = ""
    no_progress: int = 0
    exit_reason: ExitReason = ExitReason.NONE
    guardrail_reason: str = ""
    model: str = ""


@dataclass(slots=True)
class WorkUnit:
    task: PlanTask | None = None
    verify_commands: list[str] = field(default_factory=list)
    missing_verify: bool = False
    verify_instruction: str = ""

    @property
    def verify_command(self) -> str:
        return format_verify_commands(self.verify_commands)


def normalize_verify_output(output: str, limit: int = VERIFY_OUTPUT_LIMIT) -> str:
    output = output.strip()
    if len(output) <= limit:
        return output
    return output[-limit:]


class IterationController:
    """Runs bounded iterations of one mode against a repository and owns its run state."""

    def __init__(
        self,
        config: CadenceConfig,
        repo_root: Path,
        harness: Harness,
        state_store: StateStore,
        *,
        git: GitRepo | None = None,
        event_hook: EventHook | None = None,
        output_hook: OutputHook | None = None,
        ask: AskHook | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.harness = harness
        self.state_store = state_store
        self.git = git if git is not None else GitRepo(self.repo_root)
        self.event_hook = event_hook
        self.output_hook = output_hook
        self.ask = ask
        try:
            self.branch = self.git.current_branch()
        except GitError:
            self.branch = ""
        self.git_available = bool(self.branch)
        self.state: RunState = state_store.load()

    @property
    def plan_path(self) -> Path:
        return self.repo_root / self.config.loop.plan_path

    @property
    def log_dir(self) -> Path:
        return self.repo_root / self.config.loop.log_dir

    @property
    def harness_is_claude(self) -> bool:
        return Path(self.config.harness.command).name == "claude"

    def _emit(self, event: str, message: str = "", *, level: str = "info", **fields: Any) -> None:
        if self.event_hook is None:
            return
        payload: dict[str, Any] = {"event": event, "level": level}
        if message:
            payload["message"] = message
        payload.update(fields)
        self.event_hook(payload)

    def _warn(self, message: str, **fields: Any) -> None:
        self._emit("warning", message, level="warning", **fields)

    def _line_sink(self, log: IterationLog, source: str) -> OutputHook:
        def _sink(line: str) -> None:
            log.output(source, line)
            if self.output_hook:
                self.output_hook(line)

        return _sink

    def _read_head(self) -> str:
        if not self.git_available:
            return ""
        try:
            return self.git.head()
        except GitError as exc:
            raise IterationError(f"unable to read git HEAD: {exc}") from exc

    def _fingerprint(self, *, exclude_plan: bool = False) -> str:
        excluded_dirs = [".git", self.config.loop.state_dir, self.config.loop.log_dir]
        excluded_files = [self.config.loop.plan_path] if exclude_plan else []
        return workspace_fingerprint(self.repo_root, excluded_dirs, excluded_files)

    def select_model(
        self, mode: str, model_override: str = "", step_model: str = ""
    ) -> tuple[str, str]:
        """Return the model and harness args for the next invocation."""
        harness_config = self.config.harness
        escalation = self.config.escalation
        configured = model_override or step_model or harness_config.models.get(mode, "").strip()
        base = configured or harness_config.model_for(mode)
        model = compute_effective_model(self.state, escalation, base)
        escalated = is_escalated(self.state, escalation)
        explicit = bool(configured) or model != base

        args = harness_config.args
        if escalated or (explicit and not self.harness_is_claude):
            args = apply_model_choice(args, harness_config.model_flag, model, override=escalated)
        return model, args

    def _resolve_work(self, mode: str) -> WorkUnit:
        if mode != "build":
            return WorkUnit()

        task: PlanTask | None = None
        try:
            task = read_active_task(self.plan_path)
        except OSError as exc:
            self._warn(f"Plan lint: unable to parse active task: {exc}")
        if task is not None:
            self._lint_task(task)

        commands = list(task.verify_commands) if task is not None else []
        policy = self.config.verify.effective_missing_policy()
        if not commands and policy == "fallback":
            commands = read_agents_verify_fallback(self.repo_root / self.config.loop.agents_file)
            if commands:
                self._emit(
                    "verify_fallback",
                    f"Using {self.config.loop.agents_file} verify fallback (explicitly enabled).",
                )
        if commands:
            return WorkUnit(task=task, verify_commands=commands)

        reason = "placeholder (Verify: TBD)" if task and task.verify_placeholder else "missing"
        if policy == "agent_enforced":
            return WorkUnit(
                task=task,
                missing_verify=True,
                verify_instruction=(
                    f"This task has no valid Verify command ({reason}). "
                    "Your only job is to update the plan with a correct Verify command."
                ),
            )
        raise VerifyPolicyError(
            f"verification command {reason}. Update the plan before continuing."
        )

    def _lint_task(self, task: PlanTask) -> None:
        policy = self.config.verify.plan_lint_policy
        if policy == "off":
            return
        warnings = lint_task(task).warnings
        if not warnings:
            return
        message = "Plan lint: " + "; ".join(warnings)
        if policy == "fail":
            raise VerifyPolicyError(message)
        self._warn(message)

    def _render_prompt(self, mode: str, work: WorkUnit, pack: str) -> tuple[str, str]:
        task_title = work.task.title if work.task is not None else ""
        context_file = read_limited(self.repo_root / self.config.loop.state_dir / CONTEXT_FILE)
        prompt, prompt_hash = render_prompt(
            self.repo_root,
            PromptData(
                mode=mode,
                plan_path=self.config.loop.plan_path,
                active_task=task_title,
                verify_command=work.verify_command,
                context_file=context_file,
                prior_verification=self.state.last_verification_output,
                prior_verification_cmd=self.state.last_verification_command,
                prior_verification_status=self.state.last_verification_status,
            ),
        )
        context_pack = ""
        if mode == "build":
            context_pack = build_context_pack(
                work.task,
                work.verify_commands,
                self.config.loop.plan_path,
                work.verify_instruction,
            )
        if pack or context_pack:
            prompt = pack + context_pack + "\n\n" + prompt
        return prompt, prompt_hash

    async def run_verification(
        self, commands: list[str], on_line: OutputHook | None = None
    ) -> tuple[str, str]:
        """Run verify commands in order; stop at the first failure.

        Returns ``(status, output)`` where status is ``"pass"`` or ``"fail"``.
        """
        sections: list[str] = []
        status = "pass"
        for command in commands:
            command = command.strip()
            if not command:
                continue
            self._emit("verify_command", f"Running verification: {command}", command=command)
            buffer = TailBuffer(VERIFY_COMMAND_OUTPUT_LIMIT)
            try:
                process = await asyncio.create_subprocess_shell(
                    command,
                    cwd=str(self.repo_root),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as exc:
                sections.append(f"## Command: {command}\n{exc}\n")
                status = "fail"
                break
            return_code = await pump_output(process, buffer, on_line)
            output = buffer.getvalue()
            if output:
                sections.append(f"## Command: {command}\n{output}")
            if return_code != 0:
                status = "fail"
                break
        return status, normalize_verify_output("".join(sections))

    def _wip_branch_name(self) -> str:
        base = f"wip/verify-fail-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        for index in range(WIP_BRANCH_PROBES):
            candidate = base if index == 0 else f"{base}-{index}"
            try:
                if not self.git.branch_exists(candidate):
                    return candidate
            except GitError:
                continue
        raise GitError(
            f"could not find unique branch name after {WIP_BRANCH_PROBES} attempts"
        )

    def apply_verify_fail_policy(self, head_before: str, head_after: str) -> str:
        """Handle the commit left by a failed verification; return the effective head."""
        policy = self.config.verify.on_fail
        if not head_before or not head_after or head_before == head_after:
            return head_after
        try:
            if policy == "soft_reset":
                self.git.reset(head_before)
                message = "Verification failed; soft reset applied to keep changes staged."
            elif policy == "hard_reset":
                self.git.reset(head_before, hard=True)
                message = "Verification failed; hard reset applied (discarded working changes)."
            elif policy == "wip_branch":
                name = self._wip_branch_name()
                self.git.create_branch(name, head_after)
                self.git.reset(head_before)
                message = f"Verification failed; moved commit to {name} and soft reset."
            else:
                self._emit(
                    "verify_fail_policy",
                    f"Verification failed; keeping commit ({policy}).",
                    policy=policy,
                )
                return head_after
        except GitError as exc:
            self._warn(f"Verify-fail {policy} failed: {exc}", policy=policy)
            return head_after
        self._emit("verify_fail_policy", message, policy=policy)
        return head_before

    def _check_guardrails(
        self,
        mode: str,
        work: WorkUnit,
        *,
        head_before: str,
        head_after: str,
        plan_changed: bool,
        verify_status: str,
        fingerprint_before: str,
    ) -> GuardrailVerdict:
        if mode != "build":
            return GuardrailVerdict.passed()
        if self.git_available:
            worktree_changed = (
                head_after != head_before or not self.git.is_clean() or plan_changed
            )
            verdict = enforce_guardrails(self.config.guardrails, self.git, head_before, head_after)
            if not verdict.ok:
                return verdict
            if work.missing_verify:
                return enforce_missing_verify_guardrail(
                    self.git, self.config.loop.plan_path, head_before, head_after, plan_changed
                )
            return enforce_verification_guardrails(
                self.config.guardrails, verify_status, plan_changed, worktree_changed
            )
        if work.missing_verify:
            return enforce_missing_verify_no_git(
                plan_changed, fingerprint_before, self._fingerprint(exclude_plan=True)
            )
        return GuardrailVerdict.passed()

    def _record_hypothesis(
        self, output: str, iteration: int, verify_command: str, required: bool
    ) -> None:
        if required and not has_required_hypothesis(output):
            self._warn(
                "Hypothesis required after repeated verification failures, but the output "
                "did not include both HYPOTHESIS: and DIFFERENT_THIS_TIME: lines."
            )
        hypothesis, different = extract_hypothesis(output)
        if hypothesis or different:
            self.state = replace(
                self.state,
                hypotheses=[
                    *self.state.hypotheses,
                    Hypothesis(
                        iteration=iteration,
                        hypothesis=hypothesis,
                        different_action=different,
                        verify_command=verify_command,
                    ),
                ],
            )

    def _record_prior_signals(
        self,
        *,
        verdict: GuardrailVerdict,
        verify_status: str,
        exit_reason: ExitReason,
        plan_hash_before: str,
        plan_hash_after: str,
        retry_count: int,
    ) -> None:
        clean = (
            verdict.ok
            and verify_status != "fail"
            and not exit_reason
            and plan_hash_before == plan_hash_after
            and retry_count == 0
        )
        if clean:
            self.state = replace(
                self.state,
                prior_guardrail_status="",
                prior_guardrail_reason="",
                prior_exit_reason="",
                prior_retry_count=0,
                prior_retry_reason="",
                plan_hash_before="",
                plan_hash_after="",
                plan_diff_summary="",
                backpressure_injected=False,
            )
            return

        diff_summary = ""
        if plan_hash_before != plan_hash_after:
            if self.git_available:
                diff_summary = self.git.diff_excerpt(self.config.loop.plan_path, PLAN_DIFF_LINES)
            else:
                diff_summary = "Plan file was modified (git diff unavailable)."
        self.state = replace(
            self.state,
            prior_guardrail_status="pass" if verdict.ok else "fail",
            prior_guardrail_reason=verdict.reason,
            prior_exit_reason=str(exit_reason),
            plan_hash_before=plan_hash_before,
            plan_hash_after=plan_hash_after,
            plan_diff_summary=diff_summary,
        )

    def _report_escalation(self, event: EscalationEvent, log: IterationLog) -> None:
        if event.type is EscalationType.NONE:
            return
        if event.type is EscalationType.ESCALATED:
            message = (
                f"Escalating model {event.from_model or 'default'} -> {event.to_model} "
                f"(reason: {event.reason}, cooldown: {event.cooldown})"
            )
            level = "info"
        elif event.type is EscalationType.DE_ESCALATED:
            message = (
                f"De-escalating model {event.from_model} -> {event.to_model or 'default'} "
                f"({event.reason})"
            )
            level = "info"
        else:
            message = f"Model escalation suppressed ({event.reason})"
            level = "warning"
        payload = event.to_dict()
        name = str(payload.pop("event"))
        kind = payload.pop("type")
        log.write({"type": name, "escalation": kind, **payload})
        self._emit(name, message, level=level, type=kind, **payload)

    async def _answer_questions(
        self, prompt: str, output: str, *, model: str, args: str, log: IterationLog
    ) -> str:
        """Put the agent's questions to the user and re-run it with the answers.

        Returns the output of the last follow-up run, or ``output`` unchanged when
        nothing was asked or a follow-up run fails.
        """
        budget = question_budget(self.state)
        asked = 0
        current = output
        while asked < budget:
            questions = extract_questions(current)
            if not questions:
                break
            if self.ask is None:
                self._warn(
                    f"Agent asked {len(questions)} question(s) but input is not interactive; "
                    "continuing without answers."
                )
                break
            answers: list[tuple[Question, str]] = []
            for question in questions[: budget - asked]:
                self._emit("architect_question", question.display(), kind=question.kind)
                answers.append((question, self.ask(question.display()).strip()))
            asked += len(answers)
            log.write(
                {
                    "type": "architect_answers",
                    "questions": [question.display() for question, _ in answers],
                    "answered": sum(1 for _, answer in answers if answer),
                }
            )
            prompt += format_answers(answers)
            try:
                follow_up = await self.harness.run(
                    prompt, model=model, args=args, on_output=self._line_sink(log, "harness")
                )
            except HarnessError as exc:
                self._warn(f"Architect follow-up failed: {exc}")
                return output
            current = follow_up.output
        return current

    def _push(self, head_before: str, head_after: str, *, allowed: bool) -> None:
        if not self.git_available:
            self._emit("push_skipped", "Git unavailable; skipping push.", reason="git_unavailable")
        elif not allowed:
            self._emit(
                "push_skipped",
                "Skipping git push due to verification/guardrail failure.",
                reason="policy",
            )
        elif self.config.loop.no_push:
            self._emit("push_skipped", "No-push enabled; skipping git push.", reason="no_push")
        elif head_after == head_before:
            self._emit(
                "push_skipped", "No new commit to push. Skipping git push.", reason="no_commit"
            )
        else:
            self.git.push(self.branch)
            self._emit("push", f"Pushed {self.branch} to origin.", branch=self.branch)

    async def run_iteration(
        self,
        mode: str,
        iteration: int,
        *,
        no_progress: int = 0,
        model_override: str = "",
        step_model: str = "",
    ) -> IterationResult:
        """Run one full iteration and persist the resulting state."""
        head_before = self._read_head()
        plan_hash_before = file_hash(self.plan_path)
        work = self._resolve_work(mode)

        fingerprint_before = ""
        fingerprint_before_plan_excluded = ""
        if not self.git_available:
            fingerprint_before = self._fingerprint()
            if work.missing_verify:
                fingerprint_before_plan_excluded = self._fingerprint(exclude_plan=True)

        pack = ""
        if mode in {"build", "plan"}:
            pack = build_backpressure_pack(self.state, self.git_available)
        hypothesis_gate = bool(pack) and hypothesis_required(self.state)
        self.state = replace(self.state, backpressure_injected=bool(pack))

        prompt, prompt_hash = self._render_prompt(mode, work, pack)
        model, args = self.select_model(mode, model_override, step_model)
        verify_command = work.verify_command

        with IterationLog.open(self.log_dir, mode) as log:
            self._emit(
                "iteration_start",
                f"Logs:   {log.path}",
                mode=mode,
                iteration=iteration,
                model=model,
                log_path=str(log.path),
            )
            log.write(
                {
                    "type": "iteration_start",
                    "mode": mode,
                    "iteration": iteration,
                    "verify_cmd": verify_command,
                    "plan_hash": plan_hash_before,
                    "prompt_hash": prompt_hash,
                    "branch": self.branch,
                    "model": model,
                }
            )

            try:
                harness_result = await self.harness.run(
                    prompt, model=model, args=args, on_output=self._line_sink(log, "harness")
                )
            except (HarnessError, asyncio.CancelledError, KeyboardInterrupt) as exc:
                log.write(
                    {
                        "type": "iteration_end",
                        "mode": mode,
                        "iteration": iteration,
                        "model": model,
                        "error": str(exc) or type(exc).__name__,
                        "retry_count": getattr(exc, "retry_count", 0),
                    }
                )
                raise
            output = harness_result.output
            if mode == "architect":
                output = await self._answer_questions(
                    prompt, output, model=model, args=args, log=log
                )

            if self.state.backpressure_injected and not has_backpressure_response(output):
                self._warn(
                    "Backpressure was present but model did not include "
                    "'## Backpressure Response' section."
                )
            self._record_hypothesis(output, iteration, verify_command, hypothesis_gate)
            self.state = replace(
                self.state,
                prior_retry_count=harness_result.retry_count,
                prior_retry_reason=harness_result.retry_reason,
            )
            completion = has_completion_sentinel(output)

            previous_status = self.state.last_verification_status
            previous_hash = self.state.last_verification_hash
            verify_status = "skipped"
            verify_output = ""
            verify_hash = ""
            if mode == "build" and work.verify_commands:
                verify_status, verify_output = await self.run_verification(
                    work.verify_commands, self._line_sink(log, "verify")
                )
                verify_hash = hash_text(verify_output)
                failed = verify_status == "fail"
                self.state = replace(
                    self.state,
                    last_verification_status=verify_status,
                    last_verification_command=verify_command,
                    last_verification_output=verify_output if failed else "",
                    last_verification_hash=verify_hash,
                )
                self.state_store.save(self.state)

            head_after = self._read_head()
            if mode == "build" and self.git_available and verify_status == "fail":
                head_after = self.apply_verify_fail_policy(head_before, head_after)

            plan_hash_after = file_hash(self.plan_path)
            plan_changed = plan_hash_before != plan_hash_after

            verdict = self._check_guardrails(
                mode,
                work,
                head_before=head_before,
                head_after=head_after,
                plan_changed=plan_changed,
                verify_status=verify_status,
                fingerprint_before=fingerprint_before_plan_excluded,
            )
            if not verdict.ok:
                self._emit(
                    "guardrail_blocked",
                    f"Guardrail blocked: {verdict.reason}",
                    level="warning",
                    reason=verdict.reason,
                )

            if self.git_available:
                stalled = self.git.is_clean() and head_after == head_before and not plan_changed
            else:
                stalled = self._fingerprint() == fingerprint_before and not plan_changed

            progress = head_after != head_before or plan_changed
            if verify_status != "skipped" and (
                verify_status != previous_status or verify_hash != previous_hash
            ):
                progress = True

            threshold = self.config.loop.no_progress_iterations or 2
            exit_reason = ExitReason.NONE
            if completion and (
                mode != "build" or (not work.missing_verify and verify_status != "fail")
            ):
                exit_reason = ExitReason.AGENT_COMPLETE
            if progress:
                no_progress = 0
            else:
                no_progress += 1
                if no_progress >= threshold and not exit_reason:
                    exit_reason = ExitReason.NO_PROGRESS
            if (
                mode == "build"
                and not exit_reason
                and verify_status != "fail"
                and self.plan_path.is_file()
                and not has_unchecked_tasks(self.plan_path)
            ):
                exit_reason = ExitReason.NO_UNCHECKED_TASKS

            self.state = update_backpressure_state(
                self.state,
                self.config.recovery,
                verify_failed=verify_status == "fail",
                guardrail_failed=not verdict.ok,
                no_progress=not progress,
            )
            self.state, escalation = update_model_escalation_state(
                self.state, self.config.escalation
            )
            self._report_escalation(escalation, log)
            self._record_prior_signals(
                verdict=verdict,
                verify_status=verify_status,
                exit_reason=exit_reason,
                plan_hash_before=plan_hash_before,
                plan_hash_after=plan_hash_after,
                retry_count=harness_result.retry_count,
            )
            self.state_store.save(self.state)

            end_entry = {
                "type": "iteration_end",
                "mode": mode,
                "iteration": iteration,
                "verify_cmd": verify_command,
                "verify_status": verify_status,
                "verify_output": verify_output,
                "plan_hash": plan_hash_after,
                "prompt_hash": prompt_hash,
                "branch": self.branch,
                "head_before": head_before,
                "head_after": head_after,
                "guardrail": verdict.reason,
                "exit_reason": str(exit_reason),
                "completion_signal": COMPLETION_SENTINEL if completion else "",
                "model": model,
                "retry_count": harness_result.retry_count,
            }
            try:
                self._push(
                    head_before, head_after, allowed=verify_status != "fail" and verdict.ok
                )
            except GitError as exc:
                log.write({**end_entry, "error": str(exc)})
                raise
            log.write(end_entry)

        if stalled and not progress:
            self._emit("stalled", "No changes detected in iteration.")

        return IterationResult(
            mode=mode,
            iteration=iteration,
            verify_status=verify_status,
            verify_output=verify_output,
            stalled=stalled,
            head_before=head_before,
            head_after=head_after,
            no_progress=no_progress,
            exit_reason=exit_reason,
            guardrail_reason=verdict.reason,
            model=model,
        )

    async def run_mode(
        self,
        mode: str,
        *,
        max_iterations: int | None = None,
        model_override: str = "",
        step_model: str = "",
        start_no_progress: int = 0,
    ) -> IterationResult:
        """Iterate ``mode`` until an exit reason fires or ``max_iterations`` is reached.

        ``max_iterations`` of ``0`` means unbounded; ``None`` uses the mode's default.
        """
        if max_iterations is None:
            max_iterations = DEFAULT_MAX_ITERATIONS.get(mode, 0)
        result = IterationResult(mode=mode, no_progress=start_no_progress)
        no_progress = start_no_progress
        iteration = 0
        while True:
            if max_iterations > 0 and iteration >= max_iterations:
                self._emit("max_iterations", f"Reached max iterations: {max_iterations}")
                break
            if (
                mode == "build"
                and self.plan_path.is_file()
                and not has_unchecked_tasks(self.plan_path)
                and self.state.last_verification_status != "fail"
            ):
                self._emit("loop_exit", "No unchecked tasks remaining. Exiting.")
                result = replace(result, exit_reason=ExitReason.NO_UNCHECKED_TASKS)
                break

            iteration += 1
            self._emit(
                "iteration", f"Iteration {iteration} ({mode})", mode=mode, iteration=iteration
            )
            result = await self.run_iteration(
                mode,
                iteration,
                no_progress=no_progress,
                model_override=model_override,
                step_model=step_model,
            )
            no_progress = result.no_progress
            if result.exit_reason:
                self._announce_exit(
                    result.exit_reason, threshold=self.config.loop.no_progress_iterations or 2
                )
                break
        return result

    def _announce_exit(self, reason: ExitReason, *, threshold: int) -> None:
        messages = {
            ExitReason.AGENT_COMPLETE: "Agent signalled completion. Exiting.",
            ExitReason.NO_PROGRESS: f"No progress after {threshold} iterations. Exiting.",
            ExitReason.NO_UNCHECKED_TASKS: "No unchecked tasks remaining. Exiting.",
        }
        self._emit("loop_exit", messages.get(reason, f"Exiting: {reason}"), reason=str(reason))
