import asyncio
import json
import subprocess
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from cadence.config import CadenceConfig
from cadence.gitops import GitError, GitRepo
from cadence.harness import Harness, HarnessError, HarnessResult
from cadence.loop import ExitReason, IterationController, VerifyPolicyError
from cadence.state import RecoveryMode, StateStore

PLAN = "IMPLEMENTATION_PLAN.md"


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path, plan: str) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / ".gitignore").write_text("logs/\n.cadence/\n", encoding="utf-8")
    (repo_path / PLAN).write_text(plan, encoding="utf-8")
    _run(["git", "add", "-A"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _head(repo_path: Path) -> str:
    return _run(["git", "rev-parse", "HEAD"], cwd=repo_path).strip()


def _commit(repo_path: Path, files: dict[str, str], message: str = "work") -> None:
    for relative, content in files.items():
        target = repo_path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    _run(["git", "add", "-A"], cwd=repo_path)
    _run(["git", "commit", "-m", message], cwd=repo_path)


class FakeHarness(Harness):
    """Replays queued outputs and side effects, recording what it was asked to do."""

    def __init__(
        self,
        outputs: list[str] | None = None,
        actions: list[Callable[[], None] | None] | None = None,
    ) -> None:
        self.outputs = list(outputs or [])
        self.actions = list(actions or [])
        self.prompts: list[str] = []
        self.models: list[str] = []
        self.args: list[str] = []

    async def run(self, prompt: str, *, model: str, args: str, on_output=None) -> HarnessResult:
        self.prompts.append(prompt)
        self.models.append(model)
        self.args.append(args)
        action = self.actions.pop(0) if self.actions else None
        if action is not None:
            action()
        output = self.outputs.pop(0) if self.outputs else ""
        for line in output.splitlines():
            if on_output:
                on_output(line)
        return HarnessResult(output=output)


class FailingHarness(Harness):
    async def run(self, prompt: str, *, model: str, args: str, on_output=None) -> HarnessResult:
        _ = prompt, model, args, on_output
        raise HarnessError("agent crashed", exit_code=2, output="trace")


def _controller(
    repo: Path,
    harness: Harness,
    *,
    config: CadenceConfig | None = None,
    events: list[dict[str, Any]] | None = None,
    git: GitRepo | None = None,
    ask: Callable[[str], str] | None = None,
) -> IterationController:
    config = config or CadenceConfig()
    config.loop.no_push = True
    return IterationController(
        config,
        repo,
        harness,
        StateStore(repo / config.loop.state_dir),
        git=git,
        event_hook=events.append if events is not None else None,
        ask=ask,
    )


def _log_entries(repo: Path, mode: str = "build") -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for path in sorted((repo / "logs").glob(f"{mode}-*.jsonl")):
        entries.extend(json.loads(line) for line in path.read_text(encoding="utf-8").splitlines())
    return entries


def _events(events: list[dict[str, Any]], name: str) -> list[dict[str, Any]]:
    return [event for event in events if event["event"] == name]


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


def test_passing_build_iteration_commits_and_finishes_plan(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add file\n  - Verify: test -f done.txt\n")
    events: list[dict[str, Any]] = []

    def _work() -> None:
        _commit(repo, {"done.txt": "ok\n", PLAN: "- [x] add file\n  - Verify: test -f done.txt\n"})

    harness = FakeHarness(outputs=["working\nfinished"], actions=[_work])
    controller = _controller(repo, harness, events=events)
    head_before = _head(repo)

    result = asyncio.run(controller.run_iteration("build", 1))

    assert result.verify_status == "pass"
    assert result.exit_reason is ExitReason.NO_UNCHECKED_TASKS
    assert result.head_before == head_before
    assert result.head_after == _head(repo) != head_before
    assert StateStore(repo / ".cadence").load().last_verification_status == "pass"
    assert "- Active task: add file" in harness.prompts[0]
    assert _events(events, "push_skipped")[0]["reason"] == "no_push"

    entries = _log_entries(repo)
    assert entries[0]["type"] == "iteration_start"
    assert entries[0]["verify_cmd"] == "test -f done.txt"
    assert [entry["text"] for entry in entries if entry["type"] == "output"] == [
        "working",
        "finished",
    ]
    assert entries[-1]["type"] == "iteration_end"
    assert entries[-1]["exit_reason"] == "no_unchecked_tasks"
    assert entries[-1]["verify_status"] == "pass"


def test_failed_verification_soft_resets_and_feeds_backpressure(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: echo boom && false\n")
    events: list[dict[str, Any]] = []
    head_before = _head(repo)

    harness = FakeHarness(
        outputs=["CADENCE_COMPLETE", "still trying"],
        actions=[lambda: _commit(repo, {"work.txt": "wip\n"})],
    )
    controller = _controller(repo, harness, events=events)

    first = asyncio.run(controller.run_iteration("build", 1))

    assert first.verify_status == "fail"
    assert first.exit_reason is ExitReason.NONE
    assert first.head_after == head_before
    assert _head(repo) == head_before
    assert "work.txt" in _run(["git", "diff", "--cached", "--name-only"], cwd=repo)
    assert "soft reset" in _events(events, "verify_fail_policy")[0]["message"]
    assert _events(events, "push_skipped")[0]["reason"] == "policy"
    assert "boom" in controller.state.last_verification_output
    assert controller.state.consecutive_verify_fails == 1

    second = asyncio.run(controller.run_iteration("build", 2))

    assert second.verify_status == "fail"
    assert "## Backpressure Pack (from previous iteration)" in harness.prompts[1]
    assert "### Verification Failure" in harness.prompts[1]
    assert "## Backpressure Pack" not in harness.prompts[0]
    warnings = [event["message"] for event in _events(events, "warning")]
    assert any("Backpressure Response" in message for message in warnings)
    assert controller.state.consecutive_verify_fails == 2
    assert controller.state.recovery_mode is RecoveryMode.VERIFY


def test_wip_branch_policy_moves_failed_commit(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    config = CadenceConfig()
    config.verify.on_fail = "wip_branch"
    harness = FakeHarness(actions=[lambda: _commit(repo, {"work.txt": "wip\n"})])
    controller = _controller(repo, harness, config=config)
    head_before = _head(repo)

    asyncio.run(controller.run_iteration("build", 1))

    branches = _run(["git", "branch", "--list", "wip/verify-fail-*"], cwd=repo).split()
    assert len(branches) == 1
    assert _run(["git", "rev-parse", branches[0]], cwd=repo).strip() != head_before
    assert _head(repo) == head_before


def test_keep_commit_policy_leaves_history_alone(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    config = CadenceConfig()
    config.verify.on_fail = "keep_commit"
    events: list[dict[str, Any]] = []
    controller = _controller(repo, FakeHarness(), config=config, events=events)
    head_before = _head(repo)
    _commit(repo, {"work.txt": "wip\n"})

    assert controller.apply_verify_fail_policy(head_before, _head(repo)) == _head(repo)
    assert "keeping commit" in _events(events, "verify_fail_policy")[0]["message"]


def test_strict_policy_refuses_task_without_verify(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add parser\n- [ ] other\n  - Verify: TBD\n")
    harness = FakeHarness()
    controller = _controller(repo, harness)

    with pytest.raises(VerifyPolicyError, match="verification command missing"):
        asyncio.run(controller.run_iteration("build", 1))

    assert harness.prompts == []


def test_placeholder_verify_is_reported_as_placeholder(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add parser\n  - Verify: TBD\n")
    controller = _controller(repo, FakeHarness())

    with pytest.raises(VerifyPolicyError, match="placeholder"):
        asyncio.run(controller.run_iteration("build", 1))


def test_plan_lint_fail_policy_blocks_iteration(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: true\n  - Verify: false\n")
    config = CadenceConfig()
    config.verify.plan_lint_policy = "fail"

    with pytest.raises(VerifyPolicyError, match="multiple Verify commands"):
        asyncio.run(_controller(repo, FakeHarness(), config=config).run_iteration("build", 1))


def test_agents_fallback_supplies_verify_command(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n")
    (repo / "AGENTS.md").write_text("Tests (fast): true\n", encoding="utf-8")
    config = CadenceConfig()
    config.verify.missing_policy = "fallback"
    config.verify.allow_fallback = True
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _controller(repo, FakeHarness(), config=config, events=events).run_iteration("build", 1)
    )

    assert result.verify_status == "pass"
    assert _events(events, "verify_fallback")


def test_agent_enforced_accepts_plan_only_edit(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add parser\n")
    config = CadenceConfig()
    config.verify.missing_policy = "agent_enforced"

    def _fix_plan() -> None:
        (repo / PLAN).write_text("- [ ] add parser\n  - Verify: pytest -q\n", encoding="utf-8")

    harness = FakeHarness(actions=[_fix_plan])
    result = asyncio.run(_controller(repo, harness, config=config).run_iteration("build", 1))

    assert "Your only job is to update the plan" in harness.prompts[0]
    assert result.verify_status == "skipped"
    assert result.guardrail_reason == ""


def test_agent_enforced_blocks_edits_outside_plan(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add parser\n")
    config = CadenceConfig()
    config.verify.missing_policy = "agent_enforced"
    events: list[dict[str, Any]] = []

    def _overreach() -> None:
        (repo / PLAN).write_text("- [ ] add parser\n  - Verify: pytest -q\n", encoding="utf-8")
        (repo / "parser.py").write_text("x = 1\n", encoding="utf-8")

    controller = _controller(
        repo, FakeHarness(actions=[_overreach]), config=config, events=events
    )
    result = asyncio.run(controller.run_iteration("build", 1))

    assert result.guardrail_reason == "missing_verify_non_plan_change"
    assert _events(events, "guardrail_blocked")
    assert controller.state.prior_guardrail_status == "fail"


def test_agent_enforced_without_git_uses_fingerprints(repo: Path) -> None:
    (repo / PLAN).write_text("- [ ] add parser\n", encoding="utf-8")
    config = CadenceConfig()
    config.verify.missing_policy = "agent_enforced"

    def _plan_only() -> None:
        (repo / PLAN).write_text("- [ ] add parser\n  - Verify: true\n", encoding="utf-8")

    def _overreach() -> None:
        (repo / PLAN).write_text("- [ ] add parser\n  - Verify: make\n", encoding="utf-8")
        (repo / "parser.py").write_text("x = 1\n", encoding="utf-8")

    ok = _controller(repo, FakeHarness(actions=[_plan_only]), config=config)
    assert ok.git_available is False
    assert asyncio.run(ok.run_iteration("build", 1)).guardrail_reason == ""

    (repo / PLAN).write_text("- [ ] add parser\n", encoding="utf-8")
    blocked = _controller(repo, FakeHarness(actions=[_overreach]), config=config)
    result = asyncio.run(blocked.run_iteration("build", 1))
    assert result.guardrail_reason == "missing_verify_non_plan_change"


def test_forbidden_path_guardrail_blocks_and_counts(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: true\n")
    config = CadenceConfig()
    config.guardrails.forbidden_paths = ["specs"]
    events: list[dict[str, Any]] = []
    harness = FakeHarness(actions=[lambda: _commit(repo, {"specs/api.md": "# API\n"})])
    controller = _controller(repo, harness, config=config, events=events)

    result = asyncio.run(controller.run_iteration("build", 1))

    assert result.verify_status == "pass"
    assert result.guardrail_reason == "forbidden_path:specs"
    assert controller.state.consecutive_guardrail_fails == 1
    assert controller.state.prior_guardrail_reason == "forbidden_path:specs"
    assert _events(events, "push_skipped")[0]["reason"] == "policy"


def test_repeated_failures_escalate_model(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: echo boom && false\n")
    config = CadenceConfig()
    config.escalation.enabled = True
    config.escalation.model_default = "sonnet"
    config.escalation.model_strong = "opus"
    events: list[dict[str, Any]] = []
    harness = FakeHarness()
    controller = _controller(repo, harness, config=config, events=events)

    result = asyncio.run(controller.run_mode("build", max_iterations=3))

    assert harness.models == ["sonnet", "sonnet", "opus"]
    assert harness.args[2] == "--model opus"
    assert result.exit_reason is ExitReason.NO_PROGRESS
    assert _events(events, "model_escalation")[0]["type"] == "escalated"
    assert any(entry["type"] == "model_escalation" for entry in _log_entries(repo))


def test_select_model_injects_flag_only_for_other_harnesses(repo: Path) -> None:
    claude = _controller(repo, FakeHarness())
    assert claude.select_model("build", "opus") == ("opus", "")
    assert claude.select_model("plan") == ("opus", "")

    config = CadenceConfig()
    config.harness.command = "aider"
    config.harness.args = "--yes"
    other = _controller(repo, FakeHarness(), config=config)
    assert other.select_model("build", "gpt-5") == ("gpt-5", "--yes --model gpt-5")
    assert other.select_model("build", step_model="o3") == ("o3", "--yes --model o3")
    assert other.select_model("build") == ("sonnet", "--yes")


def test_architect_completion_exits_after_one_iteration(repo: Path) -> None:
    _init_git_repo(repo, "")
    events: list[dict[str, Any]] = []
    harness = FakeHarness(outputs=["specs done\nCADENCE_COMPLETE"])

    result = asyncio.run(_controller(repo, harness, events=events).run_mode("architect"))

    assert result.exit_reason is ExitReason.AGENT_COMPLETE
    assert len(harness.prompts) == 1
    assert "# ROLE: System Architect" in harness.prompts[0]
    assert "Agent signalled completion" in _events(events, "loop_exit")[0]["message"]


def test_no_progress_without_git_stops_the_loop(repo: Path) -> None:
    events: list[dict[str, Any]] = []
    harness = FakeHarness()
    controller = _controller(repo, harness, events=events)

    result = asyncio.run(controller.run_mode("architect", max_iterations=5))

    assert result.exit_reason is ExitReason.NO_PROGRESS
    assert len(harness.prompts) == 2
    assert _events(events, "stalled")
    assert _events(events, "push_skipped")[0]["reason"] == "git_unavailable"


def test_plan_mode_defaults_to_one_iteration(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: true\n")
    events: list[dict[str, Any]] = []
    harness = FakeHarness()

    asyncio.run(_controller(repo, harness, events=events).run_mode("plan"))

    assert len(harness.prompts) == 1
    assert _events(events, "max_iterations")


def test_build_loop_skips_when_nothing_is_unchecked(repo: Path) -> None:
    _init_git_repo(repo, "- [x] done\n")
    harness = FakeHarness()

    result = asyncio.run(_controller(repo, harness).run_mode("build"))

    assert result.exit_reason is ExitReason.NO_UNCHECKED_TASKS
    assert harness.prompts == []


def test_harness_failure_is_logged_then_raised(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: true\n")
    controller = _controller(repo, FailingHarness())

    with pytest.raises(HarnessError, match="agent crashed"):
        asyncio.run(controller.run_iteration("build", 1))

    last = _log_entries(repo)[-1]
    assert last["type"] == "iteration_end"
    assert last["error"] == "agent crashed"


def test_run_verification_stops_at_first_failure(repo: Path) -> None:
    controller = _controller(repo, FakeHarness())
    lines: list[str] = []

    status, output = asyncio.run(
        controller.run_verification(["echo one", "false", "echo never"], lines.append)
    )

    assert status == "fail"
    assert "## Command: echo one\none" in output
    assert "never" not in output
    assert lines == ["one"]


def test_run_verification_handles_lines_longer_than_stream_limit(repo: Path) -> None:
    controller = _controller(repo, FakeHarness())
    command = f"\"{sys.executable}\" -c \"print('x' * 200000)\""

    status, output = asyncio.run(controller.run_verification([command]))

    assert status == "pass"
    assert 0 < len(output) <= 12 * 1024
    assert output.endswith("x")


def test_silent_verify_failure_still_reaches_next_prompt(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    harness = FakeHarness()
    controller = _controller(repo, harness)

    for iteration in (1, 2, 3):
        asyncio.run(controller.run_iteration("build", iteration))

    assert controller.state.last_verification_output == ""
    assert "### Verification Failure" in harness.prompts[1]
    assert "(no output)" in harness.prompts[1]
    assert "HYPOTHESIS REQUIRED" in harness.prompts[2]


def test_hard_reset_policy_discards_failed_commit(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    config = CadenceConfig()
    config.verify.on_fail = "hard_reset"
    events: list[dict[str, Any]] = []
    harness = FakeHarness(actions=[lambda: _commit(repo, {"work.txt": "wip\n"})])
    controller = _controller(repo, harness, config=config, events=events)
    head_before = _head(repo)

    result = asyncio.run(controller.run_iteration("build", 1))

    assert result.head_after == head_before
    assert _head(repo) == head_before
    assert not (repo / "work.txt").exists()
    assert _run(["git", "status", "--porcelain"], cwd=repo) == ""
    assert "hard reset" in _events(events, "verify_fail_policy")[0]["message"]


class _FrozenClock(datetime):
    @classmethod
    def now(cls, tz=None):
        return cls(2026, 1, 2, 3, 4, 5, tzinfo=tz)


def test_wip_branch_name_skips_existing_branches(
    repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    monkeypatch.setattr("cadence.loop.datetime", _FrozenClock)
    base = "wip/verify-fail-20260102-030405"
    _run(["git", "branch", base], cwd=repo)
    _run(["git", "branch", f"{base}-1"], cwd=repo)
    config = CadenceConfig()
    config.verify.on_fail = "wip_branch"
    events: list[dict[str, Any]] = []
    controller = _controller(repo, FakeHarness(), config=config, events=events)
    head_before = _head(repo)
    _commit(repo, {"work.txt": "wip\n"})
    failed_head = _head(repo)

    assert controller.apply_verify_fail_policy(head_before, failed_head) == head_before

    assert _run(["git", "rev-parse", f"{base}-2"], cwd=repo).strip() == failed_head
    assert _run(["git", "rev-parse", base], cwd=repo).strip() == head_before
    assert f"{base}-2" in _events(events, "verify_fail_policy")[0]["message"]


class BrokenResetRepo(GitRepo):
    def reset(self, target: str, *, hard: bool = False) -> None:
        raise GitError(f"cannot reset to {target}")


def test_verify_fail_policy_keeps_head_when_git_fails(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] add feature\n  - Verify: false\n")
    events: list[dict[str, Any]] = []
    controller = _controller(repo, FakeHarness(), events=events, git=BrokenResetRepo(repo))
    head_before = _head(repo)
    _commit(repo, {"work.txt": "wip\n"})
    head_after = _head(repo)

    assert controller.apply_verify_fail_policy(head_before, head_after) == head_after

    warning = _events(events, "warning")[0]
    assert warning["policy"] == "soft_reset"
    assert "Verify-fail soft_reset failed: cannot reset to" in warning["message"]
    assert not _events(events, "verify_fail_policy")
    assert _head(repo) == head_after


def test_architect_questions_are_answered_and_fed_back(repo: Path) -> None:
    _init_git_repo(repo, "")
    asked: list[str] = []

    def _answer(question: str) -> str:
        asked.append(question)
        return " Postgres "

    harness = FakeHarness(
        outputs=[
            "CADENCE_QUESTION: CLARIFY: Which database?\n"
            "```\nCADENCE_QUESTION: ignored inside fence\n```",
            "specs updated\nCADENCE_COMPLETE",
        ]
    )
    controller = _controller(repo, harness, ask=_answer)

    result = asyncio.run(controller.run_iteration("architect", 1))

    assert asked == ["[CLARIFY] Which database?"]
    assert len(harness.prompts) == 2
    assert harness.prompts[1].startswith(harness.prompts[0])
    assert harness.prompts[1].endswith(
        "# Architect Answers\n\nQ: [CLARIFY] Which database?\nA: Postgres"
    )
    assert result.exit_reason is ExitReason.AGENT_COMPLETE
    answers = [
        entry for entry in _log_entries(repo, "architect") if entry["type"] == "architect_answers"
    ]
    assert [(entry["questions"], entry["answered"]) for entry in answers] == [(asked, 1)]


def test_architect_questions_stop_at_budget(repo: Path) -> None:
    _init_git_repo(repo, "")
    asked: list[str] = []

    def _no_answer(question: str) -> str:
        asked.append(question)
        return ""

    curious = "CADENCE_QUESTION: first?\nCADENCE_QUESTION: DECISION: second?"
    harness = FakeHarness(outputs=[curious, curious, curious, curious])
    controller = _controller(repo, harness, ask=_no_answer)

    asyncio.run(controller.run_iteration("architect", 1))

    assert asked == ["first?", "[DECISION] second?", "first?"]
    assert len(harness.prompts) == 3
    assert "Q: first?\nA: (no answer provided)" in harness.prompts[2]


def test_architect_questions_without_input_are_skipped(repo: Path) -> None:
    _init_git_repo(repo, "")
    events: list[dict[str, Any]] = []
    harness = FakeHarness(outputs=["CADENCE_QUESTION: anyone there?"])

    asyncio.run(_controller(repo, harness, events=events).run_iteration("architect", 1))

    assert len(harness.prompts) == 1
    assert "not interactive" in _events(events, "warning")[0]["message"]


class FollowUpFailingHarness(FakeHarness):
    async def run(self, prompt: str, *, model: str, args: str, on_output=None) -> HarnessResult:
        if self.prompts:
            self.prompts.append(prompt)
            raise HarnessError("follow-up crashed", exit_code=1)
        return await super().run(prompt, model=model, args=args, on_output=on_output)


def test_failed_architect_follow_up_keeps_first_output(repo: Path) -> None:
    _init_git_repo(repo, "")
    events: list[dict[str, Any]] = []
    harness = FollowUpFailingHarness(outputs=["CADENCE_QUESTION: why?\nCADENCE_COMPLETE"])
    controller = _controller(repo, harness, events=events, ask=lambda question: "because")

    result = asyncio.run(controller.run_iteration("architect", 1))

    assert len(harness.prompts) == 2
    assert result.exit_reason is ExitReason.AGENT_COMPLETE
    assert "Architect follow-up failed: follow-up crashed" in _events(events, "warning")[0][
        "message"
    ]


def test_build_mode_ignores_question_lines(repo: Path) -> None:
    _init_git_repo(repo, "- [ ] task\n  - Verify: true\n")
    asked: list[str] = []

    def _answer(question: str) -> str:
        asked.append(question)
        return "yes"

    harness = FakeHarness(outputs=["CADENCE_QUESTION: should I?"])

    asyncio.run(_controller(repo, harness, ask=_answer).run_iteration("build", 1))

    assert asked == []
    assert len(harness.prompts) == 1
