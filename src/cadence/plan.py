"""Reading the implementation plan: the active task, its verify commands, lint."""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass, field
from collections.abc import Iterable
from pathlib import Path

TASK_LINE = re.compile(r"^\s*[-*]\s+\[\s\]\s+(.+)$")
VERIFY_LINE = re.compile(r"^\s*[-*]\s+Verify:\s*(.*)$")
SPEC_LINE = re.compile(r"^\s*[-*]\s+Spec:\s*(.+)$")
OUTCOME_LINE = re.compile(r"^\s*[-*]?\s*Outcome:\s*\S+")
AGENTS_VERIFY_PREFIXES = ("Tests (fast):", "Tests (full):", "Typecheck/build:")


@dataclass(slots=True)
class PlanTask:
    title: str = ""
    verify_commands: list[str] = field(default_factory=list)
    verify_placeholder: bool = False
    spec_refs: list[str] = field(default_factory=list)
    block: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanLint:
    multiple_verify: bool = False
    multiple_outcome: bool = False

    @property
    def warnings(self) -> list[str]:
        found: list[str] = []
        if self.multiple_verify:
            found.append("multiple Verify commands")
        if self.multiple_outcome:
            found.append("multiple Outcome lines")
        return found


def is_verify_placeholder(value: str) -> bool:
    value = value.strip().lower()
    if not value.startswith("tbd"):
        return False
    return len(value) == 3 or value[3] in " :-"


def _read_lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8", errors="replace").splitlines()


def read_active_task(plan_path: Path) -> PlanTask | None:
    """First unchecked task in the plan together with its Verify and Spec lines.

    Returns ``None`` when every task is checked off. Raises ``OSError`` when the
    plan cannot be read.
    """
    task: PlanTask | None = None
    in_verify_block = False
    fence_opened = False
    for line in _read_lines(plan_path):
        match = TASK_LINE.match(line)
        if match:
            if task is not None:
                break
            task = PlanTask(title=match.group(1).strip(), block=[line])
            continue
        if task is None:
            continue
        task.block.append(line)

        if in_verify_block:
            trimmed = line.strip()
            if trimmed.startswith("```"):
                # A bare "Verify:" line may be followed by the opening fence.
                if not fence_opened:
                    fence_opened = True
                    continue
                in_verify_block = False
                continue
            command = trimmed.strip("`").strip()
            if not command:
                continue
            if is_verify_placeholder(command):
                task.verify_placeholder = True
                continue
            task.verify_commands.append(command)
            continue

        verify = VERIFY_LINE.match(line)
        if verify:
            raw = verify.group(1).strip()
            if not raw or raw.startswith("```"):
                in_verify_block = True
                fence_opened = bool(raw)
                continue
            raw = raw.strip("`").strip()
            if not raw:
                in_verify_block = True
                fence_opened = True
            elif is_verify_placeholder(raw):
                task.verify_placeholder = True
            else:
                task.verify_commands.append(raw)
            continue

        spec = SPEC_LINE.match(line)
        if spec:
            ref = spec.group(1).split("#", 1)[0].strip()
            if ref:
                task.spec_refs.append(ref)
    return task


def lint_task(task: PlanTask) -> PlanLint:
    outcomes = sum(1 for line in task.block if OUTCOME_LINE.match(line))
    return PlanLint(multiple_verify=len(task.verify_commands) > 1, multiple_outcome=outcomes > 1)


def has_unchecked_tasks(plan_path: Path) -> bool:
    try:
        lines = _read_lines(plan_path)
    except OSError:
        return False
    return any(TASK_LINE.match(line) for line in lines)


def read_agents_verify_fallback(agents_path: Path) -> list[str]:
    try:
        lines = [line.strip() for line in _read_lines(agents_path)]
    except OSError:
        return []
    for prefix in AGENTS_VERIFY_PREFIXES:
        for line in lines:
            if not line.startswith(prefix):
                continue
            command = line.removeprefix(prefix).strip()
            if not command or "[" in command:
                continue
            return [command]
    return []


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def file_hash(path: Path) -> str:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


def format_verify_commands(commands: list[str]) -> str:
    return " && ".join(command.strip() for command in commands if command.strip())


def workspace_fingerprint(
    root: Path, exclude_dirs: Iterable[str], exclude_files: Iterable[str] = ()
) -> str:
    """Hash of every file path and content under ``root``, used when git is unavailable."""
    root = root.resolve()
    skip_dirs = {(root / name).resolve() for name in exclude_dirs if name.strip()}
    skip_files = {(root / name).resolve() for name in exclude_files if name.strip()}
    digest = hashlib.sha256()
    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        dirnames[:] = sorted(name for name in dirnames if current_path / name not in skip_dirs)
        for name in sorted(filenames):
            path = current_path / name
            if path in skip_files:
                continue
            try:
                data = path.read_bytes()
            except OSError:
                continue
            digest.update(path.relative_to(root).as_posix().encode("utf-8"))
            digest.update(b"\0")
            digest.update(data)
    return digest.hexdigest()
