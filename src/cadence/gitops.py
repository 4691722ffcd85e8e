from __future__ import annotations

import subprocess
from pathlib import Path


class GitError(RuntimeError):
    """Raised when a git invocation exits non-zero."""


def find_unquoted_arrow(value: str) -> int:
    """Index of a `` -> `` rename separator outside double quotes, or -1."""
    in_quote = False
    index = 0
    while index < len(value):
        char = value[index]
        if char == '"':
            if not in_quote:
                in_quote = True
            else:
                backslashes = 0
                cursor = index - 1
                while cursor >= 0 and value[cursor] == "\\":
                    backslashes += 1
                    cursor -= 1
                if backslashes % 2 == 0:
                    in_quote = False
        elif not in_quote and value.startswith(" -> ", index):
            return index
        index += 1
    return -1


_SIMPLE_ESCAPES = {"\\": b"\\", '"': b'"', "n": b"\n", "t": b"\t", "r": b"\r"}


def unquote_git_path(path: str) -> str:
    """Undo git's C-style quoting (``"dir/caf\\303\\251.txt"``)."""
    path = path.strip()
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    inner = path[1:-1]
    result = bytearray()
    index = 0
    while index < len(inner):
        char = inner[index]
        if char == "\\" and index + 1 < len(inner):
            follower = inner[index + 1]
            if follower in _SIMPLE_ESCAPES:
                result += _SIMPLE_ESCAPES[follower]
                index += 2
                continue
            octal = inner[index + 1 : index + 4]
            if len(octal) == 3 and all(digit in "01234567" for digit in octal):
                value = int(octal, 8)
                if value <= 255:
                    result.append(value)
                    index += 4
                    continue
        result += char.encode("utf-8")
        index += 1
    return result.decode("utf-8", errors="replace")


def parse_status_path(value: str) -> str:
    """Path portion of one ``git status --porcelain`` entry (after the XY columns)."""
    value = value.strip()
    if not value:
        return ""
    arrow = find_unquoted_arrow(value)
    if arrow >= 0:
        return unquote_git_path(value[arrow + 4 :].strip())
    return unquote_git_path(value)


def ensure_gitignore_entries(repo_root: Path, entries: list[str]) -> list[str]:
    """Append missing ``entries`` to ``.gitignore``; return the ones added."""
    path = repo_root / ".gitignore"
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        content = ""
    present = {line.strip() for line in content.splitlines()}
    added = [entry for entry in entries if entry and entry not in present]
    if not added:
        return []
    prefix = content.rstrip("\n") + "\n" if content.strip() else ""
    path.write_text(prefix + "\n".join(added) + "\n", encoding="utf-8")
    return added


class GitRepo:
    """Thin wrapper over the git CLI for one working tree."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found") from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed")
        return proc

    def current_branch(self) -> str:
        return self._run_git(["branch", "--show-current"]).stdout.strip()

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def is_clean(self) -> bool:
        unstaged = self._run_git(["diff", "--quiet"], check=False)
        if unstaged.returncode != 0:
            return False
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return staged.returncode == 0

    def commit_count(self, head_before: str, head_after: str) -> int:
        output = self._run_git(["rev-list", "--count", f"{head_before}..{head_after}"]).stdout
        return int(output.strip() or "0")

    def changed_files(self, head_before: str, head_after: str) -> list[str]:
        """Files touched between two heads, or the dirty working tree when they match."""
        if head_before != head_after:
            output = self._run_git(["diff", "--name-only", f"{head_before}..{head_after}"]).stdout
            return [line.strip() for line in output.splitlines() if line.strip()]

        output = self._run_git(["status", "--porcelain"]).stdout
        files: list[str] = []
        for line in output.splitlines():
            line = line.rstrip("\r")
            if len(line) < 4:
                continue
            path = parse_status_path(line[3:])
            if path:
                files.append(path)
        return files

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        if proc.returncode == 0:
            return True
        if proc.returncode == 1:
            return False
        raise GitError(proc.stderr.strip() or f"unable to check branch {name}")

    def create_branch(self, name: str, start_point: str) -> None:
        self._run_git(["branch", name, start_point])

    def reset(self, target: str, *, hard: bool = False) -> None:
        self._run_git(["reset", "--hard" if hard else "--soft", target])

    def push(self, branch: str) -> None:
        proc = self._run_git(["push", "origin", branch], check=False)
        if proc.returncode == 0:
            return
        fallback = self._run_git(["push", "-u", "origin", branch], check=False)
        if fallback.returncode != 0:
            raise GitError("git push failed after fallback")

    def diff_excerpt(self, path: str, max_lines: int = 50) -> str:
        """Diff of one file against the index, falling back to the staged diff."""
        source = "working-tree"
        proc = self._run_git(["diff", "--", path], check=False)
        output = proc.stdout if proc.returncode == 0 else ""
        if not output:
            staged = self._run_git(["diff", "--cached", "--", path], check=False)
            if staged.returncode != 0:
                return "Plan file was modified (git diff failed)."
            output = staged.stdout
            source = "staged"
        if not output:
            return "Plan file was modified (diff empty)."
        lines = output.rstrip("\n").split("\n")
        if len(lines) > max_lines:
            lines = [*lines[:max_lines], "... (truncated)"]
        return f"[source: {source}]\n" + "\n".join(lines)
