"""Policy checks over the changes an iteration made to the repository."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from enum import StrEnum

from cadence.config import GuardrailsConfig
from cadence.gitops import GitError, GitRepo


class GuardrailCode(StrEnum):
    MAX_COMMITS_EXCEEDED = "max_commits_exceeded"
    MAX_FILES_CHANGED = "max_files_changed"
    FORBIDDEN_PATH = "forbidden_path"
    GIT_ERROR_COMMIT_COUNT = "git_error_commit_count"
    GIT_ERROR_FILE_LIST = "git_error_file_list"
    PLAN_UPDATE_WITHOUT_VERIFY = "plan_update_without_verify"
    VERIFY_REQUIRED_FOR_CHANGE = "verify_required_for_change"
    MISSING_VERIFY_PLAN_NOT_UPDATED = "missing_verify_plan_not_updated"
    MISSING_VERIFY_NON_PLAN_CHANGE = "missing_verify_non_plan_change"


@dataclass(slots=True, frozen=True)
class GuardrailVerdict:
    ok: bool
    code: GuardrailCode | None = None
    path: str = ""

    @classmethod
    def passed(cls) -> GuardrailVerdict:
        return cls(ok=True)

    @classmethod
    def blocked(cls, code: GuardrailCode, path: str = "") -> GuardrailVerdict:
        return cls(ok=False, code=code, path=path)

    @property
    def reason(self) -> str:
        if self.code is None:
            return ""
        if self.code is GuardrailCode.FORBIDDEN_PATH:
            return f"{self.code.value}:{self.path}"
        return self.code.value

    @classmethod
    def from_reason(cls, reason: str) -> GuardrailVerdict:
        """Rebuild a verdict from its persisted reason string."""
        if not reason:
            return cls.passed()
        prefix = f"{GuardrailCode.FORBIDDEN_PATH.value}:"
        if reason.startswith(prefix):
            return cls.blocked(GuardrailCode.FORBIDDEN_PATH, reason[len(prefix) :])
        try:
            return cls.blocked(GuardrailCode(reason))
        except ValueError as exc:
            raise ValueError(f"Unknown guardrail reason: {reason}") from exc


def _clean(path: str) -> str:
    return posixpath.normpath(path.strip().replace("\\", "/"))


def path_is_within(path: str, prefix: str) -> bool:
    """True when ``path`` equals ``prefix`` or sits below it on a directory boundary."""
    path = _clean(path)
    prefix = _clean(prefix)
    if prefix == ".":
        return True
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def enforce_guardrails(
    config: GuardrailsConfig, git: GitRepo, head_before: str, head_after: str
) -> GuardrailVerdict:
    if config.max_commits_per_iteration > 0:
        try:
            commits = git.commit_count(head_before, head_after)
        except (GitError, ValueError):
            return GuardrailVerdict.blocked(GuardrailCode.GIT_ERROR_COMMIT_COUNT)
        if commits > config.max_commits_per_iteration:
            return GuardrailVerdict.blocked(GuardrailCode.MAX_COMMITS_EXCEEDED)

    forbidden = [item for item in config.forbidden_paths if item.strip()]
    if config.max_files_changed <= 0 and not forbidden:
        return GuardrailVerdict.passed()

    try:
        files = git.changed_files(head_before, head_after)
    except GitError:
        return GuardrailVerdict.blocked(GuardrailCode.GIT_ERROR_FILE_LIST)

    if config.max_files_changed > 0 and len(files) > config.max_files_changed:
        return GuardrailVerdict.blocked(GuardrailCode.MAX_FILES_CHANGED)

    for changed in files:
        for entry in forbidden:
            if path_is_within(changed, entry):
                return GuardrailVerdict.blocked(GuardrailCode.FORBIDDEN_PATH, _clean(entry))
    return GuardrailVerdict.passed()


def enforce_verification_guardrails(
    config: GuardrailsConfig, verify_status: str, plan_changed: bool, worktree_changed: bool
) -> GuardrailVerdict:
    if config.require_verify_for_plan_update and plan_changed and verify_status != "pass":
        return GuardrailVerdict.blocked(GuardrailCode.PLAN_UPDATE_WITHOUT_VERIFY)
    if config.require_verify_on_change and worktree_changed and verify_status == "skipped":
        return GuardrailVerdict.blocked(GuardrailCode.VERIFY_REQUIRED_FOR_CHANGE)
    return GuardrailVerdict.passed()


def enforce_missing_verify_guardrail(
    git: GitRepo, plan_path: str, head_before: str, head_after: str, plan_changed: bool
) -> GuardrailVerdict:
    """Without a verify command only an edit to the plan itself is acceptable."""
    if not plan_changed:
        return GuardrailVerdict.blocked(GuardrailCode.MISSING_VERIFY_PLAN_NOT_UPDATED)
    try:
        files = git.changed_files(head_before, head_after)
    except GitError:
        return GuardrailVerdict.blocked(GuardrailCode.GIT_ERROR_FILE_LIST)
    plan = _clean(plan_path)
    for changed in files:
        if _clean(changed) != plan:
            return GuardrailVerdict.blocked(GuardrailCode.MISSING_VERIFY_NON_PLAN_CHANGE)
    return GuardrailVerdict.passed()


def enforce_missing_verify_no_git(
    plan_changed: bool, fingerprint_before: str, fingerprint_after: str
) -> GuardrailVerdict:
    """Same rule as :func:`enforce_missing_verify_guardrail` over workspace fingerprints.

    The fingerprints must exclude the plan file itself.
    """
    if not plan_changed:
        return GuardrailVerdict.blocked(GuardrailCode.MISSING_VERIFY_PLAN_NOT_UPDATED)
    if fingerprint_before and fingerprint_after and fingerprint_before != fingerprint_after:
        return GuardrailVerdict.blocked(GuardrailCode.MISSING_VERIFY_NON_PLAN_CHANGE)
    return GuardrailVerdict.passed()
