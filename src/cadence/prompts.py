from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from string import Template

from cadence.plan import PlanTask, format_verify_commands, hash_text
from cadence.recovery import COMPLETION_SENTINEL

CONTEXT_FILE_LIMIT = 8 * 1024

DEFAULT_TEMPLATES = {
    "architect": (
        "# ROLE: System Architect\n\n"
        "Refine the specifications for this repository. Ask for nothing you can infer.\n"
        "To ask the user, print `CADENCE_QUESTION: <question>` on its own line; tag it\n"
        "`CLARIFY:`, `DECISION:` or `ASSUMPTION:` after the colon when that helps.\n"
        "When the specifications are complete, print `$completion_sentinel` on its own line.\n"
        "\n$context_file\n"
    ),
    "plan": (
        "# ROLE: Planner\n\n"
        "Turn the specifications into `$plan_path`: small `- [ ]` tasks, each with a\n"
        "`- Verify:` command that proves it is done.\n"
        "When the plan covers every specification, print `$completion_sentinel` on its own line.\n"
        "\n$context_file\n"
    ),
    "build": (
        "# ROLE: Builder\n\n"
        "Implement exactly one task from `$plan_path`, then check it off and commit.\n\n"
        "Active task: $active_task\n"
        "Verify with: $verify_command\n\n"
        "When every task is complete and verified, print `$completion_sentinel` on its own line.\n"
        "\n$context_file\n"
    ),
}


@dataclass(slots=True)
class PromptData:
    mode: str
    plan_path: str
    active_task: str = ""
    verify_command: str = ""
    context_file: str = ""
    prior_verification: str = ""
    prior_verification_cmd: str = ""
    prior_verification_status: str = ""
    completion_sentinel: str = COMPLETION_SENTINEL


def read_limited(path: Path, limit: int = CONTEXT_FILE_LIMIT) -> str:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return content[:limit]


def prompt_file_for_mode(mode: str) -> str:
    return f"PROMPT_{mode}.md"


def render_prompt(repo_root: Path, data: PromptData) -> tuple[str, str]:
    """Render ``PROMPT_<mode>.md`` (or the built-in template); return text and its hash."""
    template_path = repo_root / prompt_file_for_mode(data.mode)
    try:
        source = template_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        source = DEFAULT_TEMPLATES.get(data.mode, DEFAULT_TEMPLATES["build"])
    rendered = Template(source).safe_substitute(asdict(data))
    return rendered, hash_text(rendered)


def build_context_pack(
    task: PlanTask | None,
    verify_commands: list[str],
    plan_path: str,
    verify_instruction: str = "",
) -> str:
    """Build-mode summary of the task the agent must work on this iteration."""
    lines = ["## Iteration Context", "", f"- Plan: `{plan_path}`"]
    if task is not None:
        lines.append(f"- Active task: {task.title}")
        if task.spec_refs:
            lines.append("- Specs: " + ", ".join(f"`{ref}`" for ref in task.spec_refs))
    verify = format_verify_commands(verify_commands)
    lines.append(f"- Verify: `{verify}`" if verify else "- Verify: (none)")
    if verify_instruction:
        lines += ["", f"**{verify_instruction}**"]
    return "\n".join(lines) + "\n"
