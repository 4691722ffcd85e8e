"""Questions the agent raises for the user during architect runs."""

from __future__ import annotations

from dataclasses import dataclass

from cadence.fence import lines_outside_fences
from cadence.state import RunState

QUESTION_PREFIX = "CADENCE_QUESTION:"
QUESTION_KINDS = ("CLARIFY", "DECISION", "ASSUMPTION")
ASSUMPTION_SCOPES = ("STICKY", "GLOBAL")
BASE_QUESTIONS = 3
BONUS_QUESTIONS_PER_FAILURE = 1
ANSWERS_HEADING = "# Architect Answers"
NO_ANSWER = "(no answer provided)"


@dataclass(slots=True, frozen=True)
class Question:
    text: str
    kind: str = ""
    scope: str = ""

    def display(self) -> str:
        if not self.kind:
            return self.text
        tag = f"{self.kind}:{self.scope}" if self.scope else self.kind
        return f"[{tag}] {self.text}"


def _parse_question(rest: str) -> Question:
    for kind in QUESTION_KINDS:
        if not rest.startswith(f"{kind}:"):
            continue
        text = rest[len(kind) + 1 :].strip()
        scope = ""
        if kind == "ASSUMPTION":
            head, sep, tail = text.partition(":")
            if sep and head.strip().upper() in ASSUMPTION_SCOPES:
                scope = head.strip().upper()
                text = tail.strip()
        return Question(text=text, kind=kind, scope=scope)
    return Question(text=rest)


def extract_questions(output: str) -> list[Question]:
    """Collect ``CADENCE_QUESTION:`` lines declared outside code fences."""
    questions: list[Question] = []
    for line in lines_outside_fences(output):
        if not line.startswith(QUESTION_PREFIX):
            continue
        rest = line.removeprefix(QUESTION_PREFIX).strip()
        if not rest:
            continue
        question = _parse_question(rest)
        if question.text:
            questions.append(question)
    return questions


def question_budget(state: RunState) -> int:
    """Questions allowed per iteration; prior failures earn one extra each."""
    budget = BASE_QUESTIONS
    if state.prior_guardrail_status == "fail":
        budget += BONUS_QUESTIONS_PER_FAILURE
    if state.last_verification_status == "fail":
        budget += BONUS_QUESTIONS_PER_FAILURE
    return budget


def format_answers(answers: list[tuple[Question, str]]) -> str:
    blocks = [f"Q: {question.display()}\nA: {answer or NO_ANSWER}" for question, answer in answers]
    return f"\n\n{ANSWERS_HEADING}\n\n" + "\n\n".join(blocks)
