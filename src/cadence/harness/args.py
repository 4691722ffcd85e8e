from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

_WHITESPACE_TOKEN = re.compile(r"\S+")


class ArgsError(ValueError):
    """Raised when a shell-style argument string cannot be split."""


@dataclass(slots=True, frozen=True)
class ArgToken:
    value: str
    raw: str


def tokenize_args(value: str) -> list[ArgToken]:
    """Split ``value`` like a shell would, keeping each token's raw source text.

    Single and double quotes group characters, a backslash escapes the next
    character (inside quotes too), and spaces or tabs separate tokens.
    """
    tokens: list[ArgToken] = []
    if not value.strip():
        return tokens

    current: list[str] = []
    start: int | None = None
    quote = ""
    escaped = False
    for index, char in enumerate(value):
        if start is None and (escaped or quote or char not in " \t"):
            start = index
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif quote:
            if char == quote:
                quote = ""
            else:
                current.append(char)
        elif char in "\"'":
            quote = char
        elif char in " \t":
            if start is not None:
                tokens.append(ArgToken("".join(current), value[start:index]))
                current = []
                start = None
        else:
            current.append(char)

    if escaped:
        raise ArgsError("invalid args: unfinished escape")
    if quote:
        raise ArgsError("invalid args: unterminated quote")
    if start is not None:
        tokens.append(ArgToken("".join(current), value[start:]))
    return tokens


def split_args(value: str) -> list[str]:
    return [token.value for token in tokenize_args(value)]


def _tokens_or_fields(value: str) -> list[ArgToken]:
    try:
        return tokenize_args(value)
    except ArgsError:
        return [ArgToken(match.group(0), match.group(0)) for match in _WHITESPACE_TOKEN.finditer(value)]


def contains_flag(args: str, flag: str) -> bool:
    if not flag:
        return False
    return any(
        token.value == flag or token.value.startswith(f"{flag}=") for token in _tokens_or_fields(args)
    )


def apply_model_choice(args: str, flag: str, model: str, override: bool) -> str:
    """Inject ``flag model`` into ``args``.

    An existing flag is left alone unless ``override`` is set, in which case the
    old ``flag value`` or ``flag=value`` pair is dropped and the new pair is
    appended. Tokens that are kept retain their original quoting.
    """
    if not flag or not model:
        return args
    addition = f"{flag} {shlex.quote(model)}"
    if not contains_flag(args, flag):
        return f"{args} {addition}" if args else addition
    if not override:
        return args

    kept: list[str] = []
    skip_next = False
    for token in _tokens_or_fields(args):
        if skip_next:
            skip_next = False
            continue
        if token.value == flag:
            skip_next = True
            continue
        if token.value.startswith(f"{flag}="):
            continue
        kept.append(token.raw)
    kept.append(addition)
    return " ".join(kept)
