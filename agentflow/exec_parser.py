"""
Parser for exec expressions.

Supported shapes:

    agent.skills.talk(input, french, speed=10mph)
    system.reset_memory()
    system.response = {'ready': True}
    inject_rule(agent, rule='Keep answers short')

Arguments are Python literals where they parse as such; anything else is a
bare token kept as a VarRef so it can be resolved late (or used verbatim).
"""

from __future__ import annotations

import ast
import re
from typing import List, Tuple

from .errors import ConfigError
from .models import Argument, Const, ExecCall, VarRef

_PATH_RE = re.compile(r"^[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*$")
_CALL_RE = re.compile(r"^(?P<path>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*\((?P<args>.*)\)$", re.DOTALL)
_ASSIGN_RE = re.compile(r"^(?P<path>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*=(?!=)\s*(?P<value>.+)$", re.DOTALL)
_KWARG_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*=(?!=)\s*(?P<value>.+)$", re.DOTALL)
_BARE_TOKEN_RE = re.compile(r"^[\w.\-]+$")

_OPENERS = {"(": ")", "[": "]", "{": "}"}


def is_call_shaped(text: str) -> bool:
    """True if `text` looks like `path(...)` or `path = value`."""
    stripped = text.strip()
    return bool(_CALL_RE.match(stripped) or _ASSIGN_RE.match(stripped))


def is_path(text: str) -> bool:
    return bool(_PATH_RE.match(text.strip()))


def _split_top_level(text: str) -> List[str]:
    """Split on commas that are not nested in brackets or quotes."""
    parts: List[str] = []
    stack: List[str] = []
    quote = ""
    current: List[str] = []
    escaped = False
    for ch in text:
        if quote:
            current.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = ""
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
        elif ch in ")]}":
            raise ValueError(f"unbalanced '{ch}'")
        elif ch == "," and not stack:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if quote or stack:
        raise ValueError("unterminated quote or bracket")
    tail = "".join(current)
    if parts or tail.strip():
        parts.append(tail)
    return parts


def parse_value(text: str) -> Argument:
    value = text.strip()
    if not value:
        raise ValueError("empty argument")
    try:
        return Const(ast.literal_eval(value))
    except (ValueError, SyntaxError):
        pass
    if _BARE_TOKEN_RE.match(value):
        return VarRef(value)
    # Not a literal and not a token: keep the text as given.
    return Const(value)


def _parse_args(text: str) -> Tuple[Tuple[Argument, ...], Tuple[Tuple[str, Argument], ...]]:
    args: List[Argument] = []
    kwargs: List[Tuple[str, Argument]] = []
    for part in _split_top_level(text):
        match = _KWARG_RE.match(part.strip())
        if match:
            kwargs.append((match.group("name"), parse_value(match.group("value"))))
            continue
        if kwargs:
            raise ValueError("positional argument follows keyword argument")
        args.append(parse_value(part))
    return tuple(args), tuple(kwargs)


def parse_exec(text: str) -> ExecCall:
    """Parse a single exec expression, raising ConfigError when malformed."""
    if not isinstance(text, str) or not text.strip():
        raise ConfigError("Exec expression must be a non-empty string", details={"exec": text})
    raw = text.strip()

    try:
        call = _CALL_RE.match(raw)
        if call:
            args, kwargs = _parse_args(call.group("args"))
            return ExecCall(
                target=tuple(call.group("path").split(".")),
                args=args,
                kwargs=kwargs,
                raw=raw,
            )

        assign = _ASSIGN_RE.match(raw)
        if assign:
            return ExecCall(
                target=tuple(assign.group("path").split(".")),
                args=(parse_value(assign.group("value")),),
                assign=True,
                raw=raw,
            )
    except ValueError as exc:
        raise ConfigError(f"Malformed exec expression {raw!r}: {exc}", details={"exec": raw}) from exc

    raise ConfigError(
        f"Malformed exec expression {raw!r}: expected 'path(args)' or 'path = value'",
        details={"exec": raw},
    )
