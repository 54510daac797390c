"""Environment variable substitution in manifest text.

Runs on the raw file content before YAML parsing. Supported forms, where
VAR matches ``[A-Za-z_][A-Za-z0-9_]*``:

- ``${VAR}``: the value of VAR
- ``${VAR:-default}``: ``default`` when VAR is unset or empty
- ``${VAR-default}``: ``default`` when VAR is unset
- ``${VAR:+value}``: ``value`` when VAR is set and non-empty, else nothing
- ``${VAR:?message}``: the value of VAR; ``message`` is reported when it is
  unset or empty

``\\${`` yields a literal ``${``. Defaults may themselves hold references
(``${A:-${B}}``); inner references resolve first.

An unresolved reference is left in place and reported. By default each one
is a warning; in strict mode they are raised together as one
ValidationError.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import ValidationError

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(
    r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:[-+?]|-)(?P<arg>[^${}]*))?\}"
)

ESCAPED = "\\${"
# NUL never survives YAML parsing, so it cannot collide with manifest text
PLACEHOLDER = "\x00"

MAX_PASSES = 10


@dataclass
class Substitution:
    content: str
    variables: dict[str, str] = field(default_factory=dict)
    problems: list[str] = field(default_factory=list)


def substitute_env(
    content: str,
    env: Mapping[str, str] | None = None,
    strict: bool = False,
    source: str = "<string>",
) -> Substitution:
    """Expand ``${...}`` references in ``content`` from ``env``.

    Args:
        content: Raw manifest text.
        env: Variable values; defaults to the process environment.
        strict: Raise instead of warning when a reference cannot be resolved.
        source: Name used in problem messages.

    Returns:
        The expanded text, the variables that were read and the problems
        found (always empty in strict mode).

    Raises:
        ValidationError: In strict mode, if any reference is unresolved.
    """
    env = os.environ if env is None else env
    result = Substitution(content=content.replace(ESCAPED, PLACEHOLDER))
    problems: dict[str, None] = {}

    def expand(match: re.Match[str]) -> str:
        name, op, arg = match.group("name", "op", "arg")
        value = env.get(name)
        if op is None:
            if value is None:
                problems[f"{source}: undefined variable '{name}'"] = None
                return match.group(0)
        elif op == ":-":
            if not value:
                return arg
        elif op == "-":
            if value is None:
                return arg
        elif op == ":+":
            return arg if value else ""
        elif not value:
            message = arg or f"variable '{name}' is required"
            problems[f"{source}: {message}"] = None
            return match.group(0)
        result.variables[name] = value
        return value

    for _ in range(MAX_PASSES):
        expanded = REFERENCE_PATTERN.sub(expand, result.content)
        if expanded == result.content:
            break
        result.content = expanded
    else:
        problems[f"{source}: references still unresolved after {MAX_PASSES} passes"] = None

    result.content = result.content.replace(PLACEHOLDER, "${")

    if problems and strict:
        raise ValidationError(
            "Undefined environment variables:\n" + "\n".join(f"  - {p}" for p in problems)
        )
    for problem in problems:
        logger.warning(
            "Unresolved manifest variable", extra={"source": source, "detail": problem}
        )
    result.problems = list(problems)
    return result
