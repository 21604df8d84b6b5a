"""Environment placeholder expansion for harness.yaml."""

import os
import re

# ${NAME}, ${NAME:-fallback} or ${NAME:?hint}
_PLACEHOLDER = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:[-?])(?P<arg>[^}]*))?\}")


def substitute_env_vars(text: str) -> str:
    """Expand `${...}` placeholders from the process environment.

    `${NAME:-fallback}` falls back to the given text when NAME is unset. Bare
    `${NAME}` and `${NAME:?hint}` raise ValueError when it is unset, the latter
    quoting the hint.
    """

    def expand(match: re.Match[str]) -> str:
        name, op, arg = match.group("name", "op", "arg")
        value = os.environ.get(name)
        if value is not None:
            return value
        if op == ":-":
            return arg
        hint = arg if op == ":?" else "not set"
        raise ValueError(f"Required environment variable {name}: {hint}")

    return _PLACEHOLDER.sub(expand, text)
