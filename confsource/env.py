"""Environment variable substitution in decoded configuration.

String values may reference ``${NAME}`` or ``${NAME:-default}``. The default
is used when the variable is unset or empty. ``$${NAME}`` is an escape and
renders as the literal ``${NAME}``.
"""

import os
import re
from typing import Any, Mapping, Optional

ENV_PATTERN = re.compile(r"\$\{([a-zA-Z0-9_]+)(?::-([^}]*))?\}")


def render_env(value: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Replace environment references in a single string."""
    if environ is None:
        environ = os.environ

    result = []
    last_end = 0
    for match in ENV_PATTERN.finditer(value):
        start, end = match.span()
        if start > 0 and value[start - 1] == "$":
            result.append(value[last_end : start - 1])
            result.append(match.group(0))
        else:
            result.append(value[last_end:start])
            env_value = environ.get(match.group(1), "")
            if not env_value and match.group(2):
                env_value = match.group(2)
            result.append(env_value)
        last_end = end

    if last_end == 0:
        return value
    result.append(value[last_end:])
    return "".join(result)


def render_env_tree(tree: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Return a copy of a decoded tree with every string value rendered.

    Keys are left untouched.
    """
    if isinstance(tree, str):
        return render_env(tree, environ)
    if isinstance(tree, dict):
        return {key: render_env_tree(value, environ) for key, value in tree.items()}
    if isinstance(tree, list):
        return [render_env_tree(item, environ) for item in tree]
    return tree
