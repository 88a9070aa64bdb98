"""Minimal {{variable}} substitution for message templates."""
from __future__ import annotations

import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render(text: str, variables: dict[str, Any]) -> str:
    """Replace {{name}} with variables["name"]. Unknown placeholders are left as-is."""
    def replacer(match):
        name = match.group(1)
        if name not in variables or variables[name] is None:
            return match.group(0)
        return str(variables[name])
    return _PLACEHOLDER.sub(replacer, text or "")
