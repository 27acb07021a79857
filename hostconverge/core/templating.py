"""
``{key}`` substitution for templates and string parameters.

Simple string replacement, no Jinja, no escaping. Only keys present in
the values mapping are replaced, so braces that belong to the target
format (Caddy placeholders, ``find -exec {}``) pass through untouched.
"""

from __future__ import annotations

from typing import Any


def render_template(template: str, values: dict[str, str]) -> str:
    result = template
    for key, value in values.items():
        result = result.replace(f"{{{key}}}", str(value))
    return result


def substitute(obj: Any, values: dict[str, str]) -> Any:
    """Apply render_template to every string inside nested dicts / lists.

    Mapping keys are left alone.
    """
    if not values:
        return obj
    if isinstance(obj, str):
        return render_template(obj, values)
    if isinstance(obj, dict):
        return {k: substitute(v, values) for k, v in obj.items()}
    if isinstance(obj, list):
        return [substitute(v, values) for v in obj]
    return obj
