"""Dotted-path lookup, ``{{ path }}`` template rendering and path-based writes.

Config fragments, rendered requests and parsed responses are all plain
JSON values (``None``, ``bool``, ``int``, ``float``, ``str``, ``list``,
``dict``). A lookup that does not resolve yields the ``MISSING`` sentinel,
which is distinct from JSON ``null`` (``None``).
"""

from __future__ import annotations

import json
import re
from typing import Any, Final

JSONValue = None | bool | int | float | str | list[Any] | dict[str, Any]


class _Missing:
    """Marker for a path that did not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()

_ROOT_MARKER = re.compile(r"^\$\.?")
_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+)\s*\}\}")


def split_path(path: str) -> list[str]:
    """Strip an optional leading ``$`` / ``$.`` and split on dots.

    Args:
        path: Dotted path such as ``"data.token"`` or ``"$.data.token"``.

    Returns:
        The path segments; an empty list for a bare root marker.
    """
    normalized = _ROOT_MARKER.sub("", path, count=1)
    if normalized == "":
        return []
    return normalized.split(".")


def resolve(value: Any, path: str | None) -> Any:
    """Look up *path* inside *value*.

    Resolution stops at the first intermediate that is ``None``,
    ``MISSING`` or not a dict. Never raises.

    Args:
        value: The JSON value to search.
        path: Dotted path. ``None`` or ``""`` resolve to ``MISSING``; a bare
            ``$`` resolves to *value* itself.

    Returns:
        The value found, or ``MISSING``.
    """
    if not path:
        return MISSING
    current = value
    for key in split_path(path):
        if not isinstance(current, dict):
            return MISSING
        current = current.get(key, MISSING)
    return current


def to_text(value: Any) -> str:
    """Return the string form used when substituting *value* into a template."""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def render(template: Any, variables: Any) -> Any:
    """Substitute ``{{ path }}`` placeholders throughout *template*.

    Lists and dicts are rebuilt with the same shape; string leaves have
    every placeholder replaced by ``to_text(resolve(variables, path))``;
    other leaves are returned unchanged. Neither argument is mutated.

    Args:
        template: JSON value containing placeholders.
        variables: JSON value that placeholder paths are resolved against.

    Returns:
        A new, fully rendered JSON value.
    """
    if isinstance(template, str):
        return _PLACEHOLDER.sub(
            lambda m: to_text(resolve(variables, m.group(1).strip())), template
        )
    if isinstance(template, list):
        return [render(item, variables) for item in template]
    if isinstance(template, dict):
        return {key: render(item, variables) for key, item in template.items()}
    return template


def set_path(root: Any, path: str, value: Any) -> dict[str, Any]:
    """Return a copy of *root* with *value* written at the dotted *path*.

    Missing intermediate levels are created as empty dicts. An
    intermediate that exists but is not a dict is overwritten with a new
    dict, and so is a non-dict *root*. Containers along the path are
    copied; *root* itself is left untouched.

    Args:
        root: The JSON value to write into.
        path: Dotted target path, e.g. ``"auth.token"``.
        value: Value to store at the final segment.

    Returns:
        The new root dict.

    Raises:
        ValueError: If *path* has no segments.
    """
    keys = split_path(path)
    if not keys or any(key == "" for key in keys):
        msg = f"Invalid target path: {path!r}"
        raise ValueError(msg)

    new_root = dict(root) if isinstance(root, dict) else {}
    cursor = new_root
    for key in keys[:-1]:
        child = cursor.get(key)
        child = dict(child) if isinstance(child, dict) else {}
        cursor[key] = child
        cursor = child
    cursor[keys[-1]] = value
    return new_root
