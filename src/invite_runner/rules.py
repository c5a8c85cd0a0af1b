"""Success-rule parsing and evaluation.

A rule has the form ``<path> == <literal>``, for example ``code==0`` or
``data.ok == true``. The path is resolved against a parsed JSON response
and compared to the literal with type-sensitive equality: ``0`` and
``"0"`` are different values, and so are ``1`` and ``true``.
"""

from __future__ import annotations

from enum import StrEnum
import re
from typing import Any

from pydantic import BaseModel, ConfigDict

from invite_runner.errors import RuleSyntaxError
from invite_runner.templating import MISSING, resolve

_RULE_PATTERN = re.compile(r"^\s*([$.\w]+)\s*==\s*(.+?)\s*$")
_NUMBER_PATTERN = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


class RuleOperator(StrEnum):
    """Comparison operator of a success rule."""

    EQ = "=="


class Rule(BaseModel):
    """A parsed success rule.

    Attributes:
        path: Dotted path resolved against the response payload.
        operator: Comparison operator.
        expected: Literal the resolved value is compared with.
        source: The rule text as written in the config.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    operator: RuleOperator = RuleOperator.EQ
    expected: Any = None
    source: str = ""

    def matches(self, payload: Any) -> bool:
        """Return whether *payload* satisfies this rule."""
        actual = resolve(payload, self.path)
        if self.operator is RuleOperator.EQ:
            return strict_equal(actual, self.expected)
        msg = f"Unsupported rule operator: {self.operator}"
        raise RuleSyntaxError(msg)


def parse_literal(raw: str) -> Any:
    """Convert the right-hand side of a rule into a JSON value.

    Args:
        raw: Literal text, e.g. ``"true"``, ``"0"``, ``"'ok'"``.

    Returns:
        ``True``/``False``/``None`` for the keywords, an int or float for
        numeric tokens, the inner text for quoted tokens, otherwise the
        trimmed text itself.
    """
    text = raw.strip()
    if text == "true":
        return True
    if text == "false":
        return False
    if text == "null":
        return None
    if _NUMBER_PATTERN.match(text):
        number = float(text)
        if number.is_integer() and re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return number
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def parse_rule(text: str) -> Rule:
    """Parse a ``<path> == <literal>`` rule.

    Args:
        text: The rule as written in the config.

    Returns:
        The parsed rule.

    Raises:
        RuleSyntaxError: If *text* does not contain exactly one ``==`` with
            a path on its left and a literal on its right.
    """
    match = _RULE_PATTERN.match(text)
    if match is None or text.count("==") != 1:
        msg = (
            f"Unsupported success_rule: {text}. "
            "Use format like code==0 or data.ok==true"
        )
        raise RuleSyntaxError(msg)
    path, literal = match.groups()
    return Rule(path=path, expected=parse_literal(literal), source=text)


def evaluate(payload: Any, rule: str | Rule | None) -> bool:
    """Evaluate *rule* against a parsed response payload.

    Args:
        payload: The parsed JSON response.
        rule: Rule text, a parsed ``Rule``, or ``None``/``""`` for "always
            succeeds".

    Returns:
        Whether the payload satisfies the rule.

    Raises:
        RuleSyntaxError: If *rule* is text that does not parse.
    """
    if rule is None or rule == "":
        return True
    parsed = rule if isinstance(rule, Rule) else parse_rule(rule)
    return parsed.matches(payload)


def _json_kind(value: Any) -> str:
    if value is MISSING:
        return "missing"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "container"


def strict_equal(actual: Any, expected: Any) -> bool:
    """Type-sensitive equality between two JSON values.

    Values of different JSON types are never equal. ``MISSING`` and
    containers (lists, dicts) never equal anything.
    """
    kind = _json_kind(actual)
    if kind in ("missing", "container") or kind != _json_kind(expected):
        return False
    return bool(actual == expected)
