"""Substitution policy and the identity predicates derived from it.

The policy is built once from configuration and never mutated. Each predicate
is usable in-process (``predicate(b"old") -> b"new"``) and can render itself as
a callback body for ``git filter-repo``. Rendering only ever inserts keys and
values as ``repr()``-produced bytes literals, and the rendered rule table is
parsed back and compared against the policy before it is handed to the tool.
"""

from __future__ import annotations

import ast
import re
import textwrap
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .constants import NAME_MATCH_MODES
from .framework import canonical_json_checksum


class ConfigurationError(RuntimeError):
    """Raised when configuration or policy input is malformed."""


def _encode(value: str) -> bytes:
    return value.encode("utf-8")


def _rule_literal(rules: tuple[tuple[bytes, bytes], ...]) -> str:
    if not rules:
        return "()"
    return "(" + "".join(f"({old!r}, {new!r}), " for old, new in rules) + ")"


def _checked_body(body: str, parameter: str, rules: tuple[tuple[bytes, bytes], ...]) -> str:
    tree = ast.parse(f"def _callback({parameter}):\n" + textwrap.indent(body, "    "))
    function = tree.body[0]
    if len(tree.body) != 1 or not isinstance(function, ast.FunctionDef):
        raise ValueError("rendered callback must be a single function body")
    assignments = [
        node
        for node in function.body
        if isinstance(node, ast.Assign)
        and len(node.targets) == 1
        and isinstance(node.targets[0], ast.Name)
        and node.targets[0].id == "substitutions"
    ]
    if len(assignments) != 1:
        raise ValueError("rendered callback must assign the substitution table exactly once")
    rendered = ast.literal_eval(assignments[0].value)
    if tuple(tuple(pair) for pair in rendered) != rules:
        raise ValueError("rendered callback substitution table does not match the policy")
    return body


@dataclass(frozen=True)
class EmailPredicate:
    """Exact-match email substitution."""

    rules: tuple[tuple[bytes, bytes], ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "_lookup", dict(self.rules))

    def __call__(self, email: bytes) -> bytes:
        return self._lookup.get(email, email)

    def callback_body(self) -> str:
        body = (
            f"substitutions = {_rule_literal(self.rules)}\n"
            "return dict(substitutions).get(email, email)\n"
        )
        return _checked_body(body, "email", self.rules)


@dataclass(frozen=True)
class NamePredicate:
    """First-match-wins name substitution over declaration order.

    ``literal`` mode replaces a name equal to a key; ``regex`` mode replaces a
    name in which the key pattern is found anywhere.
    """

    rules: tuple[tuple[bytes, bytes], ...]
    mode: str = "literal"

    def __post_init__(self) -> None:
        if self.mode not in NAME_MATCH_MODES:
            raise ConfigurationError(f"unknown name match mode: {self.mode}")
        if self.mode == "regex":
            compiled = tuple((re.compile(old), new) for old, new in self.rules)
            object.__setattr__(self, "_compiled", compiled)

    def __call__(self, name: bytes) -> bytes:
        if self.mode == "regex":
            for pattern, new in self._compiled:
                if pattern.search(name):
                    return new
            return name
        for old, new in self.rules:
            if name == old:
                return new
        return name

    def callback_body(self) -> str:
        if self.mode == "regex":
            test = "re.search(old, name)"
            header = "import re\n"
        else:
            test = "name == old"
            header = ""
        body = (
            header
            + f"substitutions = {_rule_literal(self.rules)}\n"
            + "for old, new in substitutions:\n"
            + f"    if {test}:\n"
            + "        return new\n"
            + "return name\n"
        )
        return _checked_body(body, "name", self.rules)


@dataclass(frozen=True)
class SubstitutionPolicy:
    email_rules: Mapping[str, str] = field(default_factory=dict)
    name_rules: Mapping[str, str] = field(default_factory=dict)
    name_match: str = "literal"

    def __post_init__(self) -> None:
        if self.name_match not in NAME_MATCH_MODES:
            raise ConfigurationError(
                f"name_match must be one of {', '.join(NAME_MATCH_MODES)}: {self.name_match}"
            )
        for label, rules in (("email", self.email_rules), ("name", self.name_rules)):
            for old, new in rules.items():
                if not isinstance(old, str) or not isinstance(new, str):
                    raise ConfigurationError(f"{label} substitution entries must be strings")
                if not old:
                    raise ConfigurationError(f"empty {label} substitution key")
        if self.name_match == "regex":
            for pattern in self.name_rules:
                try:
                    re.compile(_encode(pattern))
                except re.error as exc:
                    raise ConfigurationError(
                        f"invalid name substitution pattern {pattern!r}: {exc}"
                    ) from exc
        object.__setattr__(self, "email_rules", MappingProxyType(dict(self.email_rules)))
        object.__setattr__(self, "name_rules", MappingProxyType(dict(self.name_rules)))

    @property
    def is_empty(self) -> bool:
        return not self.email_rules and not self.name_rules

    def email_predicate(self) -> EmailPredicate:
        return EmailPredicate(
            tuple((_encode(old), _encode(new)) for old, new in self.email_rules.items())
        )

    def name_predicate(self) -> NamePredicate:
        return NamePredicate(
            tuple((_encode(old), _encode(new)) for old, new in self.name_rules.items()),
            mode=self.name_match,
        )

    def checksum(self) -> str:
        return canonical_json_checksum(
            {
                "email_rules": dict(self.email_rules),
                # order matters for first-match-wins
                "name_rules": [[old, new] for old, new in self.name_rules.items()],
                "name_match": self.name_match,
            }
        )
