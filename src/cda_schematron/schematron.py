"""Schematron document model and serialization.

Rules are keyed by their XPath context; each holds an ordered list of
assertions. Patterns group rules, and the document splits patterns into an
``errors`` and a ``warnings`` phase.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from lxml import etree

from cda_schematron.helpers import normalize_ncname
from cda_schematron.namespaces import NAMESPACES, SCHEMATRON


def _sch(tag: str) -> str:
    """Clark-notation name of a schematron element."""
    return f"{{{SCHEMATRON}}}{tag}"


@dataclass
class Assertion:
    """A single ``sch:assert`` (test must be an XPath 1.0 boolean expression)."""

    test: str
    text: str
    id: str | None = None
    comment: str | None = None

    def __post_init__(self) -> None:
        self.id = normalize_ncname(self.id)

    def to_xml(self) -> etree._Element:
        # Ids are not written until they are unique across templates
        element = etree.Element(_sch("assert"), test=self.test)
        element.text = self.text
        return element


@dataclass
class Rule:
    """A ``sch:rule`` applying its assertions at one XPath context."""

    id: str | None
    context: str
    assertions: list[Assertion] = field(default_factory=list)
    lets: list[tuple[str, str]] = field(default_factory=list)
    abstract: bool = False
    extends: str | None = None

    def __post_init__(self) -> None:
        self.id = normalize_ncname(self.id)

    def is_empty(self) -> bool:
        return not self.assertions

    def assert_(self, test: str, text: str, id: str | None = None) -> Rule:
        """Append an assertion and return the rule for chaining."""
        self.assertions.append(Assertion(test, text, id))
        return self

    def to_xml(self) -> etree._Element | None:
        """Serialize the rule (None when there is nothing to assert)."""
        if not self.assertions:
            return None

        element = etree.Element(_sch("rule"))
        if self.id:
            element.set("id", self.id)
        if self.context:
            element.set("context", self.context)
        if self.abstract:
            element.set("abstract", "true")
        if self.extends:
            etree.SubElement(element, _sch("extends"), rule=self.extends)
        for name, value in self.lets:
            etree.SubElement(element, _sch("let"), name=name, value=value)

        for assertion in self.assertions:
            if assertion.comment:
                element.append(etree.Comment(f" {assertion.comment} "))
            element.append(assertion.to_xml())
        return element


class Pattern:
    """A ``sch:pattern``: rules de-duplicated by context, in insertion order."""

    def __init__(self, id: str, comment: str | None = None) -> None:
        self.id = normalize_ncname(id, required=True)
        self.comment = comment
        self._rules: dict[str, Rule] = {}

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules.values())

    @rules.setter
    def rules(self, rules: Iterable[Rule]) -> None:
        self._rules = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: Rule) -> Rule:
        """Add a rule; the first rule registered for a context is kept."""
        return self._rules.setdefault(rule.context, rule)

    def add_rule(self, id: str, context: str) -> Rule:
        return self.add(Rule(id, context))

    def is_empty(self) -> bool:
        return all(r.is_empty() for r in self._rules.values())

    def to_xml(self) -> etree._Element | None:
        rule_elements = [r.to_xml() for r in self._rules.values()]
        rule_elements = [r for r in rule_elements if r is not None]
        if not rule_elements:
            return None

        element = etree.Element(_sch("pattern"), id=self.id)
        if self.comment:
            element.append(etree.Comment(f" {self.comment} "))
        element.extend(rule_elements)
        return element


class Schematron:
    """A complete schematron document with error and warning phases."""

    def __init__(self) -> None:
        self.errors: list[Pattern] = []
        self.warnings: list[Pattern] = []

    def add_error_pattern(self, pattern: str | Pattern) -> Pattern:
        if isinstance(pattern, str):
            pattern = Pattern(pattern, pattern)
        self.errors.append(pattern)
        return pattern

    def add_warning_pattern(self, pattern: str | Pattern) -> Pattern:
        if isinstance(pattern, str):
            pattern = Pattern(pattern, pattern)
        self.warnings.append(pattern)
        return pattern

    def to_xml(self, lets: Iterable[tuple[str, str]] = ()) -> etree._Element:
        """Build the ``sch:schema`` element.

        Args:
            lets: ``(name, value)`` pairs written as global ``sch:let``
                declarations (value-set code lists).
        """
        nsmap = {None: SCHEMATRON, **{p: u for p, u in NAMESPACES.items() if p != "sch"}}
        root = etree.Element(_sch("schema"), nsmap=nsmap)
        for prefix, uri in NAMESPACES.items():
            etree.SubElement(root, _sch("ns"), prefix=prefix, uri=uri)

        for phase_id, patterns in (("errors", self.errors), ("warnings", self.warnings)):
            if not patterns:
                continue
            phase = etree.SubElement(root, _sch("phase"), id=phase_id)
            for pattern in patterns:
                if not pattern.is_empty():
                    etree.SubElement(phase, _sch("active"), pattern=pattern.id)

        for pattern in self.errors + self.warnings:
            element = pattern.to_xml()
            if element is not None:
                root.append(element)

        for name, value in lets:
            etree.SubElement(root, _sch("let"), name=name, value=value)

        return root

    def to_string(self, lets: Iterable[tuple[str, str]] = ()) -> str:
        """Serialize as pretty-printed UTF-8 XML text."""
        return etree.tostring(
            self.to_xml(lets),
            pretty_print=True,
            xml_declaration=True,
            encoding="UTF-8",
        ).decode("utf-8")
