"""Parsed schema: one StructureDefinition plus the state built while processing it.

A ParsedSchema answers element-level questions (XML name of a node, XPath of
a relative path, slice filters, fixed values) and keeps the per-profile
registry that maps structural context paths to XPath strings and Rules.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cda_schematron.errors import (
    DefinitionNotFoundError,
    Severity,
    TranspileError,
)
from cda_schematron.namespaces import CDA, EXT_XML_NAME, EXT_XML_NAMESPACE, ns_prefix
from cda_schematron.schematron import Rule
from cda_schematron.structure import (
    SUPPORTED_FIXED_KEYS,
    ElementDefinition,
    StructureDefinition,
)

if TYPE_CHECKING:
    from cda_schematron.navigator import SchemaNavigator

logger = logging.getLogger(__name__)

ROOT_CONTEXT = "."


def split_union(xpath: str) -> list[str]:
    """Split an XPath union on top-level ``|`` (outside brackets and quotes)."""
    members: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    for index, char in enumerate(xpath):
        if quote:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
        elif char == "|" and depth == 0:
            members.append(xpath[start:index].strip())
            start = index + 1
    members.append(xpath[start:].strip())
    return [m for m in members if m]


def child_xpath(parent: str, node_name: str) -> str:
    """Append a step to every member of a (possibly unioned) context."""
    return " | ".join(f"{member}/{node_name}" for member in split_union(parent))


class ParsedSchema:
    """Element lookups and the context/rule registry for one definition.

    Args:
        definition: The StructureDefinition to wrap.
        navigator: Navigator used for lookups that leave this definition.
        update_root: Patch the root element with the definition's type and
            extensions (see ``StructureDefinition.with_patched_root``).
    """

    def __init__(
        self,
        definition: StructureDefinition,
        navigator: SchemaNavigator,
        update_root: bool = False,
    ) -> None:
        self.definition = definition
        self.navigator = navigator
        self._root_patched = False
        if update_root:
            self.patch_root()

        self.contexts_to_xpath: dict[str, str] = {}
        self._rules: dict[Severity, dict[str, Rule]] = {s: {} for s in Severity}
        self._rules_by_xpath: dict[Severity, dict[str, Rule]] = {s: {} for s in Severity}

        # Element ids whose profile / fixed value is already tested by a slice filter
        self.ignore_profile_at: set[str] = set()
        self.ignore_value_at: set[str] = set()

        # Sub-template profile URL -> XPath contexts where it is used
        self.sub_profile_contexts: dict[str, list[str]] = {}

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def template_uri(self) -> str | None:
        return self.definition.identifier

    def patch_root(self) -> None:
        """Copy the definition's type and extensions onto its root (once)."""
        if not self._root_patched:
            self.definition = self.definition.with_patched_root()
            self._root_patched = True

    def root(self) -> str | None:
        root = self.definition.root
        return root.id if root else None

    def element(self, element_id: str) -> ElementDefinition | None:
        return self.definition.element(element_id)

    # -- XML naming -----------------------------------------------------

    def xml_node_name(
        self, element_or_id: ElementDefinition | str | None, display_only: bool = False
    ) -> str | None:
        """Get the XPath step for an element.

        Args:
            element_or_id: Element definition or its id.
            display_only: Return a human label (``name:slice``) instead.

        Returns:
            ``prefix:name[sliceFilter]``, ``@name`` or ``text()[normalize-space()]``;
            an empty string for a choice-group wrapper (not a real element);
            None if the element does not exist.
        """
        if isinstance(element_or_id, str):
            element = self.element(element_or_id)
        else:
            element = element_or_id
        if element is None:
            return None

        if "xmlText" in element.representation:
            return "text()[normalize-space()]"

        last_piece = (element.id or "").split(".")[-1]
        name_from_id, _, slice_name = last_piece.partition(":")

        if element.is_choice_group:
            return ""

        name_ext = element.extension(EXT_XML_NAME)
        xml_name = (name_ext or {}).get("valueString") or name_from_id
        namespace_ext = element.extension(EXT_XML_NAMESPACE)
        xml_namespace = (namespace_ext or {}).get("valueUri") or CDA

        if "xmlAttr" in element.representation:
            return f"@{xml_name}"

        prefix = ns_prefix(xml_namespace)
        if prefix is None:
            logger.warning("Unknown namespace %s for element %s", xml_namespace, element.id)
            return xml_name

        if display_only:
            return f"{xml_name}:{slice_name}" if slice_name else xml_name

        slice_context = f"[{self.slice_filter(element.id or '')}]" if slice_name else ""
        return f"{prefix}:{xml_name}{slice_context}"

    def slice_filter(self, element_id: str) -> str:
        """Build the predicate identifying a slice from its discriminators.

        Raises:
            TranspileError: If the slicing or a discriminator cannot be expressed.
        """
        slice_root = element_id.rsplit(":", 1)[0]
        sliced = self.element(slice_root)
        slicing = sliced.slicing if sliced else None
        if slicing is None:
            raise TranspileError(f"No slicing information found for slice {element_id}")
        if not slicing.discriminators:
            raise TranspileError(f"Need discriminator to identify slicing for {element_id}")

        filters = []
        for discriminator in slicing.discriminators:
            this_path = discriminator.path == "$this"
            path_def = self.element(element_id if this_path else f"{element_id}.{discriminator.path}")
            if path_def is None:
                raise DefinitionNotFoundError(
                    f"Cannot find definition for path {discriminator.path} on slice {element_id}"
                )

            if discriminator.type == "type":
                filters.append(self.navigator.type_filter(path_def))
                continue

            xpath = "." if this_path else self.path_to_xpath(element_id, discriminator.path)
            prohibited = path_def.max == "0"

            if discriminator.type == "exists":
                filters.append(f"not({xpath})" if prohibited else f"({xpath})")
            elif discriminator.type == "value":
                self.ignore_value_at.add(path_def.id or "")
                if prohibited:
                    filters.append(f"not({xpath})")
                    continue
                value = self.fixed_value(path_def)
                if value is None:
                    raise TranspileError(
                        f"Missing value or max=0 for slice {element_id} at path {discriminator.path}"
                    )
                if '"' in value or "'" in value:
                    raise TranspileError(
                        f"Unexpected quoted value ({value}) for slice {element_id} "
                        f"at path {discriminator.path}"
                    )
                filters.append(f"({xpath} = '{value}')")
            elif discriminator.type == "profile":
                self.ignore_profile_at.add(path_def.id or "")
                profiles = self.navigator.profiles_from_def(path_def)
                if not profiles:
                    filters.append(f"not({xpath})")
                    continue
                template_context = " or ".join(
                    f"({self.navigator.template_id_context_from_profile(p)})" for p in profiles
                )
                filters.append(f"{xpath}[{template_context}]")
            else:
                raise TranspileError(f"Slicing type {discriminator.type} not yet supported")

        return " and ".join(f for f in filters if f)

    def path_to_xpath(
        self, context: str, path: str, intermediate_path: str | None = None
    ) -> str:
        """Resolve a dotted field path below ``context`` into XPath steps.

        Segments are looked up in this definition first; the remainder of the
        path continues into the type definition of the last element found.

        Args:
            context: Element id to start from.
            path: Dotted field path (no function calls).
            intermediate_path: Fields between ``context`` and ``path``.

        Raises:
            TranspileError: If the path contains a function call.
            DefinitionNotFoundError: If ``context`` is not in this definition.
        """
        if "(" in path:
            raise TranspileError(
                f"FHIRPath functions are not allowed in CDA slicing discriminators ({context}.{path})"
            )

        context_suffix = f".{intermediate_path}" if intermediate_path else ""
        current = self.element(context + context_suffix)
        if current is None:
            if intermediate_path:
                segments = intermediate_path.split(".")
                for count in range(len(segments) - 1, 0, -1):
                    tail = self.element(f"{context}.{'.'.join(segments[:count])}")
                    if tail is not None:
                        return self.navigator.xml_name_from_defs(
                            tail, path, ".".join(segments[count:])
                        )
            raise DefinitionNotFoundError(f"{context} not found in {self.name}")

        segments = path.split(".")
        steps: list[str | None] = []
        for index in range(len(segments)):
            found = self.element(f"{context}{context_suffix}.{'.'.join(segments[: index + 1])}")
            if found is None:
                # Continue from the last element found, in its type's definition
                steps.append(self.navigator.xml_name_from_defs(current, ".".join(segments[index:])))
                break
            current = found
            steps.append(self.xml_node_name(found))

        return "/".join(s for s in steps if s)

    def fixed_value(self, element: ElementDefinition) -> str | None:
        """The fixed[x]/pattern[x] value as a string, if one is expressible."""
        if element.fixed_key is None:
            return None
        if element.fixed_key not in SUPPORTED_FIXED_KEYS:
            logger.error("Unexpected %s in %s", element.fixed_key, element.id)
            return None
        if isinstance(element.fixed, bool):
            return "true" if element.fixed else "false"
        return str(element.fixed)

    # -- Context and rule registry -------------------------------------

    def _register(self, context: str, xpath: str) -> None:
        self.contexts_to_xpath[context] = xpath
        label = "root" if context == ROOT_CONTEXT else context
        for severity in Severity:
            by_xpath = self._rules_by_xpath[severity]
            rule = by_xpath.get(xpath)
            if rule is None:
                suffix = "errors" if severity is Severity.ERROR else "warnings"
                rule = by_xpath[xpath] = Rule(f"{self.name}-{suffix}-{label}", xpath)
            self._rules[severity][context] = rule

    def establish_root(self, xpath: str) -> None:
        """Set the XPath of the root context and create its rules."""
        self._register(ROOT_CONTEXT, xpath)

    def id_to_context(self, element_id: str, parent: bool = False) -> str:
        """Get (creating if needed) the context path of an element.

        The XPath of a new context is the parent's XPath plus the element's
        own step; parents are resolved first.

        Args:
            element_id: Element id.
            parent: Resolve the element's parent instead.

        Returns:
            A key of ``contexts_to_xpath``.

        Raises:
            TranspileError: If the context cannot be built.
        """
        segments = element_id.split(".")
        if parent:
            segments = segments[:-1]
        if len(segments) <= 1:
            return ROOT_CONTEXT

        this_context = ".".join(segments[1:])
        if this_context in self.contexts_to_xpath:
            return this_context

        full_id = ".".join(segments)
        parent_context = self.id_to_context(full_id, parent=True)
        if parent_context not in self.contexts_to_xpath:
            raise TranspileError(
                f"Unable to determine context for {element_id}. Parent context is not defined."
            )

        node_name = self.xml_node_name(full_id)
        if node_name == "":
            # Choice-group wrapper: same context as the parent
            self._register(this_context, self.contexts_to_xpath[parent_context])
            return parent_context
        if node_name is None:
            raise TranspileError(f"Cannot generate context for {element_id}.")

        self._register(this_context, child_xpath(self.contexts_to_xpath[parent_context], node_name))
        return this_context

    def context_xpath(self, element_id: str) -> str:
        return self.contexts_to_xpath[self.id_to_context(element_id)]

    def rule(self, severity: Severity, element_id: str, attach_at_parent: bool = False) -> Rule:
        return self._rules[severity][self.id_to_context(element_id, attach_at_parent)]

    def error_rule(self, element_id: str, attach_at_parent: bool = False) -> Rule:
        return self.rule(Severity.ERROR, element_id, attach_at_parent)

    def warning_rule(self, element_id: str, attach_at_parent: bool = False) -> Rule:
        return self.rule(Severity.WARNING, element_id, attach_at_parent)

    def rules(self, severity: Severity) -> list[Rule]:
        """Distinct rules of one severity, in creation order."""
        return list(self._rules_by_xpath[severity].values())

    def add_sub_profile_context(self, context: str, profile: str) -> None:
        """Record that ``profile`` (a sub-template) is used at ``context``."""
        self.sub_profile_contexts.setdefault(profile, []).append(self.contexts_to_xpath[context])
