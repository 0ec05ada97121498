"""Cross-definition lookups for CDA logical models and templates.

The navigator resolves field paths that leave the definition they started
in (continuing into the element's datatype), builds templateId identity
predicates for profiles, and builds ``xsi:type`` discriminator predicates.
"""

from __future__ import annotations

import logging
import re

from cda_schematron.definitions import DefinitionStore
from cda_schematron.errors import (
    AmbiguousTypeError,
    DefinitionNotFoundError,
    ProfiledToSubProfile,
    TranspileError,
)
from cda_schematron.namespaces import CDA_ROOT, CLINICAL_DOCUMENT, EXT_XML_NAME
from cda_schematron.schema import ParsedSchema
from cda_schematron.structure import ElementDefinition, StructureDefinition

logger = logging.getLogger(__name__)

RESOURCE_PREFIX = "%resource."

_TEMPLATE_IDENTIFIER = re.compile(r"^urn:(?:oid|hl7ii):(\d(?:\.\d+)+)(?::([^:]+))?$")

# Declared as profiles in the CDA core but really string formats
_NON_TEMPLATE_PROFILES = frozenset(
    f"{CDA_ROOT}{name}" for name in ("oid", "uuid", "ruid")
)


def template_id_context(identifier: str) -> str | None:
    """Build a templateId predicate from a template URI.

    Args:
        identifier: ``urn:oid:<oid>`` or ``urn:hl7ii:<oid>:<extension>``.

    Returns:
        The predicate, or None if the identifier has neither form.

    Example:
        >>> template_id_context("urn:hl7ii:2.16.840.1.113883.10.20.22.4.2:2015-08-01")
        "cda:templateId[@root='2.16.840.1.113883.10.20.22.4.2' and @extension='2015-08-01']"
    """
    match = _TEMPLATE_IDENTIFIER.match(identifier)
    if not match:
        return None
    root, extension = match.groups()
    if extension:
        return f"cda:templateId[@root='{root}' and @extension='{extension}']"
    return f"cda:templateId[@root='{root}' and not(@extension)]"


def cda_type_to_filter(cda_type: str) -> str:
    """Predicate testing that a node has the given CDA datatype.

    Mostly ``@xsi:type``; IVL_TS also accepts ``low``/``high``/``@value``
    since instances often omit ``xsi:type`` there.
    """
    if cda_type.startswith("CDA."):
        cda_type = cda_type[4:]
    cda_type = cda_type.replace(CDA_ROOT, "").replace("-", "_", 1)
    rules = [f"@xsi:type='{cda_type}'"]
    if cda_type == "IVL_TS":
        rules.extend(["cda:low", "cda:high", "@value"])
    return " or ".join(rules)


def cda_types_from_def(element: ElementDefinition) -> list[str]:
    """CDA type names of an element (``code`` typed elements use their profile)."""
    types = []
    for type_ref in element.types:
        if type_ref.code == "code":
            cda_type = type_ref.profiles[0] if type_ref.profiles else ""
        else:
            cda_type = type_ref.code
        if cda_type.startswith(CDA_ROOT):
            types.append(cda_type[len(CDA_ROOT):])
    return types


def _is_template_profile(profile: str) -> bool:
    if profile.startswith(CDA_ROOT) and profile.endswith("-simple"):
        return False
    return profile not in _NON_TEMPLATE_PROFILES


def profiles_from_def(element: ElementDefinition) -> list[str]:
    """Every template profile declared on an element's types."""
    return [
        profile
        for type_ref in element.types
        for profile in type_ref.profiles
        if _is_template_profile(profile)
    ]


class SchemaNavigator:
    """Resolves definitions, XML names and identity predicates for one run."""

    def __init__(self, store: DefinitionStore) -> None:
        self.store = store
        self._definitions: dict[str, StructureDefinition] = {}

    def definition(self, identifier: str) -> StructureDefinition | None:
        """Fetch and parse a StructureDefinition (cached by identifier)."""
        cached = self._definitions.get(identifier)
        if cached is not None:
            return cached
        raw = self.store.fetch_structure(identifier)
        if raw is None:
            return None
        try:
            definition = StructureDefinition.from_json(raw)
        except ValueError as e:
            raise DefinitionNotFoundError(str(e)) from e
        self._definitions[identifier] = definition
        return definition

    def parse(self, identifier: str, update_root: bool = False) -> ParsedSchema:
        """Wrap a definition in a fresh ParsedSchema.

        Raises:
            DefinitionNotFoundError: If the definition is not loaded.
        """
        definition = self.definition(identifier)
        if definition is None:
            raise DefinitionNotFoundError(f"Cannot find definition for {identifier}")
        return ParsedSchema(definition, self, update_root=update_root)

    def xml_name_from_defs(
        self,
        element: ElementDefinition | None,
        path: str,
        intermediate_path: str | None = None,
    ) -> str:
        """Resolve ``path`` through the type definitions of ``element``.

        Args:
            element: Starting element; its types (or type profiles) are searched.
            path: Dotted field path to resolve.
            intermediate_path: Fields between the element and ``path``. A
                ``%resource.`` prefix restarts from ClinicalDocument.

        Returns:
            The XPath, or an empty string when nothing resolves.

        Raises:
            DefinitionNotFoundError: If the element or a type cannot be found.
            AmbiguousTypeError: If two types give different XPaths.
        """
        if element is None or not element.id:
            raise DefinitionNotFoundError("No id for element provided in xml_name_from_defs")
        candidates: list[str] = []
        if intermediate_path and intermediate_path.startswith(RESOURCE_PREFIX):
            candidates = [CLINICAL_DOCUMENT]
            intermediate_path = intermediate_path[len(RESOURCE_PREFIX):]
        elif not element.types:
            # Untyped root of a base definition
            if "." not in element.id:
                return ""
            raise DefinitionNotFoundError(f"No type defined for element {element.id}")
        else:
            for type_ref in element.types:
                candidates.extend(type_ref.profiles or (type_ref.code,))

        single_xpath: str | None = None
        for candidate in candidates:
            if self.definition(candidate) is None:
                raise DefinitionNotFoundError(
                    f"Cannot find definition for {candidate} for element {element.id}"
                )
            schema = self.parse(candidate)
            root = schema.root()
            if not root:
                raise DefinitionNotFoundError(f"Unable to determine root for definition {candidate}.")

            xpath = schema.path_to_xpath(root, path, intermediate_path)
            if xpath and single_xpath and xpath != single_xpath:
                raise AmbiguousTypeError(
                    f"Ambiguous XML representation for {path} at {element.id} "
                    f"({xpath} vs {single_xpath})"
                )
            if xpath:
                single_xpath = xpath

        return single_xpath or ""

    def schema_for_cda_type(self, cda_type: str) -> ParsedSchema:
        """ParsedSchema (root patched) for ``CDA.Act``-style names or full URLs."""
        name = cda_type[4:] if cda_type.startswith("CDA.") else cda_type
        url = name if name.startswith(CDA_ROOT) else f"{CDA_ROOT}{name.replace('_', '-', 1)}"
        if self.definition(url) is None:
            raise DefinitionNotFoundError(f"Cannot find type definition for {url}")
        return self.parse(url, update_root=True)

    def of_type(self, cda_type: str) -> str:
        """Node test for elements of a CDA type.

        Uses the type's own XML element name when it declares one, otherwise
        any element with a matching type predicate.
        """
        schema = self.schema_for_cda_type(cda_type)
        root = schema.definition.root
        if root is not None and root.extension(EXT_XML_NAME):
            xml_name = schema.xml_node_name(root)
            if xml_name:
                return xml_name
        return f"*[{cda_type_to_filter(cda_type)}]"

    def type_filter(self, element: ElementDefinition) -> str:
        """Predicate matching any of the element's CDA types.

        Raises:
            TranspileError: If the element has no CDA type.
        """
        if not element.types:
            raise TranspileError(f"Cannot create type filter on {element.id}. No types are defined.")
        filters = []
        for type_ref in element.types:
            if not type_ref.code:
                raise TranspileError(f"Cannot create type filter on {element.id}. Missing type.code.")
            if not type_ref.code.startswith(CDA_ROOT):
                raise TranspileError(
                    f"Cannot create type filter on {element.id}. Type is not a CDA type."
                )
            filters.append(cda_type_to_filter(type_ref.code[len(CDA_ROOT):]))
        return " or ".join(filters)

    def profile_name(self, profile: str) -> str:
        definition = self.definition(profile)
        if definition is None:
            raise DefinitionNotFoundError(f"Cannot find definition for {profile}")
        return definition.name

    def template_id_context_from_profile(self, profile: str) -> str:
        """TemplateId predicate identifying instances of a profile.

        Raises:
            DefinitionNotFoundError: If the profile is not loaded.
            ProfiledToSubProfile: If the profile has no templateId element.
            TranspileError: If the profile has no usable identifier.
        """
        definition = self.definition(profile)
        if definition is None:
            raise DefinitionNotFoundError(f"Cannot find definition for {profile}")

        root = definition.root
        if root is None or definition.element(f"{root.id}.templateId") is None:
            raise ProfiledToSubProfile(profile)

        identifier = definition.identifier
        if not identifier:
            raise TranspileError(f"Profile {profile} does not have an identifier")

        context = template_id_context(identifier)
        if context is None:
            raise TranspileError(f"Profile {profile} has an unrecognized identifier {identifier}")
        return context

    # Exposed on the navigator so ParsedSchema only needs one collaborator
    profiles_from_def = staticmethod(profiles_from_def)
    cda_types_from_def = staticmethod(cda_types_from_def)
    cda_type_to_filter = staticmethod(cda_type_to_filter)
