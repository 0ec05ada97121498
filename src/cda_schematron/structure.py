"""StructureDefinition data model.

Parsed once from FHIR JSON into plain dataclasses. Nothing here knows about
XPath; see ``schema.py`` and ``navigator.py`` for that.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from cda_schematron.namespaces import EXT_XML_CHOICE_GROUP

# ElementDefinition fixed/pattern keys we can express as a string literal
SUPPORTED_FIXED_KEYS = (
    "patternString",
    "patternCode",
    "patternBoolean",
    "fixedString",
    "fixedCode",
    "fixedBoolean",
)


@dataclass(frozen=True)
class TypeRef:
    """One entry of ElementDefinition.type."""

    code: str
    profiles: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TypeRef:
        return cls(code=data.get("code", ""), profiles=tuple(data.get("profile", [])))


@dataclass(frozen=True)
class Discriminator:
    """Slicing discriminator (value, exists, profile or type)."""

    type: str
    path: str


@dataclass(frozen=True)
class Slicing:
    """Slicing rules declared on a sliced element."""

    discriminators: tuple[Discriminator, ...] = ()
    rules: str = "open"

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Slicing:
        return cls(
            discriminators=tuple(
                Discriminator(type=d.get("type", ""), path=d.get("path", ""))
                for d in data.get("discriminator", [])
            ),
            rules=data.get("rules", "open"),
        )


@dataclass(frozen=True)
class Binding:
    """Value set binding on a coded element."""

    strength: str
    value_set: str | None = None


@dataclass(frozen=True)
class Constraint:
    """ElementDefinition.constraint (an invariant)."""

    key: str
    severity: str = "error"
    human: str = ""
    expression: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Constraint:
        return cls(
            key=data.get("key", ""),
            severity=data.get("severity", "error"),
            human=data.get("human", ""),
            expression=data.get("expression"),
        )


@dataclass(frozen=True)
class ElementDefinition:
    """A node of a StructureDefinition snapshot or differential."""

    id: str | None
    path: str = ""
    slice_name: str | None = None
    min: int | None = None
    max: str | None = None
    base_min: int | None = None
    base_max: str | None = None
    types: tuple[TypeRef, ...] = ()
    representation: tuple[str, ...] = ()
    slicing: Slicing | None = None
    binding: Binding | None = None
    fixed_key: str | None = None
    fixed: Any = None
    extensions: tuple[dict[str, Any], ...] = ()
    constraints: tuple[Constraint, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ElementDefinition:
        """Parse an ElementDefinition from FHIR JSON."""
        base = data.get("base", {})
        binding = None
        if "binding" in data:
            binding = Binding(
                strength=data["binding"].get("strength", ""),
                value_set=data["binding"].get("valueSet"),
            )

        # First fixed[x]/pattern[x] wins, like the FHIR choice type it is
        fixed_key = next(
            (k for k in data if k.startswith("fixed") or k.startswith("pattern")),
            None,
        )

        return cls(
            id=data.get("id"),
            path=data.get("path", ""),
            slice_name=data.get("sliceName"),
            min=data.get("min"),
            max=data.get("max"),
            base_min=base.get("min"),
            base_max=base.get("max"),
            types=tuple(TypeRef.from_json(t) for t in data.get("type", [])),
            representation=tuple(data.get("representation", [])),
            slicing=Slicing.from_json(data["slicing"]) if "slicing" in data else None,
            binding=binding,
            fixed_key=fixed_key,
            fixed=data.get(fixed_key) if fixed_key else None,
            extensions=tuple(data.get("extension", [])),
            constraints=tuple(Constraint.from_json(c) for c in data.get("constraint", [])),
        )

    def extension(self, url: str) -> dict[str, Any] | None:
        """Get the first extension with the given URL."""
        for ext in self.extensions:
            if ext.get("url") == url:
                return ext
        return None

    @property
    def is_choice_group(self) -> bool:
        """True for the synthetic multi-choice wrapper (not a real XML element)."""
        ext = self.extension(EXT_XML_CHOICE_GROUP)
        return bool(ext and ext.get("valueBoolean"))

    @property
    def effective_min(self) -> int:
        if self.min is not None:
            return self.min
        return self.base_min if self.base_min is not None else 0

    @property
    def effective_max(self) -> str:
        if self.max is not None:
            return self.max
        return self.base_max if self.base_max is not None else ""


@dataclass(frozen=True)
class StructureDefinition:
    """A FHIR StructureDefinition reduced to what the generator reads."""

    url: str
    name: str
    type: str
    kind: str = ""
    derivation: str | None = None
    identifiers: tuple[str, ...] = ()
    extensions: tuple[dict[str, Any], ...] = ()
    snapshot: tuple[ElementDefinition, ...] = ()
    differential: tuple[ElementDefinition, ...] = ()
    _by_id: dict[str, ElementDefinition] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Build the id index."""
        for element in self.snapshot:
            if element.id and element.id not in self._by_id:
                self._by_id[element.id] = element

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> StructureDefinition:
        """Parse a StructureDefinition from FHIR JSON.

        Raises:
            ValueError: If the resource has no snapshot.
        """
        if not data.get("snapshot"):
            raise ValueError(f"Missing snapshot on {data.get('name', data.get('url'))}")
        return cls(
            url=data.get("url", ""),
            name=data.get("name", data.get("id", "")),
            type=data.get("type", ""),
            kind=data.get("kind", ""),
            derivation=data.get("derivation"),
            identifiers=tuple(
                i["value"] for i in data.get("identifier", []) if i.get("value")
            ),
            extensions=tuple(data.get("extension", [])),
            snapshot=tuple(
                ElementDefinition.from_json(e) for e in data["snapshot"].get("element", [])
            ),
            differential=tuple(
                ElementDefinition.from_json(e)
                for e in data.get("differential", {}).get("element", [])
            ),
        )

    @property
    def identifier(self) -> str | None:
        """The first declared identifier (the template URI for CDA templates)."""
        return self.identifiers[0] if self.identifiers else None

    @property
    def root(self) -> ElementDefinition | None:
        return self.snapshot[0] if self.snapshot else None

    def element(self, element_id: str) -> ElementDefinition | None:
        return self._by_id.get(element_id)

    def with_patched_root(self) -> StructureDefinition:
        """Copy the definition's type and extensions onto its root element.

        Root-level lookups then behave like child lookups. Returns a new
        StructureDefinition; the receiver is untouched.
        """
        root = self.root
        if root is None:
            return self
        types = root.types or (TypeRef(code=self.type),)
        patched = replace(root, types=types, extensions=root.extensions + self.extensions)
        return replace(self, snapshot=(patched,) + self.snapshot[1:], _by_id={})
