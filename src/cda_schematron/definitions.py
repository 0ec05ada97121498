"""Load FHIR package definitions from disk.

Packages are read from an unpacked directory or from an NPM ``.tgz``
archive. Every JSON resource is indexed by canonical URL, ``url|version``,
id and name so lookups behave like the usual "fish for a definition"
helpers of the FHIR tooling.
"""

from __future__ import annotations

import json
import logging
import tarfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class ResourceKind(Enum):
    """Kinds of definition the store can be asked for."""

    TYPE = "type"  # Primitive and complex type specialisations
    LOGICAL = "logical"  # Logical models (the CDA classes)
    PROFILE = "profile"  # Constraints on a base definition
    VALUE_SET = "value_set"
    CODE_SYSTEM = "code_system"


def resource_kind(resource: dict[str, Any]) -> ResourceKind | None:
    """Classify a FHIR resource into a ResourceKind (None if not indexed)."""
    resource_type = resource.get("resourceType")
    if resource_type == "ValueSet":
        return ResourceKind.VALUE_SET
    if resource_type == "CodeSystem":
        return ResourceKind.CODE_SYSTEM
    if resource_type != "StructureDefinition":
        return None
    if resource.get("derivation") == "constraint":
        return ResourceKind.PROFILE
    if resource.get("kind") == "logical":
        return ResourceKind.LOGICAL
    return ResourceKind.TYPE


@dataclass
class FhirPackage:
    """Resources loaded from one package, in file order."""

    name: str
    version: str = ""
    resources: list[dict[str, Any]] = field(default_factory=list)

    @property
    def package_id(self) -> str:
        return f"{self.name}#{self.version}" if self.version else self.name


def _read_directory(path: Path) -> Iterator[tuple[str, bytes]]:
    root = path / "package" if (path / "package").is_dir() else path
    for json_file in sorted(root.glob("*.json")):
        yield json_file.name, json_file.read_bytes()


def _read_archive(path: Path) -> Iterator[tuple[str, bytes]]:
    with tarfile.open(path, "r:gz") as archive:
        members = sorted(
            (m for m in archive.getmembers() if m.isfile() and m.name.endswith(".json")),
            key=lambda m: m.name,
        )
        for member in members:
            # Only top-level package files; examples/ and other folders are skipped
            name = member.name[2:] if member.name.startswith("./") else member.name
            if name.count("/") > 1:
                continue
            handle = archive.extractfile(member)
            if handle is not None:
                yield Path(member.name).name, handle.read()


def load_package(path: str | Path) -> FhirPackage:
    """Load a FHIR package from a directory or ``.tgz`` file.

    Args:
        path: Package directory (root or its ``package/`` folder) or archive.

    Returns:
        The loaded package.

    Raises:
        FileNotFoundError: If the path does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Package not found: {path}")

    reader = _read_directory(path) if path.is_dir() else _read_archive(path)
    package = FhirPackage(name=path.stem)

    for file_name, payload in reader:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Failed to load %s from %s: %s", file_name, path, e)
            continue
        if not isinstance(data, dict):
            continue
        if file_name == "package.json":
            package.name = data.get("name", package.name)
            package.version = data.get("version", "")
            continue
        if "resourceType" in data:
            package.resources.append(data)

    return package


class DefinitionStore:
    """Index of every definition available to one run."""

    def __init__(self) -> None:
        self._packages: list[FhirPackage] = []
        self._index: dict[ResourceKind, dict[str, dict[str, Any]]] = {
            kind: {} for kind in ResourceKind
        }

    def add_package(self, package: FhirPackage) -> None:
        """Index a package. Earlier packages win on key collisions."""
        self._packages.append(package)
        for resource in package.resources:
            kind = resource_kind(resource)
            if kind is None:
                continue
            index = self._index[kind]
            keys = [resource.get("url"), resource.get("id"), resource.get("name")]
            if resource.get("url") and resource.get("version"):
                keys.append(f"{resource['url']}|{resource['version']}")
            for key in keys:
                if key and key not in index:
                    index[key] = resource

    def load(self, *paths: str | Path) -> list[FhirPackage]:
        """Load and index packages from disk, in order."""
        packages = [load_package(p) for p in paths]
        for package in packages:
            self.add_package(package)
        return packages

    def fetch(self, identifier: str, *kinds: ResourceKind) -> dict[str, Any] | None:
        """Find a definition by url, ``url|version``, id or name.

        Args:
            identifier: The key to look up.
            kinds: Kinds to search, in order. All kinds when omitted.

        Returns:
            The raw resource, or None if not found.
        """
        for kind in kinds or tuple(ResourceKind):
            resource = self._index[kind].get(identifier)
            if resource is not None:
                return resource
        return None

    def fetch_structure(self, identifier: str) -> dict[str, Any] | None:
        """Find a StructureDefinition of any kind."""
        return self.fetch(
            identifier, ResourceKind.TYPE, ResourceKind.LOGICAL, ResourceKind.PROFILE
        )

    def profiles(self, package_id: str | None = None) -> list[dict[str, Any]]:
        """List the profiles declared by a package (the first package by default)."""
        if not self._packages:
            return []
        package = self._packages[0]
        if package_id is not None:
            matches = [
                p for p in self._packages if package_id in (p.name, p.package_id)
            ]
            if not matches:
                return []
            package = matches[0]
        return [
            r for r in package.resources if resource_kind(r) == ResourceKind.PROFILE
        ]

    @property
    def packages(self) -> list[FhirPackage]:
        return list(self._packages)
