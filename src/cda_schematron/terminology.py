"""Terminology pool: value-set expansion, caching and binding audit.

Value sets are expanded from the loaded packages when they carry an
expansion, then from the on-disk cache, then from a FHIR terminology
server (``ValueSet/$expand``). Each usable set gets a unique NCName short
name, exported as a schematron ``let`` holding its space-joined codes.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NoReturn

from cda_schematron.config import GeneratorConfig
from cda_schematron.definitions import DefinitionStore, ResourceKind
from cda_schematron.errors import UnsupportedValueSetError
from cda_schematron.helpers import (
    filter_concept,
    flatten_concepts,
    operation_outcome_message,
    value_set_or_code_system_to_oid,
    vs_url_to_ncname,
)

logger = logging.getLogger(__name__)

# Server-side failure codes reported with their detail message
_DETAILED_REASONS = ("not-supported", "too-costly")


@dataclass
class LoadedValueSet:
    """A value set expanded into a flat list of selectable concepts."""

    name: str
    concepts: list[dict[str, Any]] = field(default_factory=list)
    oid: str | None = None
    unsupported: bool = False

    @property
    def codes(self) -> list[str]:
        return [c["code"] for c in self.concepts if c.get("code")]


@dataclass
class BindingLocation:
    """Where a value-set binding was found, for the bindings report."""

    xpath: str
    value_set_id: str
    strength: str
    name: str | None = None
    oid: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "xpath": self.xpath,
            "strength": self.strength,
            "valueSetId": self.value_set_id,
            "name": self.name,
            "oid": self.oid,
        }


class TerminologyPool:
    """Loads value sets for one run and remembers why others were rejected.

    Args:
        store: Definitions to search for ValueSet resources.
        server_url: Base URL of a FHIR terminology server, or None to disable.
        value_set_member_limit: Larger expansions are rejected.
        cache_path: JSON file caching server expansions between runs.
    """

    def __init__(
        self,
        store: DefinitionStore,
        server_url: str | None = None,
        value_set_member_limit: int = 200,
        cache_path: Path | None = None,
        timeout: float = 60,
    ) -> None:
        self.store = store
        self.server_url = server_url
        self.value_set_member_limit = value_set_member_limit
        self.cache_path = cache_path
        self.timeout = timeout

        self._loaded: dict[str, LoadedValueSet] = {}
        self._name_to_id: dict[str, str] = {}
        # Value set id -> report message, once rejected
        self._unsupported: dict[str, str] = {}
        self._bindings: list[BindingLocation] = []
        self._api_cache: dict[str, Any] = self._read_cache()

        # Reason -> value sets rejected for that reason
        self.non_loaded_value_sets: dict[str, list[str]] = {}

    @classmethod
    def from_config(cls, store: DefinitionStore, config: GeneratorConfig) -> TerminologyPool:
        return cls(
            store,
            server_url=config.terminology_server,
            value_set_member_limit=config.value_set_member_limit,
            cache_path=config.cache_path,
        )

    # -- cache ----------------------------------------------------------

    def _read_cache(self) -> dict[str, Any]:
        if self.cache_path is None or not self.cache_path.exists():
            return {}
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable expansion cache %s: %s", self.cache_path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def save_cache(self) -> bool:
        """Write server expansions to the cache file."""
        if self.cache_path is None:
            return False
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(self._api_cache), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write expansion cache %s: %s", self.cache_path, e)
            return False
        return True

    def clear_cache(self) -> bool:
        """Delete the cache file and forget cached expansions."""
        self._api_cache = {}
        if self.cache_path is None or not self.cache_path.exists():
            return False
        try:
            self.cache_path.unlink()
        except OSError as e:
            logger.warning("Could not delete expansion cache %s: %s", self.cache_path, e)
            return False
        return True

    # -- loading --------------------------------------------------------

    def get_saved_name(self, value_set_id: str) -> str | None:
        """Short name of an already loaded, usable value set."""
        if value_set_id in self._unsupported:
            return None
        loaded = self._loaded.get(value_set_id)
        return loaded.name if loaded else None

    def load_value_set(self, value_set_id: str) -> str:
        """Expand a value set and register its short name.

        Args:
            value_set_id: Canonical URL (or id) of the value set.

        Returns:
            The short name used for the schematron ``let``.

        Raises:
            UnsupportedValueSetError: If the set cannot be used.
        """
        if value_set_id in self._unsupported:
            raise UnsupportedValueSetError(self._unsupported[value_set_id])
        if value_set_id in self._loaded:
            return self._loaded[value_set_id].name

        value_set = self.store.fetch(value_set_id, ResourceKind.VALUE_SET)
        if value_set is None and value_set_id.startswith("http"):
            # Some IGs mix http and https canonicals
            if value_set_id.startswith("https:"):
                alternative = value_set_id.replace("https:", "http:", 1)
            else:
                alternative = value_set_id.replace("http:", "https:", 1)
            value_set = self.store.fetch(alternative, ResourceKind.VALUE_SET)
            if value_set is not None:
                logger.warning("Using %s instead of %s which was not found", alternative, value_set_id)

        if value_set is None:
            self._reject(value_set_id, "not-found")
        if not value_set.get("url"):
            self._reject(value_set_id, "missing-url")
        if value_set.get("expansion", {}).get("contains"):
            return self._register(value_set, value_set_id)
        if value_set_id in self._api_cache:
            return self._register(self._api_cache[value_set_id], value_set_id)
        if not self.server_url:
            self._reject(value_set_id, "no-tx-server")

        expanded = self._expand(self.server_url, value_set, value_set_id)
        self._api_cache[value_set_id] = expanded
        return self._register(expanded, value_set_id)

    def _expand(
        self, server_url: str, value_set: dict[str, Any], value_set_id: str
    ) -> dict[str, Any]:
        """POST the value set to ``$expand`` on the terminology server."""
        url = f"{server_url.rstrip('/')}/ValueSet/$expand"
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "valueSet", "resource": value_set},
                {"name": "excludeNested", "valueBoolean": True},
            ],
        }
        logger.info("Expanding %s from %s", value_set_id, server_url)

        req = urllib.request.Request(url, data=json.dumps(body).encode("utf-8"), method="POST")
        req.add_header("Content-Type", "application/fhir+json")
        req.add_header("Accept", "application/fhir+json")
        req.add_header("User-Agent", "fhir-cda-schematron")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                data = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            try:
                payload = json.loads(e.read().decode("utf-8"))
            except (ValueError, OSError):
                payload = None
            self._reject(value_set_id, operation_outcome_message(payload) or str(e))
        except (urllib.error.URLError, OSError, ValueError) as e:
            self._reject(value_set_id, str(e))

        if not isinstance(data, dict) or data.get("resourceType") != "ValueSet":
            logger.warning(
                "Did not receive a value set response from %s for %s", server_url, value_set_id
            )
            self._reject(value_set_id, operation_outcome_message(data) or "invalid-response")
        if not isinstance(data.get("expansion", {}).get("contains"), list):
            self._reject(
                value_set_id,
                f"Response from {server_url} did not contain any codes in its expansion.",
            )
        return data

    def _register(self, value_set: dict[str, Any], value_set_id: str) -> str:
        contains = value_set.get("expansion", {}).get("contains")
        if not contains:
            self._reject(value_set_id, "empty-expansion")

        base_name = vs_url_to_ncname(
            value_set.get("name")
            or value_set.get("title")
            or value_set.get("url")
            or value_set.get("id")
            or value_set_id
        )
        name = base_name
        counter = 1
        while self._name_to_id.get(name, value_set_id) != value_set_id:
            name = f"{base_name}_{counter}"
            counter += 1

        concepts = [c for c in flatten_concepts(contains) if filter_concept(c)]
        self._name_to_id[name] = value_set_id
        self._loaded[value_set_id] = LoadedValueSet(
            name=name,
            concepts=concepts,
            oid=value_set_or_code_system_to_oid(value_set),
        )

        if len(concepts) > self.value_set_member_limit:
            self._reject(value_set_id, "too-many-concepts", len(concepts))
        if any("'" in c.get("code", "") for c in concepts):
            self._reject(value_set_id, "apostrophes-in-codes", len(concepts))
        return name

    def _reject(
        self, value_set_id: str, reason: str, concept_count: int | None = None
    ) -> NoReturn:
        """Record a value set as unusable and raise.

        Raises:
            UnsupportedValueSetError: Always.
        """
        loaded = self._loaded.get(value_set_id)
        if loaded is not None:
            loaded.unsupported = True

        if value_set_id not in self._unsupported:
            message = value_set_id
            code = reason.split(":")[0]
            if code in _DETAILED_REASONS:
                message += f" - {reason}"
                reason = code
            if concept_count:
                message += f" ({concept_count})"
            self.non_loaded_value_sets.setdefault(reason, []).append(message)
            self._unsupported[value_set_id] = message

        raise UnsupportedValueSetError(self._unsupported[value_set_id])

    # -- outputs --------------------------------------------------------

    def record_binding_usage(self, xpath: str, value_set_id: str, strength: str) -> None:
        loaded = self._loaded.get(value_set_id)
        self._bindings.append(
            BindingLocation(
                xpath=xpath,
                value_set_id=value_set_id,
                strength=strength,
                name=loaded.name if loaded else None,
                oid=loaded.oid if loaded else None,
            )
        )

    def lets(self) -> list[tuple[str, str]]:
        """``(name, "'code code ...'")`` for every usable loaded value set."""
        return [
            (loaded.name, "'" + " ".join(loaded.codes) + "'")
            for loaded in self._loaded.values()
            if not loaded.unsupported
        ]

    def bindings_report(self) -> dict[str, list[dict[str, Any]]]:
        """Binding locations grouped by strength."""
        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for binding in self._bindings:
            grouped[binding.strength].append(binding.to_dict())
        return dict(grouped)
