"""pytest configuration and fixtures for cda_schematron tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from cda_schematron import GeneratorConfig, RunContext
from cda_schematron.definitions import DefinitionStore
from cda_schematron.navigator import SchemaNavigator
from cda_schematron.schema import ParsedSchema
from tests.fixture_loader import CDA_CORE_DIR, EXAMPLE_IG_DIR

EXAMPLE_BASE = "http://example.org/cda/StructureDefinition/"
RESULT_OBSERVATION = f"{EXAMPLE_BASE}ResultObservation"
RESULT_PQ = f"{EXAMPLE_BASE}ResultPQ"
RESULTS_SECTION = f"{EXAMPLE_BASE}ResultsSection"
RESULT_CODES = "http://example.org/ValueSet/result-codes"

OBSERVATION_ROOT = (
    "cda:observation[cda:templateId[@root='2.16.840.1.113883.10.20.22.4.2' "
    "and @extension='2015-08-01']]"
)
SECTION_ROOT = (
    "cda:section[cda:templateId[@root='2.16.840.1.113883.10.20.22.2.3.1' "
    "and @extension='2015-08-01']]"
)


@pytest.fixture
def config(tmp_path: Path) -> GeneratorConfig:
    """Provide an offline configuration writing into a temporary directory."""
    return GeneratorConfig(terminology_server=None, output_dir=tmp_path / "output")


@pytest.fixture
def store() -> DefinitionStore:
    """Provide a store with the example IG and the CDA core models."""
    definitions = DefinitionStore()
    definitions.load(EXAMPLE_IG_DIR, CDA_CORE_DIR)
    return definitions


@pytest.fixture
def core_store() -> DefinitionStore:
    """Provide a store with only the CDA core models."""
    definitions = DefinitionStore()
    definitions.load(CDA_CORE_DIR)
    return definitions


@pytest.fixture
def run_context(config: GeneratorConfig) -> RunContext:
    """Provide a run context over the example IG and its dependency."""
    return RunContext.from_packages(EXAMPLE_IG_DIR, CDA_CORE_DIR, config=config)


@pytest.fixture
def navigator(run_context: RunContext) -> SchemaNavigator:
    return run_context.navigator


@pytest.fixture
def observation_schema(navigator: SchemaNavigator) -> ParsedSchema:
    """Provide the ResultObservation template with its root patched."""
    return navigator.parse(RESULT_OBSERVATION, update_root=True)


@pytest.fixture
def section_schema(navigator: SchemaNavigator) -> ParsedSchema:
    """Provide the ResultsSection template with its root patched."""
    return navigator.parse(RESULTS_SECTION, update_root=True)


class IdentitySchema:
    """Schema stand-in that resolves every path to itself.

    Keeps expression tests independent of any loaded definition.
    """

    name = "Identity"

    def path_to_xpath(self, context: str, path: str, intermediate_path: str | None = None) -> str:
        return path

    def element(self, element_id: str) -> None:
        return None

    def root(self) -> str:
        return "Identity"


class StubNavigator:
    """Navigator stand-in returning recognizable strings."""

    def template_id_context_from_profile(self, profile: str) -> str:
        return f"cda:templateId[@root='{profile}']"

    def xml_name_from_defs(self, element: object, path: str, intermediate_path: str | None = None) -> str:
        return path

    def of_type(self, cda_type: str) -> str:
        return f"*[@xsi:type='{cda_type}']"

    def schema_for_cda_type(self, cda_type: str) -> IdentitySchema:
        return IdentitySchema()


class StubValueSets:
    """Terminology stand-in that knows a fixed set of value set names."""

    def __init__(self, names: dict[str, str] | None = None) -> None:
        self.names = names or {}

    def get_saved_name(self, value_set_id: str) -> str | None:
        return self.names.get(value_set_id)
