"""Run context shared by every component of one generation run."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from cda_schematron.config import GeneratorConfig
from cda_schematron.definitions import DefinitionStore
from cda_schematron.navigator import SchemaNavigator
from cda_schematron.terminology import TerminologyPool
from cda_schematron.transpiler import ExpressionConverter


@dataclass
class RunContext:
    """Definitions, terminology and settings for one run.

    Built once at startup and passed by reference to the generator, which
    hands it to each profile processor. Nothing here outlives the run.
    """

    config: GeneratorConfig
    store: DefinitionStore
    navigator: SchemaNavigator = field(init=False)
    terminology: TerminologyPool = field(init=False)
    converter: ExpressionConverter = field(init=False)

    def __post_init__(self) -> None:
        self.navigator = SchemaNavigator(self.store)
        self.terminology = TerminologyPool.from_config(self.store, self.config)
        self.converter = ExpressionConverter(self.navigator, self.terminology)

    @classmethod
    def from_packages(
        cls, package: str | Path, *dependencies: str | Path, config: GeneratorConfig | None = None
    ) -> RunContext:
        """Load the main package first, then its dependencies.

        Raises:
            FileNotFoundError: If a package path does not exist.
        """
        store = DefinitionStore()
        store.load(package, *dependencies)
        return cls(config=config or GeneratorConfig(), store=store)

    @property
    def main_package_id(self) -> str | None:
        packages = self.store.packages
        return packages[0].package_id if packages else None
