"""Run configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TERMINOLOGY_SERVER = "https://tx.fhir.org/r5/"
DEFAULT_VALUE_SET_LIMIT = 200
DEFAULT_OUTPUT_DIR = Path("output")
CACHE_FILE_NAME = "ValueSet-expansions.json"


@dataclass
class GeneratorConfig:
    """Settings for one generation run."""

    value_set_member_limit: int = DEFAULT_VALUE_SET_LIMIT
    terminology_server: str | None = DEFAULT_TERMINOLOGY_SERVER
    output_dir: Path = DEFAULT_OUTPUT_DIR
    output_name: str = "schematron"
    cache_path: Path | None = None
    profile: str | None = None  # Only process the profile with this name
    timezone_profiles: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.terminology_server and self.terminology_server.strip().lower() == "x":
            self.terminology_server = None
        if self.cache_path is None:
            self.cache_path = self.output_dir / CACHE_FILE_NAME
