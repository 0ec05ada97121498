"""JSON artifacts written next to the generated schematron."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cda_schematron.context import RunContext
from cda_schematron.generator import GenerationResult
from cda_schematron.terminology import TerminologyPool

logger = logging.getLogger(__name__)

BINDINGS_FILE_NAME = "Bindings.json"
REPORT_FILE_NAME = "report.json"


@dataclass
class Artifacts:
    """Paths of the files written for one run."""

    schematron: Path
    bindings: Path
    report: Path


def build_run_report(result: GenerationResult, terminology: TerminologyPool) -> dict[str, Any]:
    """Summary of a run: errors, warnings, skipped sub-templates and unhandled invariants."""
    return {
        "errors": list(result.errors),
        "warnings": list(result.notices),
        "processedProfiles": list(result.processed),
        "skippedSubTemplates": list(result.skipped),
        "unhandledInvariants": result.unhandled_counts(),
        "nonLoadedValueSets": {
            reason: list(value_sets)
            for reason, value_sets in terminology.non_loaded_value_sets.items()
        },
    }


def _write_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def write_artifacts(result: GenerationResult, context: RunContext) -> Artifacts:
    """Write the schematron, bindings report, run report and expansion cache.

    Raises:
        OSError: If the output directory cannot be written.
    """
    config = context.config
    terminology = context.terminology
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    artifacts = Artifacts(
        schematron=output_dir / f"{config.output_name}.sch",
        bindings=output_dir / BINDINGS_FILE_NAME,
        report=output_dir / REPORT_FILE_NAME,
    )
    artifacts.schematron.write_text(
        result.schematron.to_string(terminology.lets()), encoding="utf-8"
    )
    _write_json(artifacts.bindings, terminology.bindings_report())
    _write_json(artifacts.report, build_run_report(result, terminology))
    terminology.save_cache()

    logger.info("Wrote %s", artifacts.schematron)
    return artifacts
