"""Generate a schematron document for every template of a package.

Templates are processed first. Profiles without a templateId of their own
(sub-templates) only get rules where other templates use them, so they are
processed afterwards at the union of those usage contexts, in repeated
passes until no new usage contexts turn up.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from cda_schematron.context import RunContext
from cda_schematron.errors import DefinitionNotFoundError, NoProfilesError
from cda_schematron.orchestrator import ProcessingResult, ProfileProcessor
from cda_schematron.schematron import Schematron
from cda_schematron.structure import Constraint, StructureDefinition

logger = logging.getLogger(__name__)

# Self-referencing sub-templates would otherwise grow their contexts forever
MAX_SUB_TEMPLATE_PASSES = 10


@dataclass
class GenerationResult:
    """Aggregate outcome of one run."""

    schematron: Schematron = field(default_factory=Schematron)
    errors: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    unhandled: dict[str, list[Constraint]] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    processed: list[str] = field(default_factory=list)

    def add(self, result: ProcessingResult) -> None:
        """Merge one profile's result (its patterns, errors and notices)."""
        self.processed.append(result.name)
        self.errors.extend(result.errors)
        self.notices.extend(f"{result.name}: {n}" for n in result.notices)
        for reason, constraints in result.unhandled.items():
            self.unhandled.setdefault(reason, []).extend(constraints)
        if result.error_pattern is not None:
            self.schematron.add_error_pattern(result.error_pattern)
        if result.warning_pattern is not None:
            self.schematron.add_warning_pattern(result.warning_pattern)

    def unhandled_counts(self) -> dict[str, int]:
        """Number of unconverted invariants per reason, most frequent first."""
        counts = Counter({reason: len(c) for reason, c in self.unhandled.items()})
        return dict(counts.most_common())


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class SchematronGenerator:
    """Runs every profile of the main package through a ProfileProcessor.

    Args:
        context: Run context with the packages already loaded.
    """

    def __init__(self, context: RunContext) -> None:
        self.context = context

    def _select_profiles(self, package_id: str | None) -> list[StructureDefinition]:
        wanted = self.context.config.profile
        definitions = []
        for raw in self.context.store.profiles(package_id):
            if wanted and wanted not in (raw.get("name"), raw.get("id"), raw.get("url")):
                continue
            try:
                definitions.append(StructureDefinition.from_json(raw))
            except ValueError as e:
                logger.warning("%s", e)
        return definitions

    def generate(self, package_id: str | None = None) -> GenerationResult:
        """Process all profiles and collect the schematron.

        Args:
            package_id: Package to take profiles from (the first loaded by default).

        Raises:
            NoProfilesError: If there is no profile to process.
        """
        profiles = self._select_profiles(package_id)
        if not profiles:
            raise NoProfilesError(
                f"No profiles found in {package_id or self.context.main_package_id or 'package'}"
            )

        result = GenerationResult()
        sub_templates: dict[str, StructureDefinition] = {}
        usage: dict[str, list[str]] = {}

        for definition in profiles:
            logger.debug("Processing %s", definition.name)
            processed = ProfileProcessor(definition, self.context).process()
            if processed.is_sub_template:
                sub_templates[definition.url] = definition
                continue
            result.add(processed)
            self._merge_usage(usage, processed)

        for processed in self._process_sub_templates(sub_templates, usage):
            result.add(processed)

        result.skipped = [
            d.name for url, d in sub_templates.items() if url not in usage
        ]
        for name in result.skipped:
            logger.info("Skipping sub-template %s; no template uses it", name)

        if self.context.terminology.non_loaded_value_sets:
            for reason, value_sets in self.context.terminology.non_loaded_value_sets.items():
                logger.warning("%d value sets not loaded (%s)", len(value_sets), reason)
        return result

    @staticmethod
    def _merge_usage(usage: dict[str, list[str]], processed: ProcessingResult) -> bool:
        changed = False
        for profile, contexts in processed.sub_profile_contexts.items():
            merged = _unique(usage.get(profile, []) + contexts)
            if merged != usage.get(profile):
                usage[profile] = merged
                changed = True
        return changed

    def _process_sub_templates(
        self, sub_templates: dict[str, StructureDefinition], usage: dict[str, list[str]]
    ) -> list[ProcessingResult]:
        """Process used sub-templates until their usage contexts stop growing."""
        results: dict[str, ProcessingResult] = {}
        done: dict[str, list[str]] = {}

        for _ in range(MAX_SUB_TEMPLATE_PASSES):
            pending = [url for url, contexts in usage.items() if done.get(url) != contexts]
            if not pending:
                break
            for url in pending:
                contexts = list(usage[url])
                done[url] = contexts
                try:
                    definition = sub_templates.get(url) or self.context.navigator.definition(url)
                except DefinitionNotFoundError as e:
                    logger.warning("%s", e)
                    continue
                if definition is None:
                    logger.warning("Sub-template %s is not loaded", url)
                    continue
                sub_templates.setdefault(url, definition)
                processed = ProfileProcessor(definition, self.context).process_sub_template(contexts)
                results[url] = processed
                self._merge_usage(usage, processed)
        else:
            logger.warning(
                "Sub-template contexts still growing after %d passes", MAX_SUB_TEMPLATE_PASSES
            )

        return list(results.values())
