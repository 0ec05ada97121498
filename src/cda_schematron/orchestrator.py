"""Turn one profile's differential into schematron rules.

Every element of the differential contributes its invariants plus the
structural checks implied by its definition: cardinality, fixed values,
template conformance, value-set bindings, closed slicing and timestamp
timezones. Assertions land on the error or warning rule of the element's
context (or of its parent, for checks about the element's presence).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cda_schematron.context import RunContext
from cda_schematron.errors import (
    InvariantOutcome,
    OutcomeKind,
    ProfiledToSubProfile,
    ProfileProcessingError,
    SchematronGenerationError,
    Severity,
    TranspileError,
    UnsupportedValueSetError,
)
from cda_schematron.invariant import process_invariant
from cda_schematron.navigator import cda_types_from_def, profiles_from_def, template_id_context
from cda_schematron.schema import ParsedSchema
from cda_schematron.schematron import Assertion, Pattern
from cda_schematron.structure import Constraint, ElementDefinition, StructureDefinition

logger = logging.getLogger(__name__)

BINDING_STRENGTHS = ("required", "preferred", "extensible")

_CODED_TYPES = frozenset({"CD", "CE", "CO", "CS", "CV", "SC", "PQR"})
_PART_TYPES = frozenset({"ADXP", "ENXP"})


def cardinality_test(node_xml: str, min_: int, max_: str) -> str:
    """XPath count test for a cardinality.

    Example:
        >>> cardinality_test("cda:code", 1, "1")
        'count(cda:code)=1'
    """
    count = f"count({node_xml})"
    if max_.isdigit():
        if min_ == int(max_):
            return f"{count}={min_}"
        if min_ > 0:
            return f"{count} >= {min_} and {count} <= {max_}"
        return f"{count} <= {max_}"
    return f"{count}>={min_}"


def binding_test(cda_type: str, value_set_name: str) -> str:
    """Membership test for a value-set binding on a CDA datatype.

    Raises:
        TranspileError: If bindings on the type are not supported.
    """
    codes = f"${value_set_name}"
    if cda_type in _PART_TYPES:
        return f"not(@partType) or contains({codes}, @partType)"
    if cda_type == "PQ":
        return f"not(@unit) or contains({codes}, @unit)"
    if cda_type in _CODED_TYPES:
        return f"@nullFlavor or contains({codes}, @code)"
    if cda_type == "cs-simple":
        return f"contains({codes}, .)"
    raise TranspileError(f"Unexpected type with binding: {cda_type}")


def timezone_test(value: str) -> str:
    """Require a ``+hhmm``/``-hhmm`` offset on timestamps more precise than a day."""
    length = f"string-length({value})"
    sign = f"substring({value}, {length} - 4, 1)"
    return (
        f"not({value}) or {length} <= 8 or "
        f"(({sign} = '+' or {sign} = '-') and "
        f"translate(substring({value}, {length} - 3), '0123456789', '0000000000') = '0000')"
    )


@dataclass
class ProcessingResult:
    """Everything one profile contributed to the run."""

    name: str
    errors: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    unhandled: dict[str, list[Constraint]] = field(default_factory=dict)
    sub_profile_contexts: dict[str, list[str]] = field(default_factory=dict)
    error_pattern: Pattern | None = None
    warning_pattern: Pattern | None = None
    is_sub_template: bool = False

    @classmethod
    def sub_template(cls, name: str) -> ProcessingResult:
        return cls(name=name, is_sub_template=True)

    @classmethod
    def failed(cls, name: str, message: str) -> ProcessingResult:
        return cls(name=name, errors=[message])


class ProfileProcessor:
    """Generate the rules of one profile.

    Args:
        definition: The profile.
        context: Shared run context.
    """

    def __init__(self, definition: StructureDefinition, context: RunContext) -> None:
        self.context = context
        self.navigator = context.navigator
        self.terminology = context.terminology
        self.schema = ParsedSchema(definition, context.navigator)
        self._timezone_profiles = frozenset(context.config.timezone_profiles)

    @property
    def name(self) -> str:
        return self.schema.name

    def process(self) -> ProcessingResult:
        """Process a template, rooted at its templateId.

        Returns a sub-template result (nothing processed) for profiles
        without a templateId of their own.
        """
        schema = self.schema
        template_uri = schema.template_uri
        if not template_uri or schema.element(f"{schema.root()}.templateId") is None:
            return ProcessingResult.sub_template(self.name)

        schema.patch_root()
        try:
            root_xpath = self._template_root()
        except ProfileProcessingError as e:
            logger.error("%s", e)
            return ProcessingResult.failed(self.name, str(e))
        return self._process(root_xpath, template_uri)

    def process_sub_template(self, contexts: list[str]) -> ProcessingResult:
        """Process a sub-template at the union of the contexts that use it."""
        self.schema.patch_root()
        return self._process(" | ".join(contexts), self.schema.definition.url)

    def _template_root(self) -> str:
        schema = self.schema
        template_root = schema.xml_node_name(schema.root())
        if not template_root:
            raise ProfileProcessingError(f"Cannot determine root XML node of {self.name}")
        predicate = template_id_context(schema.template_uri or "")
        if predicate is None:
            raise ProfileProcessingError(f"Unable to determine context for {self.name}")
        return f"{template_root}[{predicate}]"

    def _process(self, root_xpath: str, comment: str | None) -> ProcessingResult:
        schema = self.schema
        schema.establish_root(root_xpath)

        result = ProcessingResult(
            name=self.name,
            error_pattern=Pattern(f"{self.name}-errors", comment),
            warning_pattern=Pattern(f"{self.name}-warnings", comment),
        )

        for diff in schema.definition.differential:
            if not diff.id:
                continue
            element = schema.element(diff.id)
            if element is None:
                logger.warning(
                    "No corresponding snapshot definition for differential %s. Skipping...", diff.id
                )
                continue
            try:
                notice = self.process_element_definition(element, result)
            except SchematronGenerationError as e:
                message = f"{self.name}: {e}"
                logger.error(message)
                result.errors.append(message)
                continue
            if notice:
                result.notices.append(notice)

        result.error_pattern.rules = schema.rules(Severity.ERROR)
        result.warning_pattern.rules = schema.rules(Severity.WARNING)
        result.sub_profile_contexts = schema.sub_profile_contexts
        return result

    def process_element_definition(
        self, element: ElementDefinition, result: ProcessingResult
    ) -> str | None:
        """Add every assertion implied by one element.

        Returns:
            A notice for the run report, if any.
        """
        if not element.id:
            return "missing id"
        if element.is_choice_group:
            return None

        for constraint in element.constraints:
            outcome = process_invariant(
                constraint, self.schema, element.id, self.context.converter, self.terminology
            )
            self._route(outcome, element, result, constraint)

        # Nothing more to check on the root
        if "." not in element.id:
            return None

        node_xml = self.schema.xml_node_name(element)
        if not node_xml:
            return None
        node_display = self.schema.xml_node_name(element, display_only=True) or node_xml

        self._add_cardinality(element, node_xml, node_display)
        self._add_fixed_value(element, node_xml, node_display)
        self._add_profile_conformance(element, node_display, result)
        self._add_binding(element)
        self._add_slice_closure(element, node_xml, node_display)
        self._add_timezone(element, node_display)
        return None

    def _route(
        self,
        outcome: InvariantOutcome,
        element: ElementDefinition,
        result: ProcessingResult,
        constraint: Constraint | None = None,
    ) -> None:
        element_id = element.id or ""
        if outcome.kind is OutcomeKind.PROCESSED and outcome.assertion is not None:
            self.schema.rule(outcome.severity, element_id).assertions.append(outcome.assertion)
        elif outcome.kind is OutcomeKind.UNSUPPORTED and constraint is not None:
            result.unhandled.setdefault(outcome.reason, []).append(constraint)
        elif outcome.kind is OutcomeKind.REDIRECT and outcome.profile:
            self.schema.add_sub_profile_context(self.schema.id_to_context(element_id), outcome.profile)
        elif outcome.kind is OutcomeKind.FATAL:
            result.errors.append(outcome.reason)

    def _add_cardinality(self, element: ElementDefinition, node_xml: str, node_display: str) -> None:
        min_, max_ = element.effective_min, element.effective_max
        if min_ == 0 and max_ in ("*", ""):
            return
        if min_ == 1 and max_ == "1" and self.schema.fixed_value(element) is not None:
            return  # The fixed value test already requires the node
        if node_xml.startswith("@") and min_ == 0 and max_ == "1":
            return
        self.schema.error_rule(element.id or "", attach_at_parent=True).assert_(
            cardinality_test(node_xml, min_, max_),
            f"Cardinality of {node_display} is {min_}..{max_}",
        )

    def _add_fixed_value(self, element: ElementDefinition, node_xml: str, node_display: str) -> None:
        fixed = self.schema.fixed_value(element)
        if fixed is None or element.id in self.schema.ignore_value_at:
            return
        if '"' in fixed or "'" in fixed:
            raise TranspileError(f"Unexpected quoted fixed value ({fixed}) for {element.id}")
        rule = self.schema.error_rule(element.id or "", attach_at_parent=True)
        if element.effective_min > 0:
            rule.assert_(f"{node_xml} = '{fixed}'", f"{node_display} SHALL = '{fixed}'")
        else:
            rule.assert_(
                f"not({node_xml}) or {node_xml} = '{fixed}'",
                f"{node_display}, if present, SHALL = '{fixed}'",
            )

    def profile_conformance(self, profiles: list[str], node_display: str) -> InvariantOutcome:
        """Conformance assertion for an element typed with template profiles.

        Returns REDIRECT when the single referenced profile is a sub-template.
        """
        try:
            test = " or ".join(
                f"({self.navigator.template_id_context_from_profile(p)})" for p in profiles
            )
        except ProfiledToSubProfile as e:
            if len(profiles) == 1:
                return InvariantOutcome.redirect(e.profile)
            return InvariantOutcome.fatal(f"{self.name}: {e}")
        names = " or ".join(self.navigator.profile_name(p) for p in profiles)
        return InvariantOutcome.processed(
            Assertion(test, f"{node_display} SHALL conform to {names}"), Severity.ERROR
        )

    def _add_profile_conformance(
        self, element: ElementDefinition, node_display: str, result: ProcessingResult
    ) -> None:
        # Timestamp profiles are datatype constraints, not templates
        profiles = [p for p in profiles_from_def(element) if p not in self._timezone_profiles]
        if not profiles or element.id in self.schema.ignore_profile_at:
            return
        self._route(self.profile_conformance(profiles, node_display), element, result)

    def _add_binding(self, element: ElementDefinition) -> None:
        binding = element.binding
        if (
            not element.id
            or binding is None
            or not binding.value_set
            or binding.strength not in BINDING_STRENGTHS
        ):
            return
        types = cda_types_from_def(element)
        if len(types) != 1:
            logger.warning("Cannot process binding on %s; missing single type", element.id)
            return

        try:
            name: str | None = self.terminology.load_value_set(binding.value_set)
        except UnsupportedValueSetError:
            name = None

        # Recorded whether or not the value set could be loaded
        self.terminology.record_binding_usage(
            self.schema.context_xpath(element.id), binding.value_set, binding.strength
        )

        if name is None:
            logger.warning("Error loading value set %s", binding.value_set)
            return

        test = binding_test(types[0], name)
        if binding.strength == "required":
            self.schema.error_rule(element.id).assert_(test, f"SHALL be selected from ValueSet {name}")
        else:
            self.schema.warning_rule(element.id).assert_(
                test, f"SHOULD be selected from ValueSet {name}"
            )

    def _add_slice_closure(self, element: ElementDefinition, node_xml: str, node_display: str) -> None:
        if element.slicing is None or element.slicing.rules != "closed" or not element.id:
            return
        prefix = f"{element.id}:"
        slices = [
            e
            for e in self.schema.definition.snapshot
            if e.id and e.id.startswith(prefix) and "." not in e.id[len(prefix):]
        ]
        if not slices:
            return
        filters = " or ".join(self.schema.slice_filter(s.id or "") for s in slices)
        names = ", ".join(s.slice_name or "" for s in slices)
        self.schema.error_rule(element.id, attach_at_parent=True).assert_(
            f"count({node_xml}[not({filters})]) = 0",
            f"Slicing is closed, each {node_display} must conform to one of the following slices: {names}",
        )

    def _add_timezone(self, element: ElementDefinition, node_display: str) -> None:
        if not self._timezone_profiles or not element.id:
            return
        profiles = {p for t in element.types for p in t.profiles}
        if not profiles & self._timezone_profiles:
            return
        if {"IVL-TS", "IVL_TS"} & set(cda_types_from_def(element)):
            values = ["@value", "cda:low/@value", "cda:high/@value"]
        else:
            values = ["@value"]
        test = " and ".join(f"({timezone_test(v)})" for v in values)
        self.schema.error_rule(element.id).assert_(
            test, f"{node_display} SHALL include a timezone offset when precise to the hour or more"
        )
