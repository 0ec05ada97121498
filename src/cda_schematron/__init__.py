"""fhir-cda-schematron - CDA Schematron from FHIR profiles.

Transpiles the FHIRPath invariants of CDA templates (FHIR logical-model
profiles) into XPath 1.0 and collects them, together with cardinality,
fixed value, binding and slicing checks, into an ISO Schematron document.

Example:
    from cda_schematron import RunContext, SchematronGenerator

    context = RunContext.from_packages("ccda-package.tgz", "cda-core.tgz")
    result = SchematronGenerator(context).generate()
    xml = result.schematron.to_string(context.terminology.lets())

    # Single expressions
    from cda_schematron import convert_expression

    schema = context.navigator.parse("http://example.org/StructureDefinition/Foo")
    convert_expression("code.exists() implies value.exists()", schema, "Observation")
"""

from cda_schematron.config import GeneratorConfig
from cda_schematron.context import RunContext
from cda_schematron.definitions import DefinitionStore, FhirPackage, load_package
from cda_schematron.errors import (
    AmbiguousTypeError,
    DefinitionNotFoundError,
    ExpressionSyntaxError,
    InvariantOutcome,
    NoProfilesError,
    OutcomeKind,
    ProfiledToSubProfile,
    ProfileProcessingError,
    SchematronGenerationError,
    Severity,
    TranspileError,
    UnsupportedInvariantError,
    UnsupportedValueSetError,
)
from cda_schematron.generator import GenerationResult, SchematronGenerator
from cda_schematron.invariant import process_invariant
from cda_schematron.navigator import SchemaNavigator
from cda_schematron.orchestrator import ProcessingResult, ProfileProcessor
from cda_schematron.schema import ParsedSchema
from cda_schematron.schematron import Assertion, Pattern, Rule, Schematron
from cda_schematron.structure import ElementDefinition, StructureDefinition
from cda_schematron.terminology import TerminologyPool
from cda_schematron.transpiler import ExpressionConverter, convert_expression

__version__ = "0.1.0"

__all__ = [
    # Main API
    "RunContext",
    "GeneratorConfig",
    "SchematronGenerator",
    "GenerationResult",
    "convert_expression",
    "ExpressionConverter",
    # Components
    "DefinitionStore",
    "FhirPackage",
    "load_package",
    "SchemaNavigator",
    "ParsedSchema",
    "ProfileProcessor",
    "ProcessingResult",
    "process_invariant",
    "TerminologyPool",
    # Model
    "StructureDefinition",
    "ElementDefinition",
    "Schematron",
    "Pattern",
    "Rule",
    "Assertion",
    # Errors and outcomes
    "SchematronGenerationError",
    "TranspileError",
    "ExpressionSyntaxError",
    "DefinitionNotFoundError",
    "AmbiguousTypeError",
    "UnsupportedInvariantError",
    "UnsupportedValueSetError",
    "ProfileProcessingError",
    "NoProfilesError",
    "ProfiledToSubProfile",
    "InvariantOutcome",
    "OutcomeKind",
    "Severity",
]
