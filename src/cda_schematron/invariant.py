"""Process a single ElementDefinition constraint into a schematron assertion."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from cda_schematron.errors import (
    InvariantOutcome,
    SchematronGenerationError,
    Severity,
    UnsupportedInvariantError,
    UnsupportedValueSetError,
)
from cda_schematron.schematron import Assertion
from cda_schematron.structure import Constraint

if TYPE_CHECKING:
    from cda_schematron.schema import ParsedSchema
    from cda_schematron.terminology import TerminologyPool
    from cda_schematron.transpiler import ExpressionConverter

logger = logging.getLogger(__name__)

_MEMBER_OF = re.compile(r"memberOf\('([^']+)'\)")


def preload_value_sets(expression: str, terminology: TerminologyPool) -> None:
    """Load every value set named by ``memberOf('...')`` in an expression.

    Sets that cannot be loaded are left out; the conversion then reports
    the ``memberOf`` as unsupported.
    """
    for value_set in _MEMBER_OF.findall(expression):
        try:
            terminology.load_value_set(value_set)
        except UnsupportedValueSetError as e:
            logger.debug("Value set %s not available for memberOf: %s", value_set, e)


def process_invariant(
    constraint: Constraint,
    schema: ParsedSchema,
    context: str,
    converter: ExpressionConverter,
    terminology: TerminologyPool | None = None,
) -> InvariantOutcome:
    """Convert one constraint and classify the result.

    Args:
        constraint: The invariant.
        schema: Definition that declares it.
        context: Id of the element carrying it.
        converter: Expression converter for the run.
        terminology: Pool used to preload ``memberOf`` value sets.

    Returns:
        PROCESSED with the assertion, UNSUPPORTED with the reason, FATAL with
        an error message, or IGNORED when there is nothing to test.
    """
    if not constraint.expression:
        return InvariantOutcome.ignored()

    if terminology is not None:
        preload_value_sets(constraint.expression, terminology)

    try:
        converted = converter.convert(constraint.expression, schema, context)
    except UnsupportedInvariantError as e:
        return InvariantOutcome.unsupported(str(e))
    except SchematronGenerationError as e:
        message = f"Error in invariant {constraint.key} from {schema.name}: {e}"
        logger.debug("%s: %s", constraint.key, constraint.expression)
        logger.error(message)
        return InvariantOutcome.fatal(message)

    if not converted:
        return InvariantOutcome.ignored()

    return InvariantOutcome.processed(
        Assertion(converted, constraint.human, constraint.key),
        Severity.from_constraint(constraint.severity),
    )
