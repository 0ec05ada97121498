"""Failure types and processing outcomes for schematron generation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cda_schematron.schematron import Assertion


class Severity(Enum):
    """Severity of a generated assertion."""

    ERROR = "error"  # Lands in the errors phase
    WARNING = "warning"  # Lands in the warnings phase

    @classmethod
    def from_constraint(cls, severity: str | None) -> Severity:
        """Map an ElementDefinition.constraint.severity to a phase."""
        return cls.WARNING if severity == "warning" else cls.ERROR


class SchematronGenerationError(Exception):
    """Base class for every failure raised by the generator."""


class TranspileError(SchematronGenerationError):
    """Hard failure while converting an expression or resolving a path."""


class ExpressionSyntaxError(TranspileError):
    """The expression has a shape the converter cannot read."""


class DefinitionNotFoundError(TranspileError):
    """A field path or type could not be resolved to a definition."""


class AmbiguousTypeError(TranspileError):
    """Two candidate types yield different XML names for the same field."""


class UnsupportedInvariantError(SchematronGenerationError):
    """A recognized construct that is intentionally not converted."""


class UnsupportedValueSetError(SchematronGenerationError):
    """A value set could not be expanded into a usable code list."""


class ProfileProcessingError(SchematronGenerationError):
    """A whole profile cannot contribute rules (no root tag or context)."""


class NoProfilesError(SchematronGenerationError):
    """Nothing to process in the requested package."""


class ProfiledToSubProfile(SchematronGenerationError):
    """Signal that a referenced profile has no templateId of its own.

    Only the profile-conformance handling in the orchestrator consumes this;
    every other caller lets it propagate.
    """

    def __init__(self, profile: str):
        super().__init__(
            f"Profile {profile} does not contain templateId; needs to be handled elsewhere."
        )
        self.profile = profile


class OutcomeKind(Enum):
    """Kinds of result produced per processed constraint."""

    PROCESSED = "processed"
    UNSUPPORTED = "unsupported"
    REDIRECT = "redirect"  # Referenced profile is a sub-template
    FATAL = "fatal"
    IGNORED = "ignored"  # Nothing to test


@dataclass
class InvariantOutcome:
    """Tagged result of processing one constraint."""

    kind: OutcomeKind
    assertion: Assertion | None = None
    severity: Severity = Severity.ERROR
    reason: str = ""
    profile: str | None = None

    @classmethod
    def processed(cls, assertion: Assertion, severity: Severity) -> InvariantOutcome:
        return cls(OutcomeKind.PROCESSED, assertion=assertion, severity=severity)

    @classmethod
    def unsupported(cls, reason: str) -> InvariantOutcome:
        return cls(OutcomeKind.UNSUPPORTED, reason=reason)

    @classmethod
    def redirect(cls, profile: str) -> InvariantOutcome:
        return cls(OutcomeKind.REDIRECT, profile=profile)

    @classmethod
    def fatal(cls, reason: str) -> InvariantOutcome:
        return cls(OutcomeKind.FATAL, reason=reason)

    @classmethod
    def ignored(cls) -> InvariantOutcome:
        return cls(OutcomeKind.IGNORED)
