"""Tests for whole-package schematron generation."""

from __future__ import annotations

import pytest

from cda_schematron import RunContext
from cda_schematron.errors import NoProfilesError
from cda_schematron.generator import GenerationResult, SchematronGenerator
from cda_schematron.orchestrator import ProcessingResult
from cda_schematron.structure import Constraint
from tests.conftest import OBSERVATION_ROOT

OBS_3_ERROR = (
    "Error in invariant obs-3 from ResultObservation: "
    "Unable to find definition for foo at Observation (subpath is None)"
)
MATCHES_REASON = "Unsupported matches pattern: [a-z]+"


class TestGenerate:
    """Tests for processing every profile of the main package."""

    def test_processed_and_skipped(self, run_context: RunContext) -> None:
        """Test templates run first and unused sub-templates are skipped."""
        result = SchematronGenerator(run_context).generate()
        assert result.processed == ["ResultObservation", "ResultsSection", "ResultPQ"]
        assert result.skipped == ["UnusedPQ"]

    def test_errors_and_unhandled(self, run_context: RunContext) -> None:
        """Test invariant failures are collected per run."""
        result = SchematronGenerator(run_context).generate()
        assert result.errors == [OBS_3_ERROR]
        assert [c.key for c in result.unhandled[MATCHES_REASON]] == ["obs-2"]
        assert result.unhandled_counts() == {MATCHES_REASON: 1}

    def test_patterns(self, run_context: RunContext) -> None:
        """Test each profile contributes its patterns."""
        result = SchematronGenerator(run_context).generate()
        error_ids = [p.id for p in result.schematron.errors]
        assert error_ids == ["ResultObservation-errors", "ResultsSection-errors", "ResultPQ-errors"]
        contexts = {r.context for p in result.schematron.errors for r in p.rules}
        assert OBSERVATION_ROOT in contexts
        assert f"{OBSERVATION_ROOT}/cda:value" in contexts

    def test_value_sets_loaded(self, run_context: RunContext) -> None:
        """Test bound value sets end up as lets."""
        SchematronGenerator(run_context).generate()
        assert ("ResultCodes", "'2345-7 718-7'") in run_context.terminology.lets()

    def test_single_template(self, run_context: RunContext) -> None:
        """Test a profile filter."""
        run_context.config.profile = "ResultsSection"
        result = SchematronGenerator(run_context).generate()
        assert result.processed == ["ResultsSection"]
        assert result.skipped == []

    def test_single_template_pulls_sub_templates(self, run_context: RunContext) -> None:
        """Test sub-templates used by the selected profile are still processed."""
        run_context.config.profile = "ResultObservation"
        result = SchematronGenerator(run_context).generate()
        assert result.processed == ["ResultObservation", "ResultPQ"]
        assert result.skipped == []

    def test_no_profiles(self, run_context: RunContext) -> None:
        """Test an unmatched profile filter."""
        run_context.config.profile = "Nope"
        with pytest.raises(NoProfilesError, match="No profiles found in example.cda.results#1.0.0"):
            SchematronGenerator(run_context).generate()

    def test_unknown_package(self, run_context: RunContext) -> None:
        """Test a package id that is not loaded."""
        with pytest.raises(NoProfilesError, match="No profiles found in other"):
            SchematronGenerator(run_context).generate("other")


class TestGenerationResult:
    """Tests for result aggregation."""

    def test_add(self) -> None:
        """Test notices are prefixed and unhandled lists merged."""
        first = ProcessingResult(name="A")
        first.notices.append("slice ignored")
        first.unhandled["reason"] = [Constraint(key="a-1")]
        second = ProcessingResult(name="B")
        second.unhandled["reason"] = [Constraint(key="b-1")]
        second.unhandled["other"] = [Constraint(key="b-2")]

        result = GenerationResult()
        result.add(first)
        result.add(second)

        assert result.processed == ["A", "B"]
        assert result.notices == ["A: slice ignored"]
        assert result.unhandled_counts() == {"reason": 2, "other": 1}
        assert list(result.unhandled_counts()) == ["reason", "other"]
