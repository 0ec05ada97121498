"""Tests for FHIRPath to XPath expression conversion."""

from __future__ import annotations

import pytest
from lxml import etree

from cda_schematron.errors import (
    DefinitionNotFoundError,
    ExpressionSyntaxError,
    UnsupportedInvariantError,
)
from cda_schematron.namespaces import XPATH_NAMESPACES
from cda_schematron.schema import ParsedSchema
from cda_schematron.transpiler import (
    KNOWN_PATTERNS,
    ExpressionConverter,
    adjust_lengths,
    deunionize_contains,
    extract_parenthetical,
    remove_double_brackets,
    unwrap_parens,
)
from tests.conftest import (
    RESULT_CODES,
    RESULT_OBSERVATION,
    IdentitySchema,
    StubNavigator,
    StubValueSets,
)

ZIP_PATTERN = "[0-9]{5}(-[0-9]{4})?"


def _convert(expression: str, value_sets: dict[str, str] | None = None) -> str:
    converter = ExpressionConverter(StubNavigator(), StubValueSets(value_sets))
    return converter.convert(expression, IdentitySchema(), "Identity")


class TestPathsAndOperators:
    """Tests for the operator layer, using a schema that echoes paths."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("abc.exists()", "abc"),
            ("abc.toString()", "abc"),
            ("abc implies def", "not(abc) or def"),
            ("abc.exists() implies def.exists()", "not(abc) or def"),
            ("abc and def", "abc and def"),
            ("abc or def", "abc or def"),
            ("abc xor def", "abc and not(def) or def and not(abc)"),
            ("abc=def", "abc = def"),
            ("abc != def", "abc != def"),
            ("abc >= 3", "abc >= 3"),
            ("abc ~ def", "(not(abc) and not(def)) or abc = def"),
            ("a | b", "(a | b)"),
            ("a in b", "contains(b, a)"),
            ("(a or b) and c", "(a or b) and c"),
            ("abc = '@%def~'", "abc = '@%def~'"),
            ("abc = true", "abc = true"),
            ("abc = -1.5", "abc = -1.5"),
        ],
    )
    def test_converts(self, expression: str, expected: str) -> None:
        """Test operator conversions."""
        assert _convert(expression) == expected

    @pytest.mark.parametrize(
        "expression",
        [
            "abc = def",
            "abc != def",
            "abc >= 3",
            "abc and def",
            "abc or def",
            "abc = '@%def~'",
            "(a or b) and c",
        ],
    )
    def test_converted_xpath_unchanged(self, expression: str) -> None:
        """Test XPath made of literals and paths converts to itself."""
        assert _convert(expression) == expression
        assert _convert(_convert(expression)) == expression

    def test_more_than_two_operands(self) -> None:
        """Test chained comparisons are rejected."""
        with pytest.raises(ExpressionSyntaxError, match="More than two operands"):
            _convert("abc = def = ghi")

    def test_not_equivalent_unsupported(self) -> None:
        """Test !~ is reported as unsupported."""
        with pytest.raises(UnsupportedInvariantError, match="operator not supported"):
            _convert("abc !~ def")

    def test_unexpected_space(self) -> None:
        """Test two paths without an operator are a syntax error."""
        with pytest.raises(ExpressionSyntaxError):
            _convert("a b")

    def test_unbalanced_parentheses(self) -> None:
        """Test an unclosed group is a syntax error."""
        with pytest.raises(ExpressionSyntaxError, match="mismatched parentheses"):
            _convert("(a")

    def test_datetime_literal_unsupported(self) -> None:
        """Test @-literals are reported as unsupported."""
        with pytest.raises(UnsupportedInvariantError, match="DateTime literals"):
            _convert("abc = @2024")

    def test_variable_unsupported(self) -> None:
        """Test environment variables other than %resource and %context."""
        with pytest.raises(UnsupportedInvariantError, match="Variables"):
            _convert("abc = %root")

    def test_datetime_comparison_unsupported(self) -> None:
        """Test ordering comparisons on effectiveTime are refused."""
        with pytest.raises(UnsupportedInvariantError, match="datetime"):
            _convert("effectiveTime.value > 5")

    def test_empty_expression(self) -> None:
        """Test an empty expression converts to nothing."""
        assert _convert("") == ""


class TestFunctions:
    """Tests for the function layer."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("abc.where(def)", "abc[def]"),
            ("abc.exists(def)", "abc[def]"),
            ("abc.where(def).exists(ghi)", "abc[def][ghi]"),
            ("abc.where(def).ghi", "abc[def]/ghi"),
            ("abc.count() = 3", "count(abc) = 3"),
            ("abc.length() = 3", "string-length(abc) = 3"),
            ("abc.empty()", "not(abc)"),
            ("abc.where(def).empty()", "not(abc[def])"),
            ("abc.not()", "not(abc)"),
            ("abc.first()", "abc[1]"),
            ("abc.first().b", "abc[1]/b"),
            ("abc.descendants()", "abc//*"),
            ("abc.descendants().ofType(CDA.Act)", "abc//*[@xsi:type='CDA.Act']"),
            ("abc.ofType(CDA.PQ)", "abc[@xsi:type='PQ']"),
            ("abc.ofType(CDA.IVL_TS)", "abc[@xsi:type='IVL_TS' or cda:low or cda:high or @value]"),
            ("abc.startsWith('elementary')", "abc[starts-with(., 'elementary')]"),
            ("abc.hasTemplateIdOf('test')", "abc[cda:templateId[@root='test']]"),
            ("abc.where($this = 'x')", "abc[self::node() = 'x']"),
            ("%context", "current()"),
            ("%context.a", "current()/a"),
            ("%resource", "/cda:ClinicalDocument"),
            ("%resource.x", "/cda:ClinicalDocument/x"),
            ("%resource.descendants()", "/cda:ClinicalDocument//*"),
        ],
    )
    def test_converts(self, expression: str, expected: str) -> None:
        """Test function conversions."""
        assert _convert(expression) == expected

    def test_member_of_loaded_value_set(self) -> None:
        """Test memberOf uses the value set's let variable."""
        result = _convert("abc.memberOf('http://x/vs')", {"http://x/vs": "VS"})
        assert result == "abc[contains($VS, .)]"

    def test_member_of_unloaded_value_set(self) -> None:
        """Test memberOf on an unknown value set is unsupported."""
        with pytest.raises(UnsupportedInvariantError, match="is not loaded"):
            _convert("abc.memberOf('http://x/vs')")

    def test_of_type_requires_cda_type(self) -> None:
        """Test ofType with a non-CDA type name."""
        with pytest.raises(ExpressionSyntaxError, match="CDA.type"):
            _convert("abc.ofType(Quantity)")

    def test_unsupported_function(self) -> None:
        """Test unknown functions are reported by name."""
        with pytest.raises(UnsupportedInvariantError, match="Unsupported function def"):
            _convert("abc.def()")

    def test_unknown_matches_pattern(self) -> None:
        """Test regexes outside the known set are unsupported."""
        with pytest.raises(UnsupportedInvariantError, match="Unsupported matches pattern"):
            _convert("abc.matches('wut')")

    def test_zip_code_pattern(self) -> None:
        """Test the zip code regex becomes a string-function predicate."""
        assert _convert(f"abc.matches('{ZIP_PATTERN}')") == "abc" + KNOWN_PATTERNS[ZIP_PATTERN]

    @pytest.mark.parametrize(
        ("zip_code", "expected"),
        [("12345", True), ("12345-6789", True), ("1234", False), ("abcde", False)],
    )
    def test_zip_code_pattern_evaluates(self, zip_code: str, expected: bool) -> None:
        """Test the zip code predicate behaves like the regex."""
        xpath = _convert(f"postalCode.matches('{ZIP_PATTERN}')")
        doc = etree.fromstring(f"<addr><postalCode>{zip_code}</postalCode></addr>")
        assert bool(doc.xpath(xpath)) is expected


class TestHelpers:
    """Tests for the string helpers applied to converted expressions."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [("(a)", "a"), ("((a))", "a"), ("(a", "(a"), ("a", "a")],
    )
    def test_unwrap_parens(self, expression: str, expected: str) -> None:
        """Test outer parentheses are stripped."""
        assert unwrap_parens(expression) == expected

    def test_extract_parenthetical(self) -> None:
        """Test the first balanced group is returned."""
        assert extract_parenthetical("a.where(b.exists(c)).d", 7) == "b.exists(c)"

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("[[double]]", "[double]"),
            ("something[[double[test]]]", "something[double[test]]"),
            ("a[[b[[c]]]]", "a[b[c]]"),
            ("a[b]", "a[b]"),
        ],
    )
    def test_remove_double_brackets(self, expression: str, expected: str) -> None:
        """Test doubled brackets collapse."""
        assert remove_double_brackets(expression) == expected

    @pytest.mark.parametrize("expression", ["[[mismatched] xpath]", "something[[is not right]"])
    def test_remove_double_brackets_mismatched(self, expression: str) -> None:
        """Test unmatched doubled brackets raise."""
        with pytest.raises(ExpressionSyntaxError, match="mismatched"):
            remove_double_brackets(expression)

    def test_deunionize_contains(self) -> None:
        """Test a union of literals inside contains() becomes one literal."""
        assert deunionize_contains("contains((('a' | 'b')), x)") == "contains((('a b')), x)"

    def test_deunionize_contains_loinc_codes(self) -> None:
        """Test the LOINC code list shape found in C-CDA constraints."""
        expression = "cda:code[contains(('8302-2' | '8306-3' | '8308-9'), @code)]"
        assert deunionize_contains(expression) == (
            "cda:code[contains(('8302-2 8306-3 8308-9'), @code)]"
        )

    def test_deunionize_every_contains(self) -> None:
        """Test each code list in an expression is joined."""
        expression = "contains(('a' | 'b'), @code) and contains(('c' | 'd'), @unit)"
        assert deunionize_contains(expression) == (
            "contains(('a b'), @code) and contains(('c d'), @unit)"
        )

    def test_membership_lists_joined(self) -> None:
        """Test two membership tests in one expression both use joined literals."""
        assert _convert("code in ('a' | 'b') and unit in ('c' | 'd')") == (
            "contains((('a b')), code) and contains((('c d')), unit)"
        )

    @pytest.mark.parametrize(
        "expression",
        [
            "contains(('a' | 'b'), @code) and contains(('c' | 'd'), @unit)",
            "cda:code[contains(('8302-2' | '8306-3'), @code)] | (cda:a | cda:b)",
        ],
    )
    def test_deunionize_idempotent(self, expression: str) -> None:
        """Test joining code lists twice changes nothing more."""
        once = deunionize_contains(expression)
        assert deunionize_contains(once) == once

    @pytest.mark.parametrize(
        "expression", ["something[[double[test]]]", "a[[b[[c]]]]", "x[[a]][[b]]"]
    )
    def test_remove_double_brackets_idempotent(self, expression: str) -> None:
        """Test collapsing brackets twice changes nothing more."""
        once = remove_double_brackets(expression)
        assert remove_double_brackets(once) == once

    def test_deunionize_leaves_other_unions(self) -> None:
        """Test unions of paths are untouched."""
        assert deunionize_contains("(cda:a | cda:b)") == "(cda:a | cda:b)"

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("string-length(@value) > 10", "string-length(@value) > 8"),
            ("string-length(@value) >= 10", "string-length(@value) >= 8"),
            ("string-length(@value) = 10", "string-length(@value) = 8"),
            ("string-length(@value) &gt;= 10", "string-length(@value) &gt;= 8"),
            ("string-length(@value) = 100", "string-length(@value) = 100"),
            ("string-length(@unit) = 10", "string-length(@unit) = 10"),
            ("string-length(@value) = 12", "string-length(@value) = 12"),
        ],
    )
    def test_adjust_lengths(self, expression: str, expected: str) -> None:
        """Test FHIR date lengths are mapped to CDA ones."""
        assert adjust_lengths(expression) == expected


class TestDefinitionPaths:
    """Tests converting against the example templates."""

    @pytest.fixture
    def converter(self, run_context) -> ExpressionConverter:
        run_context.terminology.load_value_set(RESULT_CODES)
        return run_context.converter

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("code.exists() implies value.exists()", "not(cda:code) or cda:value"),
            ("statusCode.code = 'completed'", "cda:statusCode/@code = 'completed'"),
            ("value.unit.exists()", "cda:value/@unit"),
            ("effectiveTime.low.exists()", "cda:effectiveTime/cda:low"),
            ("classCode = 'OBS'", "@classCode = 'OBS'"),
            (
                "templateId.where(root = '2.16.840.1.113883.10.20.22.4.2').exists()",
                "cda:templateId[@root = '2.16.840.1.113883.10.20.22.4.2']",
            ),
            ("%resource.code.exists()", "/cda:ClinicalDocument/cda:code"),
            (
                "%resource.descendants().ofType(CDA.Observation).exists()",
                "/cda:ClinicalDocument//cda:observation",
            ),
            (
                "code.code.memberOf('http://example.org/ValueSet/result-codes')",
                "cda:code/@code[contains($ResultCodes, .)]",
            ),
        ],
    )
    def test_observation_paths(
        self,
        converter: ExpressionConverter,
        observation_schema: ParsedSchema,
        expression: str,
        expected: str,
    ) -> None:
        """Test paths resolve through the template and the CDA datatypes."""
        assert converter.convert(expression, observation_schema, "Observation") == expected

    def test_section_template_reference(
        self, converter: ExpressionConverter, section_schema: ParsedSchema
    ) -> None:
        """Test hasTemplateIdOf resolves a profile to its templateId."""
        expression = (
            "entry.observation.hasTemplateIdOf("
            "'http://example.org/cda/StructureDefinition/ResultObservation')"
        )
        assert converter.convert(expression, section_schema, "Section") == (
            "cda:entry/cda:observation[cda:templateId"
            "[@root='2.16.840.1.113883.10.20.22.4.2' and @extension='2015-08-01']]"
        )

    def test_unknown_field(
        self, converter: ExpressionConverter, observation_schema: ParsedSchema
    ) -> None:
        """Test a field missing from every definition."""
        with pytest.raises(DefinitionNotFoundError, match="Unable to find definition for foo"):
            converter.convert("foo.exists()", observation_schema, "Observation")

    def test_converted_tests_compile(
        self, converter: ExpressionConverter, observation_schema: ParsedSchema
    ) -> None:
        """Test a converted expression is valid XPath 1.0 and evaluates on CDA."""
        xpath = converter.convert(
            "code.exists() implies value.unit.exists()", observation_schema, "Observation"
        )
        check = etree.XPath(xpath, namespaces=XPATH_NAMESPACES)
        ok = etree.fromstring(
            '<observation xmlns="urn:hl7-org:v3"><code code="1"/><value unit="mg"/></observation>'
        )
        missing_unit = etree.fromstring(
            '<observation xmlns="urn:hl7-org:v3"><code code="1"/><value/></observation>'
        )
        assert check(ok) is True
        assert check(missing_unit) is False

    def test_profile_url_reference(self, observation_schema: ParsedSchema) -> None:
        """Test the fixture schema is the template under test."""
        assert observation_schema.definition.url == RESULT_OBSERVATION
