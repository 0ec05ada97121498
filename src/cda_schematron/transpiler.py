"""Convert FHIRPath invariant expressions into XPath 1.0 tests.

Only the subset of FHIRPath used by CDA templates is understood. The
expression is rewritten layer by layer: string literals and parenthesized
groups are replaced by placeholder tokens, then operators are split in a
fixed order (implies, boolean, equivalence, comparison, union, ``in``),
then the known functions, and finally plain paths are resolved against the
schema. Placeholders are substituted back as each layer returns.

Example:
    converter = ExpressionConverter(navigator, terminology)
    xpath = converter.convert("code.exists() and value.empty()", schema, "Observation")
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, NamedTuple, Protocol

from cda_schematron.errors import (
    AmbiguousTypeError,
    DefinitionNotFoundError,
    ExpressionSyntaxError,
    TranspileError,
    UnsupportedInvariantError,
)
from cda_schematron.namespaces import CLINICAL_DOCUMENT_XPATH
from cda_schematron.navigator import RESOURCE_PREFIX, cda_type_to_filter

if TYPE_CHECKING:
    from cda_schematron.navigator import SchemaNavigator
    from cda_schematron.schema import ParsedSchema


class ValueSetNames(Protocol):
    """What the converter needs from the terminology pool."""

    def get_saved_name(self, value_set_id: str) -> str | None: ...


_TOKEN = r"tt(?:Str\d+|\d+|Fun|Where)"
_TOKEN_RE = re.compile(rf"\b{_TOKEN}\b")
_TOKEN_ONLY = re.compile(rf"^{_TOKEN}$")
_TOKEN_START = re.compile(rf"^{_TOKEN}(?![\w])")

_STRING_LITERAL = re.compile(r"('(?:\\'|[^'])*')")
_VARIABLE = re.compile(r"%(?!resource|context)")
_CDA_TYPE_NAME = re.compile(r"^CDA\.(\w|-)+$")

# Text before "(" that names the field a where()/exists() filters
_FILTER_SUBJECT = re.compile(r"(?:^|\s|\)\.)(%?\w+(?:\.\w+)*)\.(?:exists|where)\($", re.IGNORECASE)
_FILTER_SUBJECT_GROUPED = re.compile(r"(?:^|\s)\((\w+)\)\.(?:exists|where)\($", re.IGNORECASE)
_OF_TYPE_WHERE = re.compile(r"\.ofType\(([^)]+)\)\.where\($", re.IGNORECASE)

_IMPLIES = re.compile(r"^(.+)\s+implies\s+(.+)$")
_BOOLEAN = re.compile(r"^(.*)\s+(and|or|xor)\s+(.*)$")
_COMPARATORS = ("<=", ">=", "!=", "<", ">", "=")

_DESCENDANTS = re.compile(r"^(.*)descendants\(\)(?:\.ofType\(([^)]+)\))?(.*)$")
_SIMPLE_FUNCTION = re.compile(r"^(.*\s+)?(\S+)\.(count|length|empty|not|first)\(\)\.?(.*)$")
_FILTER_FUNCTION = re.compile(
    r"^(.*)(hasTemplateIdOf|ofType|startsWith|memberOf|matches)\(([^)]+)\)(.*)$"
)
_WHERE = re.compile(r"^(.*\s+)?(\S*)(where|exists)\(([^)]+)\)(.*)$")
_WRAPPED = re.compile(r"^\((.+)\)$")
_FUNCTION_CALL = re.compile(r"(\w+)\(")
_LITERAL = re.compile(r"^(?:true|false|-?\d+(?:\.\d+)?)$")

_LENGTH_10 = re.compile(r"(string-length\(@value\) (?:&gt;|>)?=?) 10(?!\d)")
_CONTAINS_UNION = re.compile(r"(contains\(+)('[^' |)]+'(?:\s+\|\s+'[^' |)]+')+)\)")

_WRAPPING_FUNCTIONS = {
    "count": "count",
    "length": "string-length",
    "empty": "not",
    "not": "not",
}

# Regexes XPath 1.0 can express with string functions
KNOWN_PATTERNS = {
    "[0-9]{5}(-[0-9]{4})?": (
        "[(string-length(normalize-space()) = 5 and "
        "translate(., '0123456789', '0000000000') = '00000') or "
        "(string-length(normalize-space()) = 10 and "
        "translate(., '0123456789', '0000000000') = '00000-0000')]"
    ),
}


def extract_parenthetical(expression: str, start: int = 0) -> str:
    """Return the text inside the parenthesis group opening at ``start``.

    Raises:
        ExpressionSyntaxError: If the parentheses are not balanced.
    """
    depth = 0
    opened = start
    for index in range(start, len(expression)):
        char = expression[index]
        if char == "(":
            if depth == 0:
                opened = index
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return expression[opened + 1 : index]
    raise ExpressionSyntaxError(f"mismatched parentheses in expression: {expression}")


def unwrap_parens(expression: str) -> str:
    """Strip parentheses that start and end the string."""
    while expression.startswith("(") and expression.endswith(")"):
        expression = expression[1:-1]
    return expression


def remove_double_brackets(expression: str) -> str:
    """Collapse ``[[...]]`` into ``[...]`` when both ends are doubled.

    Raises:
        ExpressionSyntaxError: If a ``[[`` has no matching ``]]``.
    """
    start = expression.find("[[")
    while start >= 0:
        depth = 2
        for index in range(start + 2, len(expression)):
            char = expression[index]
            if char == "[":
                depth += 1
            elif char == "]":
                depth -= 1
                if depth == 1 and expression[index + 1 : index + 2] == "]":
                    expression = (
                        expression[:start] + expression[start + 1 : index] + expression[index + 1 :]
                    )
                    break
                if depth == 0:
                    raise ExpressionSyntaxError(
                        f"mismatched [[ in expression {expression} "
                        "(opening double-bracket should have an equivalent closing double-bracket)"
                    )
        else:
            raise ExpressionSyntaxError(f"mismatched [[ in expression {expression}")
        start = expression.find("[[")
    return expression


def deunionize_contains(expression: str) -> str:
    """Join a union of string literals inside ``contains(`` into one literal.

    ``contains((('a' | 'b')), x)`` becomes ``contains((('a b')), x)``.
    """
    return _CONTAINS_UNION.sub(
        lambda m: m.group(1) + re.sub(r"'\s+\|\s+'", " ", m.group(2)) + ")",
        expression,
    )


def adjust_lengths(expression: str) -> str:
    """Map a FHIR date length (``YYYY-MM-DD``) to the CDA one (``YYYYMMDD``)."""
    return _LENGTH_10.sub(r"\1 8", expression, count=1)


def _join_step(xpath: str) -> str:
    """Join a converted continuation onto a preceding step."""
    if not xpath or xpath.startswith(("[", "/")):
        return xpath
    return f"/{xpath}"


class _Scope(NamedTuple):
    """Schema and element id that plain paths resolve against."""

    schema: ParsedSchema
    context: str


class _Conversion:
    """State of one top-level conversion (token counter and string literals)."""

    def __init__(
        self,
        navigator: SchemaNavigator,
        terminology: ValueSetNames | None,
        root: _Scope,
    ) -> None:
        self.navigator = navigator
        self.terminology = terminology
        self.root = root
        self.string_tokens: dict[str, str] = {}
        self._counter = 0

    def _next(self, prefix: str = "tt") -> str:
        token = f"{prefix}{self._counter}"
        self._counter += 1
        return token

    @staticmethod
    def _reset(expression: str, tokens: dict[str, str]) -> str:
        """Substitute this level's placeholders back into ``expression``."""
        return _TOKEN_RE.sub(lambda m: tokens.get(m.group(0), m.group(0)), expression)

    def _type_scope(self, cda_type: str) -> _Scope:
        schema = self.navigator.schema_for_cda_type(cda_type)
        root = schema.root()
        if not root:
            raise DefinitionNotFoundError(f"Unable to determine root for type {cda_type}")
        return _Scope(schema, root)

    def convert(self, expression: str, scope: _Scope, sub_context: str | None = None) -> str:
        """Convert one (sub-)expression.

        Args:
            expression: FHIRPath text, possibly containing outer placeholders.
            scope: Schema and element to resolve paths against.
            sub_context: Fields (``|``-separated alternatives) between the
                scope element and the paths in ``expression``.
        """
        if not expression:
            return ""
        expression = re.sub(r"^\.|\.$", "", expression.strip())
        if not expression:
            return ""

        tokens: dict[str, str] = {}

        expression = expression.replace(".exists()", "").replace(".toString()", "")
        expression = self._tokenize_strings(expression, tokens)

        if _VARIABLE.search(expression):
            raise UnsupportedInvariantError("Variables are not supported yet")
        if "@" in expression:
            raise UnsupportedInvariantError("DateTime literals are not supported yet")

        expression = self._tokenize_parentheticals(expression, tokens, scope)

        converted = self._convert_operators(expression, tokens, scope, sub_context)
        if converted is None:
            converted = self._convert_functions(expression, tokens, scope, sub_context)
        if converted is None:
            converted = self._convert_terminal(expression, tokens, scope, sub_context)
        return converted

    def _tokenize_strings(self, expression: str, tokens: dict[str, str]) -> str:
        def replace(match: re.Match[str]) -> str:
            token = self._next("ttStr")
            tokens[token] = match.group(1).replace("\\'", "'")
            self.string_tokens[token] = tokens[token]
            return token

        return _STRING_LITERAL.sub(replace, expression)

    def _tokenize_parentheticals(
        self, expression: str, tokens: dict[str, str], scope: _Scope
    ) -> str:
        originals: dict[str, str] = {}
        position = expression.find("(")
        while position >= 0:
            if expression[position + 1 : position + 2] == ")":
                position = expression.find("(", position + 2)
                continue

            inner = extract_parenthetical(expression, position)
            if _TOKEN_ONLY.match(inner) or _CDA_TYPE_NAME.match(inner):
                position = expression.find("(", position + 2 + len(inner))
                continue

            head = expression[: position + 1]

            # where()/exists() arguments resolve relative to the filtered field
            sub_context = None
            subject = _FILTER_SUBJECT.search(head) or _FILTER_SUBJECT_GROUPED.search(head)
            if subject:
                sub_context = subject.group(1)
                if sub_context in originals:
                    sub_context = unwrap_parens(originals[sub_context])

            type_switch = _OF_TYPE_WHERE.search(head)

            token = self._next()
            expression = head + token + expression[position + 1 + len(inner) :]
            originals[token] = inner

            if type_switch:
                converted = self.convert(inner, self._type_scope(type_switch.group(1)))
            else:
                converted = self.convert(inner, scope, sub_context)
            tokens[token] = self._reset(converted, tokens)

            position = expression.find("(", position + 2 + len(token))
        return expression

    def _convert_operators(
        self, expression: str, tokens: dict[str, str], scope: _Scope, sub_context: str | None
    ) -> str | None:
        def convert(part: str) -> str:
            return self.convert(part, scope, sub_context)

        implies = _IMPLIES.match(expression)
        if implies:
            return self._reset(
                f"not({convert(implies.group(1))}) or {convert(implies.group(2))}", tokens
            )

        boolean = _BOOLEAN.match(expression)
        if boolean:
            left, operator, right = boolean.groups()
            if operator == "xor":
                a, b = convert(left), convert(right)
                return self._reset(f"{a} and not({b}) or {b} and not({a})", tokens)
            return self._reset(f"{convert(left)} {operator} {convert(right)}", tokens)

        if "!~" in expression:
            raise UnsupportedInvariantError("!~ operator not supported yet")
        if "~" in expression:
            left, right = self._split_operands(expression, "~")
            a, b = convert(left), convert(right)
            return self._reset(f"(not({a}) and not({b})) or {a} = {b}", tokens)

        for symbol in _COMPARATORS:
            if symbol in expression:
                left, right = self._split_operands(expression, symbol)
                return self._reset(f"{convert(left)} {symbol} {convert(right)}", tokens)

        if "|" in expression:
            members = " | ".join(convert(part) for part in expression.split("|"))
            return "(" + self._reset(members, tokens) + ")"

        if " in " in expression:
            needle, haystack = self._split_operands(expression, " in ")
            # contains(list, item): membership in a space-joined list
            return self._reset(f"contains({convert(haystack)}, {convert(needle)})", tokens)

        return None

    @staticmethod
    def _split_operands(expression: str, symbol: str) -> tuple[str, str]:
        parts = expression.split(symbol)
        if len(parts) != 2:
            raise ExpressionSyntaxError(
                f"More than two operands found for comparator {symbol.strip()} ({expression})"
            )
        return parts[0], parts[1]

    def _convert_functions(
        self, expression: str, tokens: dict[str, str], scope: _Scope, sub_context: str | None
    ) -> str | None:
        if " " in expression:
            raise ExpressionSyntaxError(f"Unexpected space in expression {expression}")

        # %context restarts from the constraint's own element
        if expression.startswith("%context"):
            if expression == "%context":
                return "current()"
            return "current()/" + self._reset(self.convert(expression[9:], self.root), tokens)

        descendants = _DESCENDANTS.match(expression)
        if descendants:
            before, of_type, after = descendants.groups()
            if before == RESOURCE_PREFIX:
                pre = CLINICAL_DOCUMENT_XPATH
            else:
                pre = self.convert(before or "", scope, sub_context)
            elements = self.navigator.of_type(of_type) if of_type else "*"
            post = ""
            if after:
                post_scope = self._type_scope(of_type) if of_type else scope
                post = self.convert(after, post_scope)
            return self._reset(f"{pre}//{elements}{_join_step(post)}", tokens)

        simple = _SIMPLE_FUNCTION.match(expression)
        if simple:
            before, subject, function, after = simple.groups()
            subject_xpath = self.convert(subject, scope, sub_context)
            if function == "first":
                tokens["ttFun"] = self._reset(f"{subject_xpath}[1]", tokens)
            else:
                tokens["ttFun"] = self._reset(
                    f"{_WRAPPING_FUNCTIONS[function]}({subject_xpath})", tokens
                )
            post = ""
            if after:
                chained = ".".join(p for p in (sub_context, subject) if p)
                post = "/" + self.convert(after, scope, chained)
            return self._reset(
                f"{self.convert(before or '', scope, sub_context)}ttFun{post}", tokens
            )

        filtered = _FILTER_FUNCTION.match(expression)
        if filtered:
            before, function, argument, after = filtered.groups()
            if argument in self.string_tokens:
                argument = self.string_tokens[argument][1:-1]
            elif argument in tokens:
                argument = tokens[argument]
            predicate = self._function_filter(function, argument)
            # Appended directly: a placeholder would fuse with the step before it
            head = self._reset(self.convert(before, scope, sub_context), tokens)
            post = self._reset(self.convert(after, scope, sub_context), tokens)
            return f"{head}{predicate}{_join_step(post)}"

        where = _WHERE.match(expression)
        if where:
            before, subject, _, condition, after = where.groups()
            tokens["ttWhere"] = self._reset(
                f"{self.convert(subject, scope, sub_context)}[{condition}]", tokens
            )
            if after and after.startswith("."):
                # Chained after the filter: continue from the filtered field
                before_xpath = self.convert(before or "", scope, sub_context)
                chained = ".".join(p for p in (sub_context, subject.rstrip(".")) if p)
                after_xpath = self.convert(after[1:], scope, chained)
                return self._reset(f"{before_xpath}ttWhere/{after_xpath}", tokens)
            return self._reset(self.convert(f"{before or ''}ttWhere{after or ''}", scope), tokens)

        return None

    def _function_filter(self, function: str, argument: str) -> str:
        """Predicate (in brackets) for a function taking one argument."""
        if function == "hasTemplateIdOf":
            return f"[{self.navigator.template_id_context_from_profile(argument)}]"
        if function == "ofType":
            if not argument.startswith("CDA"):
                raise ExpressionSyntaxError("ofType() requires a CDA.type in CDA IGs.")
            return f"[{cda_type_to_filter(argument[4:])}]"
        if function == "startsWith":
            return f"[starts-with(., '{argument}')]"
        if function == "memberOf":
            name = self.terminology.get_saved_name(argument) if self.terminology else None
            if not name:
                raise UnsupportedInvariantError(
                    f"Cannot calculate memberOf, Value Set {argument} is not loaded."
                )
            return f"[contains(${name}, .)]"

        replacement = KNOWN_PATTERNS.get(argument)
        if replacement is None:
            raise UnsupportedInvariantError(f"Unsupported matches pattern: {argument}")
        return replacement

    def _convert_terminal(
        self, expression: str, tokens: dict[str, str], scope: _Scope, sub_context: str | None
    ) -> str:
        had_parens = False
        while _WRAPPED.match(expression):
            expression = expression[1:-1]
            had_parens = True

        unsupported = _FUNCTION_CALL.search(expression)
        if unsupported:
            raise UnsupportedInvariantError(f"Unsupported function {unsupported.group(1)}")

        if expression.startswith("%resource") and not sub_context:
            rest = expression[len(RESOURCE_PREFIX) :]
            if not rest:
                return CLINICAL_DOCUMENT_XPATH
            return f"{CLINICAL_DOCUMENT_XPATH}/" + self.convert(rest, scope, RESOURCE_PREFIX)

        # Already converted at this or an outer level
        if _TOKEN_START.match(expression):
            if "." in expression:
                raise ExpressionSyntaxError(f"Unexpected . in tokenized expression {expression}")
            value = self._reset(expression, tokens)
            return f"({value})" if had_parens else value

        if _LITERAL.match(expression):
            return expression

        if expression == "$this":
            return "self::node()"
        if expression.startswith("$this."):
            return "self::node()/" + self.convert(expression[6:], scope, sub_context)

        xpath = self._resolve_path(expression, scope, sub_context)
        return f"({xpath})" if had_parens else xpath

    def _resolve_path(self, path: str, scope: _Scope, sub_context: str | None) -> str:
        schema, context = scope
        xpath = ""
        # %resource paths never resolve against the current definition
        if not (sub_context and sub_context.startswith(RESOURCE_PREFIX)):
            try:
                xpath = schema.path_to_xpath(context, unwrap_parens(path)) or (
                    self.navigator.xml_name_from_defs(schema.element(context), path)
                )
            except TranspileError:
                if not sub_context:
                    raise

        if not xpath and sub_context:
            # Every alternative of the sub context must agree on one XPath
            for member in (m.strip() for m in sub_context.split("|")):
                if member.startswith("CDA."):
                    type_scope = self._type_scope(member[4:])
                    member_xpath = type_scope.schema.path_to_xpath(type_scope.context, path)
                else:
                    member_xpath = self.navigator.xml_name_from_defs(
                        schema.element(context), path, member
                    )
                if member_xpath and xpath and member_xpath != xpath:
                    raise AmbiguousTypeError(
                        f"Unable to find unique xpath for {path} at {context} while checking "
                        f"{sub_context}. Found {xpath} and {member_xpath}"
                    )
                if member_xpath:
                    xpath = member_xpath

        if not xpath:
            raise DefinitionNotFoundError(
                f"Unable to find definition for {path} at {context} (subpath is {sub_context})"
            )
        return xpath


class ExpressionConverter:
    """Converts invariant expressions for one run.

    Args:
        navigator: Resolves paths that leave the current definition.
        terminology: Supplies short names of loaded value sets (memberOf).
    """

    def __init__(
        self, navigator: SchemaNavigator, terminology: ValueSetNames | None = None
    ) -> None:
        self.navigator = navigator
        self.terminology = terminology

    def convert(self, expression: str, schema: ParsedSchema, context: str) -> str:
        """Convert a FHIRPath expression into an XPath 1.0 test.

        Args:
            expression: The invariant expression.
            schema: Definition the constraint belongs to.
            context: Id of the element carrying the constraint.

        Returns:
            The XPath, or an empty string for an empty expression.

        Raises:
            UnsupportedInvariantError: For constructs that are not converted.
            TranspileError: For malformed or unresolvable expressions.
        """
        conversion = _Conversion(self.navigator, self.terminology, _Scope(schema, context))
        converted = conversion.convert(expression, conversion.root)

        if "effectiveTime" in converted and ("<" in converted or ">" in converted):
            raise UnsupportedInvariantError("Comparisons on datetime elements are not supported")

        return adjust_lengths(deunionize_contains(remove_double_brackets(converted)))


def convert_expression(
    expression: str,
    schema: ParsedSchema,
    context: str,
    terminology: ValueSetNames | None = None,
) -> str:
    """Convert an expression using the schema's own navigator."""
    return ExpressionConverter(schema.navigator, terminology).convert(expression, schema, context)
