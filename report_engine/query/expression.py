# report_engine/query/expression.py
"""Computed-column expression validation against the schema registry and a function/operator safelist."""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlparse import lexer
from sqlparse import tokens as T

from report_engine.core.exceptions import InvalidExpressionError, UnknownColumnError, UnknownTableError
from report_engine.schema.registry import SchemaRegistry

ALLOWED_FUNCTIONS = frozenset(
    {
        "DATEDIFF", "DATE_ADD", "DATE_SUB", "DATE_FORMAT", "NOW", "CURDATE", "CURTIME",
        "YEAR", "MONTH", "DAY", "HOUR", "MINUTE", "SECOND", "INTERVAL",
        "CONCAT", "COALESCE", "IFNULL", "NULLIF", "LEAST", "GREATEST",
        "CASE", "WHEN", "THEN", "ELSE", "END",
        "ROUND", "ABS", "UPPER", "LOWER", "TRIM", "LENGTH", "SUBSTRING", "REPLACE",
        "COUNT", "SUM", "AVG", "MIN", "MAX",
    }
)

AGGREGATE_FUNCTIONS = frozenset({"COUNT", "SUM", "AVG", "MIN", "MAX"})

ALLOWED_OPERATORS = ("+", "-", "*", "/", "=", "!=", "<>", "<", "<=", ">", ">=", "AND", "OR", "NOT")

FORBIDDEN_KEYWORDS = frozenset(
    {
        "DROP", "DELETE", "UPDATE", "INSERT", "UNION", "ALTER", "TRUNCATE", "CREATE",
        "GRANT", "REVOKE", "EXEC", "EXECUTE", "INTO", "INFORMATION_SCHEMA",
        "LOAD_FILE", "OUTFILE", "DUMPFILE", "BENCHMARK", "SLEEP",
    }
)

DANGEROUS_OPERATORS = frozenset({"||", "&&"})
COMMENT_MARKERS = ("--", "/*", "*/")

# Keywords that may appear bare without being column references
RESERVED_KEYWORDS = frozenset({"IS", "NULL", "TRUE", "FALSE", "DISTINCT"})

# Word operators outside the safelist; reported as operators, never resolved as columns
DISALLOWED_WORD_OPERATORS = frozenset(
    {"LIKE", "ILIKE", "RLIKE", "REGEXP", "IN", "BETWEEN", "XOR", "DIV", "SIMILAR", "ESCAPE", "SOUNDS"}
)

_WORD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TokenKind:
    IDENTIFIER = "identifier"
    FUNCTION = "function"
    KEYWORD = "keyword"
    FORBIDDEN = "forbidden"
    STRING = "string"
    NUMBER = "number"
    OPERATOR = "operator"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    TERMINATOR = "terminator"
    COMMENT = "comment"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ExpressionToken:
    kind: str
    value: str


class ExpressionValidationResult(BaseModel):
    """Result of validating a computed-column expression."""

    valid: bool
    errors: List[str] = []


# Raw word/dot markers used only while merging dotted names
_WORD_KIND = "word"
_DOT_KIND = "dot"


def _lex(expression: str) -> List[tuple]:
    """Flatten the sqlparse token stream into (kind, value, preceded_by_space) triples."""
    raw = []
    spaced = False
    for ttype, value in lexer.tokenize(expression):
        if ttype in T.Whitespace:
            spaced = True
            continue
        if ttype in T.Comment:
            raw.append((TokenKind.COMMENT, value, spaced))
        elif ttype in T.String:
            raw.append((TokenKind.STRING, value, spaced))
        elif ttype in T.Number:
            raw.append((TokenKind.NUMBER, value, spaced))
        elif ttype in T.Punctuation:
            kind = {
                "(": TokenKind.LPAREN,
                ")": TokenKind.RPAREN,
                ",": TokenKind.COMMA,
                ";": TokenKind.TERMINATOR,
                ".": _DOT_KIND,
            }.get(value, TokenKind.UNKNOWN)
            raw.append((kind, value, spaced))
        elif ttype in T.Name.Placeholder:
            raw.append((TokenKind.UNKNOWN, value, spaced))
        elif ttype in T.Keyword or ttype in T.Name or ttype in T.Operator:
            # Multi-word tokens such as "UNION ALL" or "NOT LIKE" are split into words
            parts = value.split()
            for index, part in enumerate(parts):
                if _WORD.match(part):
                    raw.append((_WORD_KIND, part, spaced or index > 0))
                elif ttype in T.Operator:
                    raw.append((TokenKind.OPERATOR, part, spaced or index > 0))
                else:
                    raw.append((TokenKind.UNKNOWN, part, spaced or index > 0))
        elif ttype is T.Wildcard:
            raw.append((TokenKind.OPERATOR, value, spaced))
        else:
            raw.append((TokenKind.UNKNOWN, value, spaced))
        spaced = False
    return raw


def _merge_dotted(raw: List[tuple]) -> List[tuple]:
    merged: List[tuple] = []
    index = 0
    while index < len(raw):
        kind, value, spaced = raw[index]
        if kind == _WORD_KIND:
            parts = [value]
            cursor = index + 1
            while (
                cursor + 1 < len(raw)
                and raw[cursor][0] == _DOT_KIND
                and not raw[cursor][2]
                and raw[cursor + 1][0] == _WORD_KIND
                and not raw[cursor + 1][2]
            ):
                parts.append(raw[cursor + 1][1])
                cursor += 2
            merged.append((_WORD_KIND, ".".join(parts), spaced))
            index = cursor
            continue
        if kind == _DOT_KIND:
            kind = TokenKind.UNKNOWN
        merged.append((kind, value, spaced))
        index += 1
    return merged


def tokenize(expression: str) -> List[ExpressionToken]:
    """Tokenize an expression into classified tokens (whitespace dropped, dotted names merged)."""
    merged = _merge_dotted(_lex(expression))
    tokens: List[ExpressionToken] = []
    for position, (kind, value, _) in enumerate(merged):
        if kind != _WORD_KIND:
            tokens.append(ExpressionToken(kind, value))
            continue
        upper = value.upper()
        followed_by_paren = position + 1 < len(merged) and merged[position + 1][0] == TokenKind.LPAREN
        if upper in FORBIDDEN_KEYWORDS:
            kind = TokenKind.FORBIDDEN
        elif upper in ("AND", "OR", "NOT") or upper in DISALLOWED_WORD_OPERATORS:
            kind = TokenKind.OPERATOR
        elif upper in RESERVED_KEYWORDS:
            kind = TokenKind.KEYWORD
        elif followed_by_paren:
            kind = TokenKind.FUNCTION
        elif upper in ALLOWED_FUNCTIONS:
            kind = TokenKind.KEYWORD
        else:
            kind = TokenKind.IDENTIFIER
        tokens.append(ExpressionToken(kind, value))
    return tokens


def contains_aggregate(tokens: List[ExpressionToken]) -> bool:
    return any(token.kind == TokenKind.FUNCTION and token.value.upper() in AGGREGATE_FUNCTIONS for token in tokens)


def _as_single_quoted(literal: str) -> str:
    if literal.startswith('"') and literal.endswith('"'):
        inner = literal[1:-1].replace('""', '"').replace('\\"', '"')
        return "'" + inner.replace("'", "''") + "'"
    return literal


def render_tokens(tokens: List[ExpressionToken], render_identifier: Callable[[str], str]) -> str:
    """Re-render validated tokens as SQL text, rewriting every identifier through ``render_identifier``."""
    parts: List[str] = []
    previous: Optional[ExpressionToken] = None
    for token in tokens:
        if token.kind == TokenKind.IDENTIFIER:
            text = render_identifier(token.value)
        elif token.kind == TokenKind.STRING:
            text = _as_single_quoted(token.value)
        elif token.kind in (TokenKind.FUNCTION, TokenKind.KEYWORD) or token.value.upper() in ("AND", "OR", "NOT"):
            text = token.value.upper()
        else:
            text = token.value

        glued = previous is None or (
            token.kind in (TokenKind.RPAREN, TokenKind.COMMA)
            or previous.kind == TokenKind.LPAREN
            or (token.kind == TokenKind.LPAREN and previous.kind == TokenKind.FUNCTION)
        )
        parts.append(text if glued else " " + text)
        previous = token
    return "".join(parts)


class ExpressionValidator:
    """
    Validates computed-column expressions.

    Validation is pure: it reads the registry but never mutates anything, so
    one validator can serve any number of concurrent callers.
    """

    def __init__(self, registry: SchemaRegistry):
        self.registry = registry

    def validate(self, expression: str, table_name: str) -> ExpressionValidationResult:
        """
        Validate an expression against a table.

        Steps:
            1. the table must be registered (otherwise a single error and stop)
            2. tokenize
            3. forbidden keywords, terminators, comments and dangerous operators
            4. function calls must be in the safelist
            5. bare identifiers must resolve to columns of the table
            6. operators must be in the safelist
        """
        # 1. Table must exist
        try:
            self.registry.get_table(table_name)
        except UnknownTableError as exc:
            return ExpressionValidationResult(valid=False, errors=[str(exc)])

        if not expression or not expression.strip():
            return ExpressionValidationResult(valid=False, errors=["Expression cannot be empty"])

        errors: List[str] = []

        # 2. Tokenize
        tokens = tokenize(expression)
        self._validate_structure(tokens, errors)

        # 3. Forbidden constructs
        self._validate_security(expression, tokens, errors)

        # 4. Function safelist
        for token in tokens:
            if token.kind == TokenKind.FUNCTION and token.value.upper() not in ALLOWED_FUNCTIONS:
                errors.append(
                    f"Function '{token.value}' is not allowed. Allowed functions: {', '.join(self.get_allowed_functions())}"
                )

        # 5. Column references
        for token in tokens:
            if token.kind != TokenKind.IDENTIFIER:
                continue
            try:
                self.registry.resolve_column(table_name, token.value)
            except UnknownColumnError as exc:
                errors.append(str(exc))

        # 6. Operator safelist
        for token in tokens:
            if token.kind == TokenKind.OPERATOR:
                if token.value in DANGEROUS_OPERATORS:
                    continue
                if token.value.upper() not in ALLOWED_OPERATORS:
                    errors.append(f"Operator '{token.value}' is not allowed")
            elif token.kind == TokenKind.UNKNOWN:
                errors.append(f"Unexpected token '{token.value}' in expression")

        errors = list(dict.fromkeys(errors))
        return ExpressionValidationResult(valid=len(errors) == 0, errors=errors)

    def assert_valid(self, expression: str, table_name: str) -> List[ExpressionToken]:
        """Validate and return the tokens, raising InvalidExpressionError on failure."""
        result = self.validate(expression, table_name)
        if not result.valid:
            raise InvalidExpressionError(expression, result.errors)
        return tokenize(expression)

    def _validate_structure(self, tokens: List[ExpressionToken], errors: List[str]) -> None:
        depth = 0
        for token in tokens:
            if token.kind == TokenKind.LPAREN:
                depth += 1
            elif token.kind == TokenKind.RPAREN:
                depth -= 1
                if depth < 0:
                    break
        if depth != 0:
            errors.append("Unbalanced parentheses in expression")

    def _validate_security(self, expression: str, tokens: List[ExpressionToken], errors: List[str]) -> None:
        for token in tokens:
            if token.kind == TokenKind.FORBIDDEN:
                errors.append(f"Forbidden keyword '{token.value.upper()}' is not allowed in expressions")
            elif token.kind == TokenKind.TERMINATOR:
                errors.append("Statement terminator ';' is not allowed in expressions")
            elif token.kind == TokenKind.COMMENT:
                errors.append("Comments are not allowed in expressions")
            elif token.kind == TokenKind.OPERATOR and token.value in DANGEROUS_OPERATORS:
                errors.append(f"Dangerous operator '{token.value}' is not allowed")

        # Unterminated comment markers that the lexer split into operators
        code = "".join(value for ttype, value in lexer.tokenize(expression) if ttype not in T.String)
        if any(marker in code for marker in COMMENT_MARKERS):
            errors.append("Comments are not allowed in expressions")

    def get_allowed_functions(self) -> List[str]:
        return sorted(ALLOWED_FUNCTIONS)

    def get_allowed_operators(self) -> List[str]:
        return list(ALLOWED_OPERATORS) + ["IS", "IS NOT", "NULL"]
