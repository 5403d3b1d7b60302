"""
Unit tests for computed-column expression validation.
"""

import pytest

from report_engine.core.exceptions import InvalidExpressionError
from report_engine.query.expression import ExpressionValidator, TokenKind, contains_aggregate, render_tokens, tokenize
from report_engine.schema.definitions import ColumnDefinition, TableDefinition


@pytest.fixture
def validator(validator_registry):
    return ExpressionValidator(validator_registry)


class TestValidExpressions:
    """Expressions built from safelisted functions, operators and known columns"""

    @pytest.mark.parametrize(
        "expression",
        [
            "DATEDIFF(end_date, start_date)",
            "DATEDIFF(LEAST(end_date, '2025-10-31'), GREATEST(start_date, '2025-10-01')) + 1",
            "CONCAT(name, ' - ', id)",
            "CASE WHEN amount > 100 THEN 'High' WHEN amount > 50 THEN 'Medium' ELSE 'Low' END",
            "ROUND(COALESCE(amount / NULLIF(quantity, 0), 0), 2)",
            "details.price * quantity",
            "CONCAT(name, ' - ', related.value)",
            "CASE WHEN end_date IS NULL THEN 0 ELSE quantity END",
            "SUM(amount)",
        ],
    )
    def test_valid(self, validator, expression):
        result = validator.validate(expression, "test_table")
        assert result.valid, result.errors
        assert result.errors == []

    def test_validation_is_idempotent(self, validator):
        expression = "DATEDIFF(end_date, start_date) + quantity"
        first = validator.validate(expression, "test_table")
        second = validator.validate(expression, "test_table")
        assert first == second

    def test_assert_valid_returns_tokens(self, validator):
        tokens = validator.assert_valid("ROUND(amount, 2)", "test_table")
        assert [token.kind for token in tokens][:2] == [TokenKind.FUNCTION, TokenKind.LPAREN]


class TestRejectedExpressions:
    """Expressions that must never reach SQL"""

    @pytest.mark.parametrize(
        "expression",
        [
            "DROP TABLE test_table",
            "DELETE FROM test_table",
            'UPDATE test_table SET name = "test"',
            "INSERT INTO test_table VALUES (1)",
            "UNION SELECT * FROM users",
        ],
    )
    def test_forbidden_keywords(self, validator, expression):
        result = validator.validate(expression, "test_table")
        assert not result.valid
        assert result.errors

    @pytest.mark.parametrize(
        "expression",
        [
            'name || "test"',
            "name; DROP TABLE test_table",
            "name -- comment",
            "name /* comment */",
            "quantity && 1",
        ],
    )
    def test_dangerous_operators_and_comments(self, validator, expression):
        result = validator.validate(expression, "test_table")
        assert not result.valid
        assert result.errors

    def test_invalid_function(self, validator):
        result = validator.validate("INVALID_FUNC(name)", "test_table")
        assert not result.valid
        assert "INVALID_FUNC" in result.errors[0]

    def test_invalid_column(self, validator):
        result = validator.validate("DATEDIFF(invalid_column, start_date)", "test_table")
        assert not result.valid
        assert "invalid_column" in result.errors[0]

    def test_invalid_table_is_a_single_error(self, validator):
        result = validator.validate("DATEDIFF(end_date, start_date)", "invalid_table")
        assert not result.valid
        assert len(result.errors) == 1
        assert "invalid_table" in result.errors[0]

    def test_unknown_relationship_column(self, validator):
        result = validator.validate("related.missing", "test_table")
        assert not result.valid
        assert "related.missing" in result.errors[0]

    def test_relationship_reference_on_table_without_relationship(self, validator, validator_registry):
        validator_registry.register_table(
            TableDefinition(
                name="plain_table",
                tenant_column=None,
                columns=(ColumnDefinition("id", "integer"), ColumnDefinition("related_id", "integer")),
            )
        )

        assert validator.validate("related.value", "test_table").valid
        result = validator.validate("related.value", "plain_table")
        assert not result.valid
        assert "related.value" in result.errors[0]

    def test_word_operators_outside_safelist(self, validator):
        result = validator.validate("name LIKE 'A%'", "test_table")
        assert not result.valid
        assert any("LIKE" in error for error in result.errors)

    def test_unbalanced_parentheses(self, validator):
        result = validator.validate("ROUND(amount, 2", "test_table")
        assert not result.valid
        assert "Unbalanced parentheses in expression" in result.errors

    def test_empty_expression(self, validator):
        result = validator.validate("   ", "test_table")
        assert not result.valid

    def test_assert_valid_raises(self, validator):
        with pytest.raises(InvalidExpressionError) as exc_info:
            validator.assert_valid("SLEEP(10)", "test_table")
        assert exc_info.value.errors

    def test_errors_are_not_repeated(self, validator):
        result = validator.validate("missing + missing", "test_table")
        assert len(result.errors) == 1


class TestTokenizer:
    """Tokenizer and renderer used by the compiler"""

    def test_dotted_names_are_single_identifiers(self):
        tokens = tokenize("details.price * quantity")
        identifiers = [token.value for token in tokens if token.kind == TokenKind.IDENTIFIER]
        assert identifiers == ["details.price", "quantity"]

    def test_aggregate_detection(self):
        assert contains_aggregate(tokenize("SUM(amount) / COUNT(*)"))
        assert not contains_aggregate(tokenize("ROUND(amount, 2)"))

    def test_render_rewrites_identifiers(self):
        tokens = tokenize("round(amount / NULLIF(quantity, 0), 2)")
        rendered = render_tokens(tokens, lambda name: f"t.{name}")
        assert rendered == "ROUND(t.amount / NULLIF(t.quantity, 0), 2)"


class TestSafelists:
    def test_allowed_functions(self, validator):
        functions = validator.get_allowed_functions()
        assert "DATEDIFF" in functions
        assert "CONCAT" in functions
        assert "CASE" in functions
        assert "SLEEP" not in functions

    def test_allowed_operators(self, validator):
        operators = validator.get_allowed_operators()
        for operator in ("+", "-", "*", "/"):
            assert operator in operators
