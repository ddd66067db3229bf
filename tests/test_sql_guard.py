import pytest

from app.ai_feature.errors import SQLValidationError, SQLViolation
from app.ai_feature.sql_guard import cte_names, referenced_tables, validate_sql

ALLOWED = {"daily_changes_snapshot"}


def assert_violation(sql, kind):
    with pytest.raises(SQLValidationError) as exc_info:
        validate_sql(sql, ALLOWED)
    assert exc_info.value.kind == kind
    return exc_info.value


def test_plain_select_is_normalised():
    sql = "SELECT entity, SUM(value) FROM daily_changes_snapshot GROUP BY entity;"
    assert validate_sql(sql, ALLOWED) == (
        "SELECT entity, SUM(value) FROM daily_changes_snapshot GROUP BY entity"
    )


def test_comments_are_stripped():
    sql = "-- total revenue\nSELECT COUNT(*) /* rows */ FROM daily_changes_snapshot"
    statement = validate_sql(sql, ALLOWED)
    assert "--" not in statement
    assert "/*" not in statement
    assert statement.startswith("SELECT COUNT(*)")


def test_table_names_are_case_insensitive():
    assert validate_sql("select * from DAILY_CHANGES_SNAPSHOT", ALLOWED)


def test_schema_prefix_is_ignored():
    assert validate_sql("SELECT * FROM public.daily_changes_snapshot", ALLOWED)


def test_with_clause_and_cte_names_are_allowed():
    sql = """
        WITH per_day AS (
            SELECT snapshot_date, SUM(value) AS total
            FROM daily_changes_snapshot
            GROUP BY snapshot_date
        )
        SELECT * FROM per_day ORDER BY total DESC
    """
    assert validate_sql(sql, ALLOWED).startswith("WITH per_day")


def test_empty_statement():
    assert_violation("   ;  ", SQLViolation.EMPTY)
    assert_violation("-- only a comment", SQLViolation.EMPTY)


def test_multiple_statements_rejected():
    assert_violation(
        "SELECT 1 FROM daily_changes_snapshot; DROP TABLE users_table",
        SQLViolation.MULTI_STATEMENT,
    )


def test_semicolon_inside_literal_is_not_a_second_statement():
    sql = "SELECT * FROM daily_changes_snapshot WHERE entity = 'a;b'"
    assert validate_sql(sql, ALLOWED) == sql


def test_non_select_rejected():
    error = assert_violation(
        "DELETE FROM daily_changes_snapshot", SQLViolation.NOT_SELECT
    )
    assert str(error).startswith("not_select:")


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * INTO backup FROM daily_changes_snapshot",
        "WITH x AS (DELETE FROM daily_changes_snapshot RETURNING *) SELECT * FROM x",
        "SELECT pg_sleep(1) FROM daily_changes_snapshot FOR UPDATE",
    ],
)
def test_write_keywords_rejected(sql):
    assert_violation(sql, SQLViolation.FORBIDDEN_KEYWORD)


def test_keywords_inside_string_literals_are_fine():
    sql = "SELECT * FROM daily_changes_snapshot WHERE entity = 'please delete me'"
    assert validate_sql(sql, ALLOWED) == sql


def test_keyword_inside_quoted_identifier_is_fine():
    sql = 'SELECT value AS "update" FROM daily_changes_snapshot'
    assert validate_sql(sql, ALLOWED) == sql


def test_unknown_table_rejected_with_available_list():
    error = assert_violation(
        "SELECT * FROM users_table", SQLViolation.UNKNOWN_TABLE
    )
    assert "users_table" in error.message
    assert "daily_changes_snapshot" in error.message


def test_joined_table_must_be_allowed():
    assert_violation(
        "SELECT * FROM daily_changes_snapshot d JOIN users_table u ON u.id = d.id",
        SQLViolation.UNKNOWN_TABLE,
    )


def test_comma_separated_from_list():
    assert referenced_tables("SELECT * FROM a x, b AS y, c WHERE x.id = y.id") == {
        "a",
        "b",
        "c",
    }


def test_from_inside_function_call_is_not_a_table():
    sql = (
        "SELECT EXTRACT(YEAR FROM snapshot_date) AS y, SUM(value) "
        "FROM daily_changes_snapshot GROUP BY 1"
    )
    assert referenced_tables(sql) == {"daily_changes_snapshot"}
    assert validate_sql(sql, ALLOWED)


def test_subquery_tables_are_checked():
    assert referenced_tables(
        "SELECT * FROM (SELECT * FROM inner_table) sub JOIN other ON true"
    ) == {"inner_table", "other"}


def test_table_valued_function_is_skipped():
    assert referenced_tables("SELECT * FROM generate_series(1, 3)") == set()


def test_cte_names():
    sql = "WITH a AS (SELECT 1), b (x) AS (SELECT 2) SELECT * FROM a, b"
    assert cte_names(sql) == {"a", "b"}


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT email, password FROM (users_table)",
        "SELECT * FROM daily_changes_snapshot JOIN (users_table) ON 1=1",
        "SELECT ARRAY(SELECT password FROM users_table) FROM daily_changes_snapshot",
        "SELECT * FROM ((daily_changes_snapshot) JOIN users_table ON 1=1)",
        "SELECT * FROM (SELECT 1) x, users_table",
        "SELECT * FROM generate_series(1, 3) g, users_table",
        "SELECT * FROM 'users_table'",
        "SELECT COALESCE((SELECT MAX(id) FROM users_table), 0)",
    ],
)
def test_hidden_table_cannot_be_reached(sql):
    error = assert_violation(sql, SQLViolation.UNKNOWN_TABLE)
    assert "users_table" in error.message


@pytest.mark.parametrize(
    "sql",
    [
        "WITH users_table AS (SELECT * FROM users_table) SELECT * FROM users_table",
        "WITH a AS (SELECT * FROM users_table), users_table AS (SELECT 1) SELECT * FROM a",
        "WITH users_table AS (SELECT * FROM main.users_table) SELECT * FROM users_table",
        "SELECT * FROM (WITH users_table AS (SELECT 1) SELECT * FROM users_table) a, users_table",
    ],
)
def test_cte_name_does_not_hide_a_real_table(sql):
    assert_violation(sql, SQLViolation.UNKNOWN_TABLE)


def test_recursive_cte_may_reference_itself():
    sql = (
        "WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n WHERE x < 5) "
        "SELECT x FROM n"
    )
    assert validate_sql(sql, ALLOWED) == sql


def test_schema_pragma_functions_are_tables():
    assert_violation(
        "SELECT name FROM pragma_table_info('users_table')", SQLViolation.UNKNOWN_TABLE
    )
