"""
SQL GUARD - read-only enforcement for generated SQL

Runs before anything touches the database:
    1. strip comments and one trailing ";"
    2. exactly one statement
    3. must start with SELECT or WITH
    4. no write / DDL / session keywords
    5. only tables from the queryable catalog (CTE names are fine)

String literals and quoted identifiers are masked first, so
WHERE note = 'please delete me' is not a DELETE.

The executor still runs inside a read-only transaction; this module is
what gives the model a precise error to repair against.
"""

import re
from typing import Dict, Iterable, List, Set, Tuple

from app.ai_feature.errors import SQLValidationError, SQLViolation

FORBIDDEN_KEYWORDS = {
    "insert",
    "update",
    "delete",
    "merge",
    "upsert",
    "drop",
    "alter",
    "create",
    "truncate",
    "grant",
    "revoke",
    "exec",
    "execute",
    "call",
    "copy",
    "attach",
    "detach",
    "pragma",
    "vacuum",
    "reindex",
    "into",
    "set",
}

# Words that can follow a table name but are not aliases
_CLAUSE_WORDS = {
    "where", "join", "inner", "left", "right", "full", "cross", "outer",
    "natural", "on", "using", "group", "order", "limit", "offset", "fetch",
    "union", "intersect", "except", "having", "window", "as", "lateral",
    "tablesample", "for", "qualify",
}

# Keywords that open a parenthesised group rather than a function call
_NON_FUNCTION_WORDS = {
    "in", "exists", "as", "from", "join", "on", "and", "or", "not", "any",
    "all", "some", "select", "where", "when", "then", "else", "union",
    "with", "lateral", "over", "values", "by", "having", "using",
}

# Words that end a FROM list at the same nesting level
_FROM_ENDS = {
    "where", "group", "order", "limit", "having", "window", "union",
    "intersect", "except", "offset", "fetch", "qualify", "for", "select",
    "returning",
}

# First word inside "(" that makes the group a subquery
_QUERY_STARTS = {"select", "with", "values"}

_IDENT = r"[A-Za-z_][\w$]*"
_NAME = re.compile(rf"{_IDENT}(?:\s*\.\s*{_IDENT})*")
_TOKEN = re.compile(rf"'[^']*'|{_IDENT}(?:\s*\.\s*{_IDENT})*|\(|\)|,|\S")


# ============================================================================
# STEP 1: SCAN (comments, literals, quoted identifiers)
# ============================================================================


def _scan(sql: str) -> Tuple[str, str, str]:
    """
    Walk the statement once.

    Returns:
        cleaned: comments removed, everything else as written
        keyword_code: literals and quoted identifiers blanked out
        table_code: literal and quoted identifier text reduced to one word each
    """
    cleaned: List[str] = []
    keyword_code: List[str] = []
    table_code: List[str] = []

    i, n = 0, len(sql)
    closers = {'"': '"', "[": "]", "`": "`"}

    while i < n:
        ch = sql[i]

        # -- line comment
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            for out in (cleaned, keyword_code, table_code):
                out.append(" ")
            continue

        # /* block comment */
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            for out in (cleaned, keyword_code, table_code):
                out.append(" ")
            continue

        # 'string literal' with '' escapes
        if ch == "'":
            j = i + 1
            while j < n:
                if sql[j] == "'":
                    if j + 1 < n and sql[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            literal = sql[i : j + 1]
            cleaned.append(literal)
            keyword_code.append("''")
            # SQLite accepts FROM 'name', so the table view keeps the text
            table_code.append("'" + re.sub(r"\W", "_", literal[1:-1]) + "'")
            i = j + 1
            continue

        # "quoted" [bracketed] `backticked` identifiers
        if ch in closers:
            end = sql.find(closers[ch], i + 1)
            end = n - 1 if end == -1 else end
            inner = sql[i + 1 : end]
            cleaned.append(sql[i : end + 1])
            keyword_code.append(" ident ")
            table_code.append(re.sub(r"\W", "_", inner) or "_")
            i = end + 1
            continue

        cleaned.append(ch)
        keyword_code.append(ch)
        table_code.append(ch)
        i += 1

    return "".join(cleaned), "".join(keyword_code), "".join(table_code)


# ============================================================================
# STEP 2: TABLE REFERENCES
# ============================================================================


def _normalize_table(name: str) -> str:
    return re.sub(r"\s+", "", name).split(".")[-1].lower()


def _tokens(sql: str) -> List[str]:
    _, _, code = _scan(sql)
    return _TOKEN.findall(code)


def _paren_spans(tokens: List[str]) -> Tuple[Dict[int, int], List[int]]:
    """
    Returns:
        closing: index of the matching ")" for every "("
        enclosing: per token, index of the ")" closing the group around it
    """
    end = len(tokens)
    closing: Dict[int, int] = {}
    stack: List[int] = []
    for idx, tok in enumerate(tokens):
        if tok == "(":
            stack.append(idx)
        elif tok == ")" and stack:
            closing[stack.pop()] = idx

    enclosing: List[int] = []
    stack = []
    for idx, tok in enumerate(tokens):
        if tok == ")" and stack:
            stack.pop()
        enclosing.append(closing.get(stack[-1], end) if stack else end)
        if tok == "(":
            stack.append(idx)
    return closing, enclosing


def _cte_definitions(tokens: List[str]) -> List[Tuple[str, int, int]]:
    """
    (name, first, last): token range in which a WITH entry hides a table.

    Without RECURSIVE an entry is visible only after its own body, so
    WITH users_table AS (SELECT * FROM users_table) still reads the real
    table. Visibility ends with the group that holds the WITH.
    """
    closing, enclosing = _paren_spans(tokens)
    end = len(tokens)
    definitions: List[Tuple[str, int, int]] = []

    for idx, tok in enumerate(tokens):
        if tok.lower() != "with":
            continue
        scope_end = enclosing[idx]
        j = idx + 1
        recursive = j < end and tokens[j].lower() == "recursive"
        if recursive:
            j += 1

        while j < end and re.fullmatch(_IDENT, tokens[j]):
            name_at = j
            j += 1
            # optional column list: name (a, b) AS (...)
            if j < end and tokens[j] == "(":
                j = closing.get(j, end) + 1
            if j >= end or tokens[j].lower() != "as":
                break
            j += 1
            while j < end and tokens[j].lower() in ("not", "materialized"):
                j += 1
            if j >= end or tokens[j] != "(":
                break
            body_end = closing.get(j, end)
            first = name_at if recursive else body_end
            definitions.append((tokens[name_at].lower(), first, scope_end))
            j = body_end + 1
            if j < end and tokens[j] == ",":
                j += 1
                continue
            break

    return definitions


def _table_references(tokens: List[str]) -> List[Tuple[str, bool, int]]:
    """
    (name, schema_qualified, token index) for every table source.

    Each "(" opens a frame, classified by what surrounds it:
        query: the next word is SELECT / WITH / VALUES
        call:  a function name precedes it; FROM inside is not a table,
               as in EXTRACT(YEAR FROM d) or TRIM(x FROM y)
        group: anything else; right after FROM / JOIN it wraps a source
    """
    references: List[Tuple[str, bool, int]] = []
    # [kind, inside a FROM list, next word is a table source]
    frames: List[list] = [["query", False, False]]
    prev = ""

    for idx, tok in enumerate(tokens):
        low = tok.lower()
        nxt = tokens[idx + 1].lower() if idx + 1 < len(tokens) else ""
        frame = frames[-1]

        if frame[2] and tok != ")":
            if low in ("lateral", "only"):
                prev = tok
                continue
            frame[2] = False
            if tok == "(":
                if nxt in _QUERY_STARTS:
                    frames.append(["query", False, False])
                else:
                    # FROM (t), FROM ((a) JOIN b ON ...)
                    frames.append(["group", True, True])
            elif tok.startswith("'"):
                references.append((tok[1:-1].lower() or "''", False, idx))
            elif _NAME.fullmatch(tok):
                name = _normalize_table(tok)
                # table-valued functions are fine, e.g. generate_series(...),
                # except the ones that expose the schema
                if nxt != "(" or name.startswith("pragma_"):
                    references.append((name, "." in tok, idx))
            prev = tok
            continue

        if tok == "(":
            if nxt in _QUERY_STARTS:
                kind = "query"
            elif re.fullmatch(_IDENT, prev) and prev.lower() not in (
                _NON_FUNCTION_WORDS | _CLAUSE_WORDS
            ):
                kind = "call"
            else:
                kind = "group"
            frames.append([kind, False, False])
        elif tok == ")":
            if len(frames) > 1:
                frames.pop()
        elif frame[0] != "call":
            if low in ("from", "join"):
                frame[1] = frame[2] = True
            elif low == "," and frame[1]:
                frame[2] = True
            elif low in _FROM_ENDS:
                frame[1] = False

        prev = tok

    return references


def cte_names(sql: str) -> Set[str]:
    """Names defined in a WITH clause, lowercased."""
    return {name for name, _, _ in _cte_definitions(_tokens(sql))}


def referenced_tables(sql: str) -> Set[str]:
    """Tables named as FROM / JOIN sources, schema prefix stripped, lowercased."""
    return {name for name, _, _ in _table_references(_tokens(sql))}


def _real_tables(sql: str) -> Set[str]:
    """Referenced tables that no visible CTE name accounts for."""
    tokens = _tokens(sql)
    definitions = _cte_definitions(tokens)
    tables: Set[str] = set()
    for name, qualified, at in _table_references(tokens):
        shadowed = not qualified and any(
            cte == name and first < at < last for cte, first, last in definitions
        )
        if not shadowed:
            tables.add(name)
    return tables


# ============================================================================
# MAIN FUNCTION
# ============================================================================


def validate_sql(sql: str, allowed_tables: Iterable[str]) -> str:
    """
    Check a generated statement and return it normalised.

    Args:
        sql: statement drafted by the model
        allowed_tables: queryable table names

    Returns:
        The statement without comments and trailing semicolon

    Raises:
        SQLValidationError: with the violated rule as `kind`

    Example:
        validate_sql("SELECT * FROM daily_changes_snapshot;", {"daily_changes_snapshot"})
        -> "SELECT * FROM daily_changes_snapshot"
    """
    cleaned, keyword_code, _ = _scan(sql or "")

    keyword_code = keyword_code.strip()
    while keyword_code.endswith(";"):
        keyword_code = keyword_code[:-1].rstrip()
    statement = cleaned.strip()
    while statement.endswith(";"):
        statement = statement[:-1].rstrip()

    if not keyword_code:
        raise SQLValidationError(SQLViolation.EMPTY, "no SQL statement was produced")

    if ";" in keyword_code:
        raise SQLValidationError(
            SQLViolation.MULTI_STATEMENT, "only a single statement is allowed"
        )

    first = re.match(r"[\s(]*([A-Za-z_]+)", keyword_code)
    if not first or first.group(1).lower() not in ("select", "with"):
        raise SQLValidationError(
            SQLViolation.NOT_SELECT, "statement must start with SELECT or WITH"
        )

    lowered = keyword_code.lower()
    for keyword in sorted(FORBIDDEN_KEYWORDS):
        if re.search(rf"\b{keyword}\b", lowered):
            raise SQLValidationError(
                SQLViolation.FORBIDDEN_KEYWORD,
                f"keyword {keyword.upper()} is not allowed in read-only queries",
            )

    allowed = {t.lower() for t in allowed_tables}
    unknown = _real_tables(statement) - allowed
    if unknown:
        raise SQLValidationError(
            SQLViolation.UNKNOWN_TABLE,
            f"unknown or non-queryable table(s): {', '.join(sorted(unknown))}; "
            f"available: {', '.join(sorted(allowed)) or 'none'}",
        )

    return statement
