"""
Placeholder substitution for validated SQL templates.

Templates are admin-authored SQL with `:name` placeholders, usually wrapped in
NULL-safe guards such as `(:tier IS NULL OR m.tier = :tier)`. Rendering turns a
template plus a filter map into concrete SQL:

    absent / null / ""          -> NULL
    scalar                      -> quoted literal (quotes doubled) or raw number
    "a,b" or ["a", "b"]         -> guard and `col = :p` become `col IN ('a', 'b')`

Multi-value rewriting accepts quoted columns (`"tier" = :tier`) and cast
placeholders (`:tier::text`); the cast is dropped along with the placeholder.

The template is lexed into tokens first, so string literals, comments and
`::type` casts are never mistaken for placeholders.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

STANDARD = "standard"
WAREHOUSE = "warehouse"

_TOKEN_RE = re.compile(
    r"""
      (?P<string>'(?:[^']|'')*'?)
    | (?P<quoted>"(?:[^"]|"")*"?|`[^`]*`?)
    | (?P<comment>--[^\n]*|/\*.*?(?:\*/|\Z))
    | (?P<cast>::)
    | (?P<placeholder>:[A-Za-z_]\w*)
    | (?P<schema>\$\{schema\})
    | (?P<ident>[A-Za-z_][\w$]*(?:\.[A-Za-z_][\w$]*)*)
    | (?P<number>\d+(?:\.\d+)?)
    | (?P<ws>\s+)
    | (?P<op>!=|<>|<=|>=|.)
    """,
    re.VERBOSE | re.DOTALL,
)

_NEGATED = {"!=", "<>"}
_COLUMN_KINDS = ("ident", "quoted")


class Token(NamedTuple):
    kind: str
    text: str

    @property
    def name(self) -> str:
        """Placeholder name without the sigil."""
        return self.text[1:]

    def is_word(self, word: str) -> bool:
        return self.kind == "ident" and self.text.upper() == word

    def is_op(self, *ops: str) -> bool:
        return self.kind == "op" and self.text in ops


def tokenize(sql: str) -> List[Token]:
    return [Token(m.lastgroup, m.group()) for m in _TOKEN_RE.finditer(sql)]


def untokenize(tokens: Iterable[Token]) -> str:
    return "".join(token.text for token in tokens)


def placeholders(sql: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    names: List[str] = []
    for token in tokenize(sql):
        if token.kind == "placeholder" and token.name not in names:
            names.append(token.name)
    return names


# =========================
# Literals
# =========================
def quote_literal(value: Any) -> str:
    """Render one scalar as a SQL literal."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (date, datetime)):
        value = value.isoformat()
    text = str(value).replace("'", "''")
    return f"'{text}'"


def split_multi_value(value: Any) -> Optional[List[str]]:
    """
    Return the individual values of a multi-select, or None for a scalar.

    Comma-joined strings and lists are multi-selects; blanks are dropped,
    so "a,,b " gives ["a", "b"] and "," gives [].
    """
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value if v is not None]
    elif isinstance(value, str) and "," in value:
        items = [v.strip() for v in value.split(",")]
    else:
        return None
    return [item for item in items if item]


# =========================
# Token helpers
# =========================
def _skip(tokens: Sequence[Token], index: int, step: int = 1) -> int:
    """Next index (in `step` direction) that isn't whitespace or a comment."""
    while 0 <= index < len(tokens) and tokens[index].kind in ("ws", "comment"):
        index += step
    return index


def _match_placeholder(tokens: Sequence[Token], index: int, name: str) -> Optional[int]:
    """
    Match `:name` or `:name::type` at `index`.

    Returns the index of the last matched token, or None.
    """
    if index >= len(tokens):
        return None
    token = tokens[index]
    if token.kind != "placeholder" or token.name != name:
        return None
    cast = _skip(tokens, index + 1)
    if cast < len(tokens) and tokens[cast].kind == "cast":
        type_index = _skip(tokens, cast + 1)
        if type_index < len(tokens) and tokens[type_index].kind == "ident":
            return type_index
    return index


def _match_guard(tokens: Sequence[Token], start: int, name: str) -> Optional[tuple]:
    """
    Match `( :name IS NULL OR col = :name )` beginning at `start`.

    Either placeholder may carry a `::type` cast and the column may be quoted.
    Returns (end_index, column_token) or None.
    """
    index = _match_placeholder(tokens, _skip(tokens, start + 1), name)
    if index is None:
        return None
    for word in ("IS", "NULL", "OR"):
        index = _skip(tokens, index + 1)
        if index >= len(tokens) or not tokens[index].is_word(word):
            return None

    index = _skip(tokens, index + 1)
    if index >= len(tokens) or tokens[index].kind not in _COLUMN_KINDS:
        return None
    column = tokens[index]

    index = _skip(tokens, index + 1)
    if index >= len(tokens) or not tokens[index].is_op("="):
        return None
    index = _match_placeholder(tokens, _skip(tokens, index + 1), name)
    if index is None:
        return None

    index = _skip(tokens, index + 1)
    if index >= len(tokens) or not tokens[index].is_op(")"):
        return None
    return index, column


def _in_clause(column: Token, op: str, in_list: str) -> List[Token]:
    keyword = "NOT IN" if op in _NEGATED else "IN"
    return [
        column,
        Token("ws", " "),
        Token("ident", keyword),
        Token("ws", " "),
        Token("literal", in_list),
    ]


def _rewrite_multi(tokens: List[Token], name: str, in_list: str) -> List[Token]:
    # (:p IS NULL OR col = :p)  ->  col IN (...)
    result: List[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.is_op("("):
            matched = _match_guard(tokens, index, name)
            if matched:
                end, column = matched
                result.extend(_in_clause(column, "=", in_list))
                index = end + 1
                continue
        result.append(token)
        index += 1
    tokens = result

    # col = :p  ->  col IN (...),  col != :p  ->  col NOT IN (...)
    result = []
    index = 0
    while index < len(tokens):
        end = _match_placeholder(tokens, index, name)
        if end is None:
            result.append(tokens[index])
            index += 1
            continue
        # A cast on a multi-value placeholder is dropped with it
        index = end + 1

        op_index = _skip(result, len(result) - 1, -1)
        col_index = _skip(result, op_index - 1, -1)
        if (
            op_index >= 0
            and col_index >= 0
            and result[op_index].is_op("=", *_NEGATED)
            and result[col_index].kind in _COLUMN_KINDS
        ):
            op = result[op_index].text
            column = result[col_index]
            del result[col_index:]
            result.extend(_in_clause(column, op, in_list))
            continue
        # Anything else, e.g. `col IN :p`
        result.append(Token("literal", in_list))
    return result


def substitute(tokens: List[Token], filters: Dict[str, Any]) -> List[Token]:
    """Replace every placeholder in `tokens` using `filters`."""
    for name in dict.fromkeys(t.name for t in tokens if t.kind == "placeholder"):
        value = filters.get(name)
        items = split_multi_value(value)

        if items:
            in_list = "(" + ", ".join(quote_literal(item) for item in items) + ")"
            tokens = _rewrite_multi(tokens, name, in_list)
            continue

        if items is not None or value is None or value == "":
            replacement = Token("ident", "NULL")
        else:
            replacement = Token("literal", quote_literal(value))

        tokens = [
            replacement if t.kind == "placeholder" and t.name == name else t
            for t in tokens
        ]
    return tokens


# =========================
# Dialect passes
# =========================
def _strip_schema(tokens: List[Token]) -> List[Token]:
    result: List[Token] = []
    skip_dot = False
    for token in tokens:
        if token.kind == "schema":
            skip_dot = True
            continue
        if skip_dot and token.is_op("."):
            skip_dot = False
            continue
        skip_dot = False
        result.append(token)
    return result


def _qualify_tables(
    tokens: List[Token], schema: str, tables: Iterable[str]
) -> List[Token]:
    bare = {table.lower() for table in tables}
    result: List[Token] = []
    for index, token in enumerate(tokens):
        if token.kind == "schema":
            result.append(Token("ident", schema))
            continue
        previous = _skip(tokens, index - 1, -1)
        # Already qualified, or a column alias (`AS deliveries`)
        skip = index > 0 and tokens[index - 1].is_op(".")
        skip = skip or (previous >= 0 and tokens[previous].is_word("AS"))
        if token.kind == "ident" and token.text.lower() in bare and not skip:
            result.append(Token("ident", f"{schema}.{token.text}"))
            continue
        result.append(token)
    return result


def _null_comparisons(tokens: List[Token]) -> List[Token]:
    """`= NULL` -> `IS NULL`, `!=`/`<> NULL` -> `IS NOT NULL`."""
    result = list(tokens)
    for index, token in enumerate(result):
        if not token.is_op("=", *_NEGATED):
            continue
        following = _skip(result, index + 1)
        if following < len(result) and result[following].is_word("NULL"):
            text = "IS NOT" if token.text in _NEGATED else "IS"
            result[index] = Token("ident", text)
    return result


def render(
    template: str,
    filters: Dict[str, Any],
    dialect: str = STANDARD,
    schema: str = "public",
    warehouse_tables: Iterable[str] = (),
) -> str:
    """
    Render a template into concrete SQL.

    Args:
        template: SQL with `:name` placeholders
        filters: Normalized filter map
        dialect: STANDARD for the relational store, WAREHOUSE for the warehouse
        schema: Warehouse schema used for `${schema}` and bare table names
        warehouse_tables: Table names to schema-qualify in the warehouse dialect

    Returns:
        SQL with no placeholders left
    """
    tokens = substitute(tokenize(template), filters)
    if dialect == WAREHOUSE:
        tokens = _qualify_tables(tokens, schema, warehouse_tables)
        tokens = _null_comparisons(tokens)
    else:
        tokens = _strip_schema(tokens)
    return untokenize(tokens)


def cap_rows(sql: str, limit: int) -> str:
    """Wrap a statement so it can never return more than `limit` rows."""
    inner = sql.strip()
    while inner.endswith(";"):
        inner = inner[:-1].rstrip()
    return f"SELECT * FROM (\n{inner}\n) AS capped LIMIT {int(limit)}"
