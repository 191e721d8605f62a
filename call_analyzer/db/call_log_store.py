"""
Access to the flattened call_log representation.

One row per recording, keyed by the unique "RECORDING_URL" column. Column
names are a mix of quoted upper-case (ingestion) and lower-case (analysis)
identifiers, so all SQL here is composed with psycopg2.sql.Identifier.
"""

import logging
from typing import Any, List, Optional, Sequence

from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from .connection import get_connection

logger = logging.getLogger(__name__)

KEY_COLUMN = "RECORDING_URL"

ANALYSIS_COLUMNS = (
    "summary",
    "coaching",
    "TAGS",
    "TAGS_ARRAY",
    "sentiment_score",
    "resolution_status",
    "escalated",
    "CALL_TYPE",
    "persona",
)

OPERATOR_COLUMNS = (
    "TRANSCRIPTION",
    "FILENAME",
    "CALL_DURATION",
    "EMPLOYEE_ID",
    "EMPLOYEE_NAME",
    "CALL_NUMBER",
    "CALLER_NAME",
    "ANSWERED_BY",
    "WORD_TIMESTAMPS",
)

CALL_LOG_COLUMNS = (KEY_COLUMN,) + ANALYSIS_COLUMNS + OPERATOR_COLUMNS

ARRAY_COLUMNS = {"TAGS_ARRAY"}
JSON_COLUMNS = {"persona", "WORD_TIMESTAMPS"}

# Reanalysis filter operators -> SQL
COMPARISON_OPERATORS = {
    "eq": "=",
    "neq": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "like": "LIKE",
    "ilike": "ILIKE",
}
ARRAY_OPERATORS = {
    "cs": "@>",  # contains all
    "ov": "&&",  # overlaps any
}
FILTER_OPERATORS = tuple(COMPARISON_OPERATORS) + tuple(ARRAY_OPERATORS) + ("is",)


def _adapt(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in JSON_COLUMNS:
        return Json(value)
    if column in ARRAY_COLUMNS:
        return list(value)
    return value


def _filter_clause(field: str, operator: str, value: Any) -> sql.Composed:
    column = sql.Identifier(field)
    if operator == "is":
        keyword = {None: "NULL", True: "TRUE", False: "FALSE"}[value]
        return sql.SQL("{} IS {}").format(column, sql.SQL(keyword))
    if operator in ARRAY_OPERATORS:
        return sql.SQL("{} {} %s::text[]").format(column, sql.SQL(ARRAY_OPERATORS[operator]))
    return sql.SQL("{} {} %s").format(column, sql.SQL(COMPARISON_OPERATORS[operator]))


class CallLogStore:
    """call_log queries."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url

    def count(self) -> int:
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM call_log")
                return cur.fetchone()[0]

    def fetch_recording_urls(self) -> set:
        """All recording references that already have a call_log row."""
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("SELECT {key} FROM call_log WHERE {key} IS NOT NULL").format(
                        key=sql.Identifier(KEY_COLUMN)
                    )
                )
                return {row[0] for row in cur.fetchall()}

    def get(self, recording_url: str) -> Optional[dict]:
        """The row for a recording, or None if there is none."""
        query = sql.SQL("SELECT * FROM call_log WHERE {key} = %s LIMIT 1").format(
            key=sql.Identifier(KEY_COLUMN)
        )
        with get_connection(self.database_url) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, (recording_url,))
                row = cur.fetchone()
                return dict(row) if row else None

    def upsert(self, row: dict) -> None:
        """
        Insert or update one row keyed by RECORDING_URL.

        Only the columns present in `row` are written; others keep their
        stored values.
        """
        columns = [c for c in CALL_LOG_COLUMNS if c in row]
        if KEY_COLUMN not in columns:
            raise ValueError(f"call_log row is missing {KEY_COLUMN}")
        updates = [c for c in columns if c != KEY_COLUMN]

        query = sql.SQL("INSERT INTO call_log ({cols}) VALUES ({vals}) ON CONFLICT ({key}) ").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            key=sql.Identifier(KEY_COLUMN),
        )
        if updates:
            query += sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in updates
                )
            )
        else:
            query += sql.SQL("DO NOTHING")

        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, [_adapt(c, row[c]) for c in columns])

    def fetch_page(
        self,
        after: Optional[str] = None,
        page_size: int = 1000,
        empty_tags: bool = False,
        conditions: Sequence[tuple] = (),
    ) -> List[dict]:
        """
        One page of rows ordered by RECORDING_URL.

        Args:
            after: RECORDING_URL of the last row already seen
            page_size: Maximum rows returned
            empty_tags: Only rows whose TAGS_ARRAY is null or empty
            conditions: (field, operator, value) filters, ANDed together

        Returns:
            Rows with RECORDING_URL, TRANSCRIPTION and FILENAME
        """
        key = sql.Identifier(KEY_COLUMN)
        clauses = [sql.SQL("{} IS NOT NULL").format(key)]
        params: list = []

        if after is not None:
            clauses.append(sql.SQL("{} > %s").format(key))
            params.append(after)
        if empty_tags:
            tags = sql.Identifier("TAGS_ARRAY")
            clauses.append(sql.SQL("({tags} IS NULL OR cardinality({tags}) = 0)").format(tags=tags))
        for field, operator, value in conditions:
            clauses.append(_filter_clause(field, operator, value))
            if operator != "is":
                params.append(value)

        query = sql.SQL(
            "SELECT {key}, {transcript}, {filename} FROM call_log WHERE {where} ORDER BY {key} LIMIT %s"
        ).format(
            key=key,
            transcript=sql.Identifier("TRANSCRIPTION"),
            filename=sql.Identifier("FILENAME"),
            where=sql.SQL(" AND ").join(clauses),
        )
        params.append(page_size)

        with get_connection(self.database_url) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]
