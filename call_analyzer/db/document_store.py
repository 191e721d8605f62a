"""
Access to the generic document representation.

documents(id, title, content, source_id, status, author, created_at)
document_metadata(id, document_id, field_name, field_value, is_predefined,
                  created_at, updated_at)

Metadata is a key/value table that has historically accumulated duplicate
rows per (document_id, field_name), so writes replace by field name rather
than update in place.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from psycopg2.extras import RealDictCursor, execute_values

from ..models import COMPLETION_FIELD, COMPLETION_VALUE
from .connection import get_connection

logger = logging.getLogger(__name__)

RECORDING_REF_FIELD = "RECORDING_URL"
PROCESSED_STATUS = "processed"

# (created_at, id) of the last row of the previous page
DocumentCursor = Tuple[datetime, str]


class DocumentStore:
    """documents + document_metadata queries."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url

    def count_processed(self, source_id: Optional[str] = None) -> int:
        """Count documents with status 'processed', optionally for one source."""
        sql = "SELECT COUNT(*) FROM documents WHERE status = %s"
        params: list = [PROCESSED_STATUS]
        if source_id:
            sql += " AND source_id = %s"
            params.append(source_id)

        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone()[0]

    def fetch_completed_ids(self) -> Set[str]:
        """Ids of documents carrying a completed analysis marker."""
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT DISTINCT document_id
                    FROM document_metadata
                    WHERE field_name = %s AND field_value = %s
                """, (COMPLETION_FIELD, COMPLETION_VALUE))
                return {str(row[0]) for row in cur.fetchall()}

    def fetch_recording_refs(self) -> Dict[str, str]:
        """Map document id -> indexed RECORDING_URL metadata value."""
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT document_id, field_value
                    FROM document_metadata
                    WHERE field_name = %s AND field_value IS NOT NULL AND field_value <> ''
                """, (RECORDING_REF_FIELD,))
                return {str(doc_id): value for doc_id, value in cur.fetchall()}

    def fetch_processed_page(
        self,
        source_id: Optional[str] = None,
        after: Optional[DocumentCursor] = None,
        page_size: int = 1000,
    ) -> List[dict]:
        """
        One page of processed documents ordered by (created_at, id).

        Keyset pagination keeps pages stable while earlier records are being
        written to.

        Args:
            source_id: Restrict to one data source
            after: Cursor of the last row already seen
            page_size: Maximum rows returned

        Returns:
            Rows with id, title, content, source_id, author, created_at
        """
        sql = """
            SELECT id::text AS id, title, content, source_id::text AS source_id,
                   author, created_at
            FROM documents
            WHERE status = %s
        """
        params: list = [PROCESSED_STATUS]
        if source_id:
            sql += " AND source_id = %s"
            params.append(source_id)
        if after is not None:
            sql += " AND (created_at, id::text) > (%s, %s)"
            params.extend(after)
        sql += " ORDER BY created_at, id::text LIMIT %s"
        params.append(page_size)

        with get_connection(self.database_url) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]

    def get_metadata(self, document_id: str) -> Dict[str, Optional[str]]:
        """All metadata for a document as field_name -> field_value (latest row wins)."""
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT field_name, field_value
                    FROM document_metadata
                    WHERE document_id = %s
                    ORDER BY updated_at NULLS FIRST, id
                """, (document_id,))
                return {name: value for name, value in cur.fetchall()}

    def replace_metadata(self, document_id: str, fields: Dict[str, Optional[str]]) -> int:
        """
        Delete every row for the given field names, then insert the new values.

        Fields whose value is None are deleted and not re-inserted. Both
        statements run in one transaction.

        Returns:
            Number of rows inserted
        """
        if not fields:
            return 0

        rows = [(document_id, name, value, False) for name, value in fields.items() if value is not None]
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM document_metadata
                    WHERE document_id = %s AND field_name = ANY(%s)
                """, (document_id, list(fields)))
                if rows:
                    execute_values(cur, """
                        INSERT INTO document_metadata
                            (document_id, field_name, field_value, is_predefined)
                        VALUES %s
                    """, rows)
        return len(rows)

    def upsert_completion_marker(self, document_id: str) -> None:
        """
        Set the completion marker for a document in a single statement.

        Existing marker rows are updated in place; a row is inserted only
        when none exists.
        """
        params = {"doc": document_id, "field": COMPLETION_FIELD, "value": COMPLETION_VALUE}
        with get_connection(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    WITH updated AS (
                        UPDATE document_metadata
                        SET field_value = %(value)s, updated_at = NOW()
                        WHERE document_id = %(doc)s AND field_name = %(field)s
                        RETURNING id
                    )
                    INSERT INTO document_metadata
                        (document_id, field_name, field_value, is_predefined)
                    SELECT %(doc)s, %(field)s, %(value)s, false
                    WHERE NOT EXISTS (SELECT 1 FROM updated)
                """, params)
