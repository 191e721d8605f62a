"""
Store Tests

SQL-level behavior of the psycopg2 stores with the connection mocked out.
Run with: pytest tests/test_stores.py -v
"""

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import psycopg2
import pytest
from psycopg2.extras import Json

from call_analyzer.db.call_log_store import CallLogStore
from call_analyzer.db.connection import StoreError, get_connection
from call_analyzer.db.document_store import DocumentStore


def mock_connection(fetchall=None, fetchone=None):
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchall.return_value = fetchall or []
    cursor.fetchone.return_value = fetchone

    @contextmanager
    def fake_get_connection(database_url=None):
        yield conn

    return conn, cursor, fake_get_connection


class TestGetConnection:
    def test_commits_and_closes(self):
        conn = MagicMock()
        with patch("call_analyzer.db.connection.psycopg2.connect", return_value=conn):
            with get_connection("postgresql://db/test"):
                pass

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_called_once()

    def test_connect_failure_is_store_error(self):
        with patch(
            "call_analyzer.db.connection.psycopg2.connect",
            side_effect=psycopg2.OperationalError("connection refused"),
        ):
            with pytest.raises(StoreError, match="connection refused"):
                with get_connection("postgresql://db/test"):
                    pass

    def test_query_failure_rolls_back(self):
        conn = MagicMock()
        with patch("call_analyzer.db.connection.psycopg2.connect", return_value=conn):
            with pytest.raises(StoreError):
                with get_connection("postgresql://db/test"):
                    raise psycopg2.DatabaseError("deadlock detected")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()

    def test_other_errors_propagate_unchanged(self):
        conn = MagicMock()
        with patch("call_analyzer.db.connection.psycopg2.connect", return_value=conn):
            with pytest.raises(KeyError):
                with get_connection("postgresql://db/test"):
                    raise KeyError("x")

        conn.rollback.assert_called_once()


class TestDocumentStore:
    def test_completion_marker_is_one_statement(self):
        conn, cursor, fake = mock_connection()
        with patch("call_analyzer.db.document_store.get_connection", fake):
            DocumentStore().upsert_completion_marker("d1")

        assert cursor.execute.call_count == 1
        query, params = cursor.execute.call_args[0]
        assert "UPDATE document_metadata" in query
        assert "WHERE NOT EXISTS" in query
        assert params == {"doc": "d1", "field": "analysis_status", "value": "completed"}

    def test_replace_metadata_deletes_then_inserts(self):
        conn, cursor, fake = mock_connection()
        with patch("call_analyzer.db.document_store.get_connection", fake), \
             patch("call_analyzer.db.document_store.execute_values") as execute_values:
            inserted = DocumentStore().replace_metadata("d1", {"summary": "s", "tags": "a,b", "coaching": None})

        assert inserted == 2
        query, params = cursor.execute.call_args[0]
        assert query.strip().startswith("DELETE FROM document_metadata")
        assert params == ("d1", ["summary", "tags", "coaching"])
        rows = execute_values.call_args[0][2]
        assert rows == [("d1", "summary", "s", False), ("d1", "tags", "a,b", False)]

    def test_replace_metadata_with_nothing_to_write(self):
        conn, cursor, fake = mock_connection()
        with patch("call_analyzer.db.document_store.get_connection", fake):
            assert DocumentStore().replace_metadata("d1", {}) == 0

        cursor.execute.assert_not_called()

    def test_processed_page_uses_keyset_cursor(self):
        conn, cursor, fake = mock_connection(fetchall=[{"id": "d4", "title": "t"}])
        after = ("2024-01-05T09:00:00", "d3")
        with patch("call_analyzer.db.document_store.get_connection", fake):
            rows = DocumentStore().fetch_processed_page("src-1", after=after, page_size=50)

        assert rows == [{"id": "d4", "title": "t"}]
        query, params = cursor.execute.call_args[0]
        assert "(created_at, id::text) > (%s, %s)" in query
        assert params == ["processed", "src-1", "2024-01-05T09:00:00", "d3", 50]

    def test_completed_ids_are_strings(self):
        conn, cursor, fake = mock_connection(fetchall=[(101,), ("d2",)])
        with patch("call_analyzer.db.document_store.get_connection", fake):
            assert DocumentStore().fetch_completed_ids() == {"101", "d2"}


class TestCallLogStore:
    def test_upsert_adapts_json_and_array_columns(self):
        conn, cursor, fake = mock_connection()
        row = {
            "RECORDING_URL": "rec-1.mp3",
            "TAGS_ARRAY": ("a", "b"),
            "TAGS": "a,b",
            "persona": {"mood": "calm"},
            "not_a_column": "ignored",
        }
        with patch("call_analyzer.db.call_log_store.get_connection", fake):
            CallLogStore().upsert(row)

        params = cursor.execute.call_args[0][1]
        assert params[0] == "rec-1.mp3"
        assert params[1] == "a,b"
        assert params[2] == ["a", "b"]
        assert isinstance(params[3], Json)
        assert params[3].adapted == {"mood": "calm"}
        assert len(params) == 4

    def test_upsert_requires_key(self):
        with pytest.raises(ValueError):
            CallLogStore().upsert({"summary": "no key"})

    def test_fetch_page_params(self):
        conn, cursor, fake = mock_connection()
        with patch("call_analyzer.db.call_log_store.get_connection", fake):
            CallLogStore().fetch_page(
                after="rec-1.mp3",
                page_size=10,
                empty_tags=True,
                conditions=[("sentiment_score", "lt", 3), ("escalated", "is", None)],
            )

        params = cursor.execute.call_args[0][1]
        assert params == ["rec-1.mp3", 3, 10]
