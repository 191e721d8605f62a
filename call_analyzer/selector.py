"""
Record selection: which transcripts a run should (re)analyze.

Normal mode yields processed documents that have neither a completion marker
nor a call_log row. The two signals can lag each other after partial
failures, so a record must be absent from both.

Reanalysis mode ignores completion state and yields pseudo records built from
call_log rows that match a filter, using the transcript already stored there.

Both modes page through the stores with keyset cursors and yield one page of
records at a time, honoring offset (eligible records to skip) and limit.
"""

import logging
from enum import Enum
from typing import Any, Iterator, List, Optional

from pydantic import BaseModel

from .db.call_log_store import (
    ARRAY_OPERATORS,
    CALL_LOG_COLUMNS,
    FILTER_OPERATORS,
    KEY_COLUMN,
)
from .db.connection import StoreError
from .models import SourceRecord
from .utils.join_key import derive_recording_ref

logger = logging.getLogger(__name__)

EMPTY_TAGS_FILTER = "empty_tags"


class SelectionError(RuntimeError):
    """The backing store could not be read while selecting work. Fatal for the run."""


class InvalidFilterError(ValueError):
    """A reanalysis filter expression could not be parsed."""


class SelectionMode(str, Enum):
    NORMAL = "normal"
    REANALYSIS = "reanalysis"


def _parse_filter_value(operator: str, raw: str) -> Any:
    if operator == "is":
        lowered = raw.strip().lower()
        if lowered not in ("null", "true", "false"):
            raise InvalidFilterError(f"'is' filter value must be null, true or false, got '{raw}'")
        return {"null": None, "true": True, "false": False}[lowered]
    if operator in ARRAY_OPERATORS:
        items = [item.strip() for item in raw.strip().strip("{}").split(",")]
        items = [item for item in items if item]
        if not items:
            raise InvalidFilterError(f"'{operator}' filter needs at least one value")
        return items
    return raw


class ReanalysisFilter(BaseModel):
    """Predicate over call_log rows selecting records to reanalyze.

    Either `empty_tags` (TAGS_ARRAY null or empty) or a single
    field/operator/value condition.
    """

    empty_tags: bool = False
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None

    @classmethod
    def parse(cls, expression: str) -> "ReanalysisFilter":
        """
        Parse "empty_tags" or "field.operator.value".

        Examples:
            "empty_tags"
            "sentiment_score.lt.3"
            "CALL_TYPE.eq.unknown"
            "TAGS_ARRAY.ov.{billing,refund}"
            "summary.is.null"

        Raises:
            InvalidFilterError: on an unknown field or operator or a malformed value
        """
        expression = (expression or "").strip()
        if expression == EMPTY_TAGS_FILTER:
            return cls(empty_tags=True)

        parts = expression.split(".", 2)
        if len(parts) != 3 or not all(parts[:2]):
            raise InvalidFilterError(
                f"Filter must be '{EMPTY_TAGS_FILTER}' or 'field.operator.value', got '{expression}'"
            )
        raw_field, operator, raw_value = parts

        columns = {c.lower(): c for c in CALL_LOG_COLUMNS}
        field = columns.get(raw_field.lower())
        if field is None:
            raise InvalidFilterError(f"Unknown call_log field '{raw_field}'")
        operator = operator.lower()
        if operator not in FILTER_OPERATORS:
            raise InvalidFilterError(
                f"Unknown operator '{operator}', expected one of {', '.join(FILTER_OPERATORS)}"
            )
        return cls(field=field, operator=operator, value=_parse_filter_value(operator, raw_value))

    @property
    def conditions(self) -> List[tuple]:
        if self.field is None:
            return []
        return [(self.field, self.operator, self.value)]

    @property
    def shrinks_on_success(self) -> bool:
        """True when a successfully reanalyzed row stops matching the filter.

        Only the empty-tags filter is known to shrink. A field filter on an
        analysis column (e.g. sentiment_score.lt.3) may or may not still match a
        rewritten row, so a resume offset computed for it can pass over rows.
        Restart such filters from offset 0 when exact coverage matters.
        """
        return self.empty_tags and self.field is None


class RecordSelector:
    """Streams the work set for a run from the document and call_log stores."""

    def __init__(
        self,
        document_store,
        call_log_store,
        source_id: Optional[str] = None,
        page_size: int = 1000,
    ):
        self.document_store = document_store
        self.call_log_store = call_log_store
        self.source_id = source_id
        self.page_size = page_size

    def stream(
        self,
        mode: SelectionMode = SelectionMode.NORMAL,
        reanalysis_filter: Optional[ReanalysisFilter] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Iterator[List[SourceRecord]]:
        """
        Yield pages of records to process.

        Args:
            mode: NORMAL (not yet analyzed) or REANALYSIS (call_log filter)
            reanalysis_filter: Filter for REANALYSIS mode (default: empty tags)
            limit: Maximum records yielded in total (None for no limit)
            offset: Number of eligible records to skip first

        Raises:
            SelectionError: if a store cannot be read
        """
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        if limit is not None and limit <= 0:
            return

        if mode == SelectionMode.REANALYSIS:
            candidates = self._reanalysis_pages(reanalysis_filter or ReanalysisFilter(empty_tags=True))
        else:
            candidates = self._unanalyzed_pages()

        to_skip = offset
        remaining = limit
        try:
            for page in candidates:
                if to_skip:
                    skipped = min(to_skip, len(page))
                    page = page[skipped:]
                    to_skip -= skipped
                if remaining is not None:
                    page = page[:remaining]
                    remaining -= len(page)
                if page:
                    yield page
                if remaining == 0:
                    return
        except StoreError as e:
            raise SelectionError(f"Record selection failed: {e}") from e

    def select_work(
        self,
        mode: SelectionMode = SelectionMode.NORMAL,
        reanalysis_filter: Optional[ReanalysisFilter] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SourceRecord]:
        """Materialized form of stream()."""
        records: List[SourceRecord] = []
        for page in self.stream(mode, reanalysis_filter, limit, offset):
            records.extend(page)
        return records

    def _unanalyzed_pages(self) -> Iterator[List[SourceRecord]]:
        processed_count = self.document_store.count_processed(self.source_id)
        call_log_count = self.call_log_store.count()
        logger.info(f"Processed documents: {processed_count}, call_log rows: {call_log_count}")
        if processed_count > 0 and processed_count == call_log_count:
            logger.info("Every processed document has a call_log row, nothing to analyze")
            return

        completed_ids = self.document_store.fetch_completed_ids()
        logged_refs = self.call_log_store.fetch_recording_urls()
        indexed_refs = self.document_store.fetch_recording_refs()
        logger.info(
            f"Already analyzed: {len(completed_ids)} marked, {len(logged_refs)} in call_log, "
            f"{len(indexed_refs)} documents with indexed recording refs"
        )

        cursor = None
        while True:
            rows = self.document_store.fetch_processed_page(
                source_id=self.source_id, after=cursor, page_size=self.page_size
            )
            if not rows:
                return
            cursor = (rows[-1]["created_at"], rows[-1]["id"])

            page = []
            for row in rows:
                if row["id"] in completed_ids:
                    continue
                ref, derived = derive_recording_ref(row["id"], row.get("title"), indexed_refs.get(row["id"]))
                if ref in logged_refs:
                    continue
                page.append(SourceRecord(
                    id=row["id"],
                    title=row.get("title"),
                    content=row.get("content"),
                    source_id=row.get("source_id"),
                    author=row.get("author"),
                    recording_ref=ref,
                    ref_derived=derived,
                ))
            logger.debug(f"Document page: {len(rows)} rows, {len(page)} need analysis")
            yield page

            if len(rows) < self.page_size:
                return

    def _reanalysis_pages(self, reanalysis_filter: ReanalysisFilter) -> Iterator[List[SourceRecord]]:
        cursor = None
        while True:
            rows = self.call_log_store.fetch_page(
                after=cursor,
                page_size=self.page_size,
                empty_tags=reanalysis_filter.empty_tags,
                conditions=reanalysis_filter.conditions,
            )
            if not rows:
                return
            cursor = rows[-1][KEY_COLUMN]

            yield [
                SourceRecord(
                    id=f"call_log_{row[KEY_COLUMN]}",
                    title=f"Call {row[KEY_COLUMN]}",
                    content=row.get("TRANSCRIPTION"),
                    recording_ref=row[KEY_COLUMN],
                    is_pseudo=True,
                )
                for row in rows
            ]

            if len(rows) < self.page_size:
                return
