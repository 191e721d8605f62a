"""
Writes normalized analysis results into both record representations.

For a document-backed record, reconcile() runs three stages in order:

1. metadata: replace the analysis fields in document_metadata (plus the
   RECORDING_URL entry when the join key had to be derived)
2. call_log: merge the result into the existing row and upsert it
3. completion_marker: set analysis_status=completed

A failure in any stage raises ReconcileError and the later stages are not
attempted. Until the call_log row exists the record is still selected on the
next run, so a failure in stage 1 or 2 leads to full reprocessing.

Pseudo records built from call_log during reanalysis only go through the
call_log stage.

This module is the only writer of completion markers.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from .db.call_log_store import CALL_LOG_COLUMNS, KEY_COLUMN
from .db.connection import StoreError
from .db.document_store import RECORDING_REF_FIELD
from .models import AnalysisResult, SourceRecord

logger = logging.getLogger(__name__)

STAGE_METADATA = "metadata"
STAGE_CALL_LOG = "call_log"
STAGE_COMPLETION = "completion_marker"

DEFAULT_CALL_TYPE = "unknown"


class ReconcileError(RuntimeError):
    """A reconciliation stage failed for one record."""

    def __init__(self, stage: str, record_id: str, cause: Exception):
        self.stage = stage
        self.record_id = record_id
        self.cause = cause
        super().__init__(f"{stage} write failed for {record_id}: {cause}")


def metadata_value(metadata: Dict[str, Optional[str]], *names: str) -> Optional[str]:
    """First non-empty value among `names`, trying each as given, lower and upper case."""
    for name in names:
        for key in (name, name.lower(), name.upper()):
            value = metadata.get(key)
            if value not in (None, ""):
                return value
    return None


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def _parse_word_timestamps(raw: Optional[str], record_id: str) -> Any:
    if raw is None:
        return None
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"[{record_id}] Invalid WORD_TIMESTAMPS JSON, storing null")
        return None


def _filename_from_ref(recording_ref: Optional[str]) -> Optional[str]:
    if not recording_ref:
        return None
    return recording_ref.rstrip("/").rsplit("/", 1)[-1] or None


def build_metadata_fields(result: AnalysisResult) -> Dict[str, str]:
    """Supplied analysis fields as document_metadata text values. Tags are always supplied."""
    fields = {
        "summary": result.summary,
        "coaching": result.coaching,
        "tags": result.tags_text,
        "sentiment_score": None if result.sentiment_score is None else str(result.sentiment_score),
        "resolution_status": result.resolution_status,
        "escalated": None if result.escalated is None else str(result.escalated).lower(),
        "call_type": result.call_type,
        "persona": None if result.persona is None else json.dumps(result.persona),
    }
    return {name: value for name, value in fields.items() if value is not None}


def build_analysis_columns(result: AnalysisResult) -> Dict[str, Any]:
    """Analysis fields as call_log columns. TAGS is always the join of TAGS_ARRAY."""
    return {
        "summary": result.summary,
        "coaching": result.coaching,
        "TAGS": result.tags_text,
        "TAGS_ARRAY": list(result.tags),
        "sentiment_score": result.sentiment_score,
        "resolution_status": result.resolution_status,
        "escalated": result.escalated,
        "CALL_TYPE": result.call_type,
        "persona": result.persona,
    }


def build_operator_columns(record: SourceRecord, metadata: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """Ingestion-owned call_log columns derived from the document and its metadata."""
    return {
        "TRANSCRIPTION": record.content,
        "FILENAME": metadata_value(metadata, "filename") or _filename_from_ref(record.recording_ref),
        "CALL_DURATION": _to_number(metadata_value(metadata, "call_duration", "duration")),
        "EMPLOYEE_ID": _to_number(metadata_value(metadata, "employee_id")),
        "EMPLOYEE_NAME": metadata_value(metadata, "employee_name") or record.author,
        "CALL_NUMBER": metadata_value(metadata, "call_number"),
        "CALLER_NAME": metadata_value(metadata, "caller_name"),
        "ANSWERED_BY": metadata_value(metadata, "answered_by"),
        "WORD_TIMESTAMPS": _parse_word_timestamps(metadata_value(metadata, "word_timestamps"), record.id),
    }


def merge_row(existing: Optional[dict], updates: Dict[str, Any], columns: Iterable[str]) -> dict:
    """
    Merge new column values over an existing call_log row.

    New non-null values overwrite. A null new value never clears a populated
    stored value. Only `columns` are carried over from the existing row.
    """
    merged = {c: existing[c] for c in columns if existing and c in existing}
    for column, value in updates.items():
        if value is not None or merged.get(column) is None:
            merged[column] = value
    return merged


class StateReconciler:
    """Dual-writes analysis results and marks records complete."""

    def __init__(self, document_store, call_log_store):
        self.document_store = document_store
        self.call_log_store = call_log_store

    def reconcile(self, record: SourceRecord, result: AnalysisResult) -> None:
        """
        Write `result` for `record` into every representation it has.

        Safe to repeat: metadata is replaced by field name, call_log is an
        upsert by RECORDING_URL and the marker is a single upsert.

        Raises:
            ReconcileError: naming the stage that failed
        """
        if not record.recording_ref:
            raise ReconcileError(STAGE_CALL_LOG, record.id, ValueError("record has no recording reference"))

        metadata: Dict[str, Optional[str]] = {}
        if not record.is_pseudo:
            metadata = self._run_stage(STAGE_METADATA, record, self._write_metadata, record, result)

        self._run_stage(STAGE_CALL_LOG, record, self._write_call_log, record, result, metadata)

        if not record.is_pseudo:
            self._run_stage(STAGE_COMPLETION, record, self.document_store.upsert_completion_marker, record.id)

        logger.info(
            f"[{record.id}] Reconciled {record.recording_ref}: "
            f"{len(result.tags)} tags, sentiment={result.sentiment_score}, "
            f"resolution={result.resolution_status}"
        )

    def _run_stage(self, stage: str, record: SourceRecord, fn, *args):
        try:
            return fn(*args)
        except (StoreError, ValueError) as e:
            raise ReconcileError(stage, record.id, e) from e

    def _write_metadata(self, record: SourceRecord, result: AnalysisResult) -> Dict[str, Optional[str]]:
        """Replace analysis metadata. Returns the metadata read beforehand."""
        existing = self.document_store.get_metadata(record.id)
        fields = build_metadata_fields(result)
        if record.ref_derived:
            fields[RECORDING_REF_FIELD] = record.recording_ref
        inserted = self.document_store.replace_metadata(record.id, fields)
        logger.debug(f"[{record.id}] Wrote {inserted} metadata fields")
        return existing

    def _write_call_log(
        self,
        record: SourceRecord,
        result: AnalysisResult,
        metadata: Dict[str, Optional[str]],
    ) -> None:
        existing = self.call_log_store.get(record.recording_ref)
        updates: Dict[str, Any] = {KEY_COLUMN: record.recording_ref}
        if not record.is_pseudo:
            updates.update(build_operator_columns(record, metadata))
        updates.update(build_analysis_columns(result))

        row = merge_row(existing, updates, CALL_LOG_COLUMNS)
        if row.get("CALL_TYPE") is None:
            row["CALL_TYPE"] = DEFAULT_CALL_TYPE
        if existing:
            preserved = [c for c, v in updates.items() if v is None and row.get(c) is not None]
            if preserved:
                logger.debug(f"[{record.id}] Preserved existing call_log fields: {', '.join(preserved)}")
        self.call_log_store.upsert(row)
