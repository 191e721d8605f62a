"""
State Reconciler Tests

Dual-write into document_metadata and call_log, merge preservation, tag
duality, completion marker upsert and stage failure reporting.
Run with: pytest tests/test_reconciler.py -v
"""

import pytest

from call_analyzer.models import AnalysisResult, SourceRecord
from call_analyzer.reconciler import (
    ReconcileError,
    StateReconciler,
    build_metadata_fields,
    merge_row,
)
from fakes import FakeCallLogStore, FakeDocumentStore

REF = "retaildatasystems_rec-20240105_0931.mp3"


@pytest.fixture
def documents():
    store = FakeDocumentStore()
    store.add_document("d1", title=f"Call {REF}", content="Agent: thanks for calling", author="Sam Lee")
    return store


@pytest.fixture
def call_log():
    return FakeCallLogStore()


@pytest.fixture
def reconciler(documents, call_log):
    return StateReconciler(documents, call_log)


@pytest.fixture
def record():
    return SourceRecord(
        id="d1",
        title=f"Call {REF}",
        content="Agent: thanks for calling",
        author="Sam Lee",
        recording_ref=REF,
        ref_derived=True,
    )


@pytest.fixture
def result():
    return AnalysisResult(
        summary="Customer asked for a refund on a duplicate charge.",
        coaching="Offer the refund timeline up front.",
        tags=["billing", "refund"],
        sentiment_score=4,
        resolution_status="followup",
        escalated=False,
        call_type="billing",
        persona={"mood": "frustrated"},
    )


def metadata_values(documents, document_id="d1"):
    return documents.get_metadata(document_id)


class TestDualWrite:
    def test_writes_both_representations_and_marker(self, reconciler, documents, call_log, record, result):
        reconciler.reconcile(record, result)

        row = call_log.rows[REF]
        assert row["summary"] == result.summary
        assert row["TAGS_ARRAY"] == ["billing", "refund"]
        assert row["TAGS"] == "billing,refund"
        assert row["sentiment_score"] == 4
        assert row["resolution_status"] == "followup"
        assert row["CALL_TYPE"] == "billing"
        assert row["persona"] == {"mood": "frustrated"}

        meta = metadata_values(documents)
        assert meta["summary"] == result.summary
        assert meta["tags"] == "billing,refund"
        assert meta["sentiment_score"] == "4"
        assert meta["escalated"] == "false"
        assert meta["persona"] == '{"mood": "frustrated"}'
        assert meta["analysis_status"] == "completed"

    def test_tag_string_always_matches_tag_array(self, reconciler, call_log, record):
        for tags in (["a", "b", "c"], [], ["single"]):
            reconciler.reconcile(record, AnalysisResult(tags=tags))
            for written in call_log.upserts:
                assert written["TAGS"] == ",".join(written["TAGS_ARRAY"])
            row = call_log.rows[REF]
            assert row["TAGS"] == ",".join(row["TAGS_ARRAY"])

    def test_derived_ref_is_persisted_as_metadata(self, reconciler, documents, record, result):
        reconciler.reconcile(record, result)
        assert metadata_values(documents)["RECORDING_URL"] == REF

    def test_indexed_ref_not_rewritten(self, reconciler, documents, record, result):
        record.ref_derived = False
        reconciler.reconcile(record, result)
        assert "RECORDING_URL" not in metadata_values(documents)

    def test_prior_duplicate_metadata_rows_replaced(self, reconciler, documents, record, result):
        documents.add_metadata("d1", "summary", "old one")
        documents.add_metadata("d1", "summary", "old two")
        documents.add_metadata("d1", "department", "support")

        reconciler.reconcile(record, result)

        assert [m["field_value"] for m in documents.rows_for("d1", "summary")] == [result.summary]
        assert metadata_values(documents)["department"] == "support"


class TestMergePreservation:
    def test_operator_field_not_in_result_is_unchanged(self, reconciler, call_log, record, result):
        call_log.add_row(REF, CALLER_NAME="Pat Kim", ANSWERED_BY="Front desk", summary="stale summary")

        reconciler.reconcile(record, result)

        row = call_log.rows[REF]
        assert row["CALLER_NAME"] == "Pat Kim"
        assert row["ANSWERED_BY"] == "Front desk"
        assert row["summary"] == result.summary

    def test_sparse_result_keeps_existing_analysis_fields(self, reconciler, documents, call_log, record):
        call_log.add_row(REF, summary="Earlier summary", CALL_TYPE="support", sentiment_score=7)
        documents.add_metadata("d1", "summary", "Earlier summary")

        reconciler.reconcile(record, AnalysisResult(tags=["hardware"]))

        row = call_log.rows[REF]
        assert row["summary"] == "Earlier summary"
        assert row["CALL_TYPE"] == "support"
        assert row["sentiment_score"] == 7
        assert row["TAGS_ARRAY"] == ["hardware"]
        assert metadata_values(documents)["summary"] == "Earlier summary"

    def test_new_row_defaults_call_type(self, reconciler, call_log, record):
        reconciler.reconcile(record, AnalysisResult(tags=["x"]))
        assert call_log.rows[REF]["CALL_TYPE"] == "unknown"

    def test_merge_row_rules(self):
        existing = {"RECORDING_URL": "r", "summary": "old", "FILENAME": "r.mp3", "id": 12}
        merged = merge_row(existing, {"summary": "new", "FILENAME": None, "TAGS": ""}, ["RECORDING_URL", "summary", "FILENAME", "TAGS"])

        assert merged == {"RECORDING_URL": "r", "summary": "new", "FILENAME": "r.mp3", "TAGS": ""}

    def test_merge_row_without_existing(self):
        assert merge_row(None, {"a": None, "b": 1}, ["a", "b"]) == {"a": None, "b": 1}


class TestOperatorEnrichment:
    def test_fields_from_metadata_and_document(self, reconciler, documents, call_log, record, result):
        documents.add_metadata("d1", "call_duration", "125")
        documents.add_metadata("d1", "EMPLOYEE_ID", "42")
        documents.add_metadata("d1", "caller_name", "Pat Kim")
        documents.add_metadata("d1", "CALL_NUMBER", "555-0100")
        documents.add_metadata("d1", "word_timestamps", '[{"word": "hi", "start": 0.1}]')

        reconciler.reconcile(record, result)

        row = call_log.rows[REF]
        assert row["CALL_DURATION"] == 125
        assert row["EMPLOYEE_ID"] == 42
        assert row["CALLER_NAME"] == "Pat Kim"
        assert row["CALL_NUMBER"] == "555-0100"
        assert row["WORD_TIMESTAMPS"] == [{"word": "hi", "start": 0.1}]
        assert row["EMPLOYEE_NAME"] == "Sam Lee"
        assert row["FILENAME"] == REF
        assert row["TRANSCRIPTION"] == "Agent: thanks for calling"

    def test_bad_values_become_null(self, reconciler, documents, call_log, record, result):
        documents.add_metadata("d1", "employee_id", "E-17")
        documents.add_metadata("d1", "word_timestamps", "{not json")

        reconciler.reconcile(record, result)

        row = call_log.rows[REF]
        assert row.get("EMPLOYEE_ID") is None
        assert row.get("WORD_TIMESTAMPS") is None

    def test_filename_from_url_path(self, reconciler, call_log, record, result):
        record.recording_ref = "https://cdn.example.com/calls/2024/rec-7.mp3"
        reconciler.reconcile(record, result)
        assert call_log.rows[record.recording_ref]["FILENAME"] == "rec-7.mp3"


class TestCompletionMarker:
    def test_repeat_reconcile_keeps_single_marker(self, reconciler, documents, record, result):
        reconciler.reconcile(record, result)
        reconciler.reconcile(record, result)

        assert len(documents.rows_for("d1", "analysis_status")) == 1

    def test_existing_marker_updated_in_place(self, reconciler, documents, record, result):
        documents.add_metadata("d1", "analysis_status", "failed")

        reconciler.reconcile(record, result)

        rows = documents.rows_for("d1", "analysis_status")
        assert [r["field_value"] for r in rows] == ["completed"]

    def test_marker_written_after_call_log(self, reconciler, documents, call_log, record, result):
        reconciler.reconcile(record, result)
        assert documents.calls.index("replace_metadata") < documents.calls.index("upsert_completion_marker")
        assert "upsert" in call_log.calls


class TestPseudoRecords:
    def test_only_call_log_is_written(self, reconciler, documents, call_log, result):
        call_log.add_row("rec-x.mp3", TRANSCRIPTION="Caller: hi", CALLER_NAME="Jo")
        pseudo = SourceRecord(
            id="call_log_rec-x.mp3",
            title="Call rec-x.mp3",
            content="Caller: hi",
            recording_ref="rec-x.mp3",
            is_pseudo=True,
        )
        calls_before = list(documents.calls)

        reconciler.reconcile(pseudo, result)

        assert documents.calls == calls_before
        row = call_log.rows["rec-x.mp3"]
        assert row["TAGS_ARRAY"] == ["billing", "refund"]
        assert row["CALLER_NAME"] == "Jo"
        assert row["TRANSCRIPTION"] == "Caller: hi"


class TestStageFailures:
    def test_metadata_failure_stops_before_call_log(self, reconciler, documents, call_log, record, result):
        documents.fail_on.add("replace_metadata")

        with pytest.raises(ReconcileError) as exc_info:
            reconciler.reconcile(record, result)

        assert exc_info.value.stage == "metadata"
        assert call_log.rows == {}
        assert documents.rows_for("d1", "analysis_status") == []

    def test_call_log_failure_leaves_no_marker(self, reconciler, documents, call_log, record, result):
        call_log.fail_on.add("upsert")

        with pytest.raises(ReconcileError) as exc_info:
            reconciler.reconcile(record, result)

        assert exc_info.value.stage == "call_log"
        assert documents.rows_for("d1", "analysis_status") == []

    def test_marker_failure_reported(self, reconciler, documents, record, result):
        documents.fail_on.add("upsert_completion_marker")

        with pytest.raises(ReconcileError) as exc_info:
            reconciler.reconcile(record, result)

        assert exc_info.value.stage == "completion_marker"
        assert exc_info.value.record_id == "d1"

    def test_missing_recording_ref(self, reconciler, record, result):
        record.recording_ref = None
        with pytest.raises(ReconcileError):
            reconciler.reconcile(record, result)


class TestBuildMetadataFields:
    def test_unset_fields_omitted(self):
        fields = build_metadata_fields(AnalysisResult(tags=[]))
        assert fields == {"tags": ""}
