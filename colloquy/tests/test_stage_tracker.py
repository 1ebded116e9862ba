"""Tests for per-document stage slots."""

from uuid import uuid4

import pytest

from colloquy.errors import StageError
from colloquy.models import Document, Stage, StageStatus
from colloquy.services.stage_tracker import (
    get_status,
    mark_completed,
    mark_failed,
    processing_status,
    record_violation,
)


def _document(**statuses) -> Document:
    return Document(
        id=uuid4(),
        topic_id=uuid4(),
        author_id=uuid4(),
        file_key="a.txt",
        mime="text/plain",
        extract_status=statuses.get("extract", StageStatus.PENDING),
        summarize_status=statuses.get("summarize", StageStatus.PENDING),
        evaluate_status=statuses.get("evaluate", StageStatus.PENDING),
        stage_errors={},
    )


class TestMarkCompleted:
    def test_extract_has_no_prerequisite(self):
        doc = _document()
        mark_completed(doc, Stage.EXTRACT)
        assert get_status(doc, Stage.EXTRACT) == StageStatus.COMPLETED
        assert doc.last_processed_at is not None

    def test_summarize_requires_extract(self):
        doc = _document()
        with pytest.raises(StageError) as exc_info:
            mark_completed(doc, Stage.SUMMARIZE)
        assert exc_info.value.stage == "SUMMARIZE"
        assert get_status(doc, Stage.SUMMARIZE) == StageStatus.PENDING
        assert doc.stage_errors == {}

    def test_evaluate_requires_summarize(self):
        doc = _document(extract=StageStatus.COMPLETED, summarize=StageStatus.FAILED)
        with pytest.raises(StageError):
            mark_completed(doc, Stage.EVALUATE)
        assert get_status(doc, Stage.EVALUATE) == StageStatus.PENDING

    def test_completion_clears_previous_error(self):
        doc = _document(extract=StageStatus.COMPLETED)
        mark_failed(doc, Stage.SUMMARIZE, "timeout")
        mark_completed(doc, Stage.SUMMARIZE)
        assert doc.stage_errors == {}

    def test_ordering_holds_for_every_sequence(self):
        # Whatever order completions are attempted in, a later slot is never
        # COMPLETED while an earlier one is not.
        orders = [
            [Stage.EVALUATE, Stage.SUMMARIZE, Stage.EXTRACT],
            [Stage.SUMMARIZE, Stage.EXTRACT, Stage.EVALUATE],
            [Stage.EXTRACT, Stage.EVALUATE, Stage.SUMMARIZE],
        ]
        for order in orders:
            doc = _document()
            for stage in order:
                try:
                    mark_completed(doc, stage)
                except StageError:
                    pass
                if get_status(doc, Stage.SUMMARIZE) == StageStatus.COMPLETED:
                    assert get_status(doc, Stage.EXTRACT) == StageStatus.COMPLETED
                if get_status(doc, Stage.EVALUATE) == StageStatus.COMPLETED:
                    assert get_status(doc, Stage.SUMMARIZE) == StageStatus.COMPLETED


class TestFailuresAndStatus:
    def test_mark_failed_records_message(self):
        doc = _document()
        mark_failed(doc, Stage.EXTRACT, "unsupported file type")
        status = processing_status(doc)
        assert status["stages"]["extract"] == {"status": "FAILED", "error": "unsupported file type"}

    def test_record_violation_keeps_status(self):
        doc = _document()
        record_violation(doc, Stage.SUMMARIZE, "SUMMARIZE requires EXTRACT to be COMPLETED")
        assert get_status(doc, Stage.SUMMARIZE) == StageStatus.PENDING
        assert processing_status(doc)["stages"]["summarize"]["error"].startswith("SUMMARIZE requires")

    def test_processing_status_shape(self):
        doc = _document(extract=StageStatus.COMPLETED)
        status = processing_status(doc)
        assert status["document_id"] == str(doc.id)
        assert set(status["stages"]) == {"extract", "summarize", "evaluate"}
        assert status["stages"]["extract"]["status"] == "COMPLETED"
        assert status["last_processed_at"] is None
