import asyncio
import json

import pytest

from app.services.finalizer import FinalizationJob, FinalizationPipeline, FinalizationResult
from app.services.llm.base import MalformedResponse
from app.services.relay_config import BillingSettings
from app.services.usage import TokenUsage, UsageMeter
from tests.fakes import FakeClock, FakeExporter, FakePersistence, FakeSummarizer

BILLING = BillingSettings(speech_cost_per_minute=0.024, hourly_rate=2.0)


def make_job(user_id="user-1", transcript="A: mitochondria", minutes=2.0):
    clock = FakeClock()
    meter = UsageMeter(user_id, "sess-1", clock=clock)
    meter.start()
    clock.advance(minutes * 60)
    meter.stop()
    return FinalizationJob(
        session_id="sess-1",
        user_id=user_id,
        class_title="Biology",
        date_iso="2024-05-01",
        full_transcript=transcript,
        meter=meter,
    )


def run_pipeline(tmp_path, job, **parts):
    pipeline = FinalizationPipeline(
        data_dir=str(tmp_path),
        summarizer=parts.get("summarizer") or FakeSummarizer(),
        exporter=parts.get("exporter") or FakeExporter(),
        persistence=parts.get("persistence") or FakePersistence(),
        billing=BILLING,
        wall_clock=lambda: 1_700_000_000.5,
    )
    sent = []

    async def notify(message):
        sent.append(message)

    result = FinalizationResult(full_transcript=job.full_transcript, duration_minutes=0.0)
    asyncio.run(pipeline.run(job, result, notify))
    return result, sent


def test_happy_path_fills_every_field(tmp_path):
    persistence = FakePersistence()
    result, sent = run_pipeline(tmp_path, make_job(), persistence=persistence)

    assert result.failures == []
    assert result.completed_steps == ["persist_transcript", "summarize", "export", "accounting"]
    assert result.transcript_path == "transcripts/user-1-1700000000500.txt"
    assert (tmp_path / result.transcript_path).read_text(encoding="utf-8") == "A: mitochondria"
    assert result.refined_transcript == "A: MITOCHONDRIA"
    assert result.structured_notes.key_concepts == ["osmosis"]
    assert result.duration_minutes == pytest.approx(2.0)
    assert result.cost_breakdown.speech_cost == pytest.approx(0.048)
    # gpt-4o-mini: 1000 in / 500 out tokens
    assert result.cost_breakdown.ai_cost == pytest.approx(0.00015 + 0.0003)

    assert [m["type"] for m in sent] == ["generating_notes", "notes", "warning"]
    assert sent[2]["message"] == "Export account not linked; notes not exported."

    record = persistence.sessions[0]
    assert record["id"] == "sess-1"
    assert record["transcriptPath"] == result.transcript_path
    assert record["notes"]["keyConcepts"] == ["osmosis"]
    assert [u[2] for u in persistence.usage] == ["Speech", "AI"]
    assert json.loads(persistence.usage[1][5])["totalTokens"] == 1500
    assert persistence.debits == [("user-1", pytest.approx(2.0), "sess-1")]


def test_anonymous_identity_is_not_debited(tmp_path):
    persistence = FakePersistence()
    run_pipeline(tmp_path, make_job(user_id="demo-user"), persistence=persistence)
    assert persistence.debits == []
    assert len(persistence.sessions) == 1


def test_malformed_summary_still_bills_ai_usage(tmp_path):
    usage = TokenUsage(model="gpt-4o", input_tokens=2000, output_tokens=100)
    persistence = FakePersistence()
    result, sent = run_pipeline(
        tmp_path,
        make_job(),
        summarizer=FakeSummarizer(error=MalformedResponse("not JSON", usage)),
        persistence=persistence,
    )

    assert [f.step for f in result.failures] == ["summarize"]
    assert result.cost_breakdown.ai_cost == pytest.approx(2 * 0.0025 + 0.1 * 0.01)
    assert [u[3] for u in persistence.usage] == ["StreamingTranscription", "gpt-4o"]
    assert sent[1] == {"type": "error", "message": "Failed to generate AI notes: not JSON"}
    assert sent[2]["type"] == "notes"


def test_export_failure_is_a_warning(tmp_path):
    result, sent = run_pipeline(tmp_path, make_job(), exporter=FakeExporter(linked=("user-1",), fail=True))

    assert result.export_url is None
    assert [f.step for f in result.failures] == ["export"]
    warnings = [m["message"] for m in sent if m["type"] == "warning"]
    assert warnings == ["Document export failed: drive quota exceeded"]
    assert not any(m["type"] == "error" for m in sent)


def test_persistence_failure_does_not_stop_remaining_calls(tmp_path):
    persistence = FakePersistence(fail_save=True)
    result, _ = run_pipeline(tmp_path, make_job(), persistence=persistence)

    assert [f.step for f in result.failures] == ["accounting"]
    assert "disk full" in result.failures[0].message
    assert len(persistence.usage) == 2
    assert len(persistence.debits) == 1


def test_unwritable_transcript_dir_records_empty_path(tmp_path):
    blocker = tmp_path / "transcripts"
    blocker.write_text("not a directory")

    result, _ = run_pipeline(tmp_path, make_job())

    assert result.transcript_path == ""
    assert result.failures[0].step == "persist_transcript"
    assert "summarize" in result.completed_steps


def test_final_message_omits_missing_export_url():
    result = FinalizationResult(full_transcript="", duration_minutes=0.0, transcript_path="transcripts/x.txt")
    assert result.final_message() == {"type": "final", "transcriptPath": "transcripts/x.txt"}
    result.export_url = "https://docs.example/1"
    assert result.final_message()["exportUrl"] == "https://docs.example/1"
