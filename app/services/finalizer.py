"""
Post-stop finalization for a live session.

Runs once per session, after the transcript is assembled:
1. persist the raw transcript text
2. AI class notes (refined transcript + six note sections)
3. document export for identities with a linked export account
4. duration, cost estimates, session record and plan debit

Every step is wrapped: a failure is recorded on the result and the next
step still runs. Nothing is rolled back; a transcript without notes is still
worth keeping. The caller sends the terminal ``final`` message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app.services.collaborators import (
    DocumentExporter,
    PersistenceService,
    Summarizer,
    is_anonymous,
)
from app.services.debug_logging import dbg
from app.services.errors import CollaboratorFailure
from app.services.llm.base import MalformedResponse
from app.services.relay_config import BillingSettings
from app.services.summarization import NoteSections
from app.services.usage import (
    CostBreakdown,
    UsageMeter,
    estimate_ai_cost,
    estimate_speech_cost,
)

_logger = logging.getLogger("relay.finalizer")

Notifier = Callable[[dict], Awaitable[None]]


async def _silent(_: dict) -> None:
    return None


@dataclass
class StepFailure:
    step: str
    message: str

    def to_dict(self) -> dict:
        return {"step": self.step, "message": self.message}


@dataclass
class FinalizationJob:
    session_id: str
    user_id: str
    class_title: str
    date_iso: str
    full_transcript: str
    meter: UsageMeter
    recording_path: Optional[str] = None


@dataclass
class FinalizationResult:
    full_transcript: str
    duration_minutes: float
    refined_transcript: Optional[str] = None
    structured_notes: Optional[NoteSections] = None
    export_url: Optional[str] = None
    transcript_path: str = ""
    cost_breakdown: CostBreakdown = field(default_factory=CostBreakdown)
    failures: list[StepFailure] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)

    def final_message(self) -> dict:
        message = {"type": "final", "transcriptPath": self.transcript_path}
        if self.export_url:
            message["exportUrl"] = self.export_url
        return message


class FinalizationPipeline:
    def __init__(
        self,
        *,
        data_dir: str,
        summarizer: Summarizer,
        exporter: DocumentExporter,
        persistence: PersistenceService,
        billing: BillingSettings,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._data_dir = data_dir
        self._summarizer = summarizer
        self._exporter = exporter
        self._persistence = persistence
        self._billing = billing
        self._wall_clock = wall_clock

    async def run(
        self,
        job: FinalizationJob,
        result: FinalizationResult,
        notify: Optional[Notifier] = None,
    ) -> FinalizationResult:
        """Fill ``result`` in place, step by step.

        ``result`` is owned by the caller so that whatever was reached survives
        if the caller abandons this coroutine on timeout.
        """
        notify = notify or _silent
        _logger.info(
            "Finalization start: session=%s user=%s chars=%d",
            job.session_id,
            job.user_id,
            len(job.full_transcript),
        )

        await self._step("persist_transcript", job, result, self._persist_transcript(job, result))
        await self._step("summarize", job, result, self._summarize(job, result, notify))
        await self._step("export", job, result, self._export(job, result, notify))
        await self._step("accounting", job, result, self._account(job, result))

        _logger.info(
            "Finalization done: session=%s completed=%s failures=%d",
            job.session_id,
            result.completed_steps,
            len(result.failures),
        )
        return result

    async def _step(self, name: str, job: FinalizationJob, result: FinalizationResult, coro) -> None:
        try:
            await coro
        except Exception as exc:
            failure = CollaboratorFailure(name, str(exc) or type(exc).__name__)
            result.failures.append(StepFailure(name, failure.message))
            _logger.warning("Finalization step %s failed for %s: %s", name, job.session_id, exc)
            dbg(
                _logger,
                job.session_id,
                f"finalize.{name}",
                "step failed",
                level=logging.WARNING,
                error=failure.message,
                excType=type(exc).__name__,
            )
        else:
            result.completed_steps.append(name)

    # ── step 1 ────────────────────────────────────────────────────────

    def _write_transcript(self, relative_path: str, text: str) -> None:
        path = os.path.join(self._data_dir, relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    async def _persist_transcript(self, job: FinalizationJob, result: FinalizationResult) -> None:
        relative_path = f"transcripts/{job.user_id}-{int(self._wall_clock() * 1000)}.txt"
        result.transcript_path = ""
        await asyncio.to_thread(self._write_transcript, relative_path, job.full_transcript)
        result.transcript_path = relative_path

    # ── step 2 ────────────────────────────────────────────────────────

    async def _summarize(self, job: FinalizationJob, result: FinalizationResult, notify: Notifier) -> None:
        await notify({"type": "generating_notes", "message": "Analyzing transcript with AI..."})
        try:
            summary = await asyncio.to_thread(
                self._summarizer.summarize,
                job.full_transcript,
                job.class_title,
                job.user_id,
                job.session_id,
            )
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            if isinstance(exc, MalformedResponse) and exc.usage is not None:
                job.meter.token_usage = exc.usage
            result.refined_transcript = job.full_transcript
            result.structured_notes = NoteSections.fallback(reason)
            await notify({"type": "error", "message": f"Failed to generate AI notes: {reason}"})
            await notify({"type": "notes", "notes": result.structured_notes.to_dict()})
            raise

        job.meter.token_usage = summary.token_usage
        result.refined_transcript = summary.refined_transcript
        result.structured_notes = summary.notes
        await notify({"type": "notes", "notes": summary.notes.to_dict()})

    # ── step 3 ────────────────────────────────────────────────────────

    async def _export(self, job: FinalizationJob, result: FinalizationResult, notify: Notifier) -> None:
        try:
            linked = await asyncio.to_thread(self._exporter.is_linked, job.user_id)
        except Exception as exc:
            await notify({"type": "warning", "message": f"Document export failed: {exc}"})
            raise
        if not linked:
            await notify({"type": "warning", "message": "Export account not linked; notes not exported."})
            return

        notes = result.structured_notes or NoteSections()
        transcript = result.refined_transcript or job.full_transcript
        title = f"{job.class_title} Notes - {job.date_iso}"
        metadata = {
            "classTitle": job.class_title,
            "dateISO": job.date_iso,
            "sessionId": job.session_id,
            "userId": job.user_id,
            "folder": "Class Notes",
        }
        try:
            result.export_url = await asyncio.to_thread(
                self._exporter.export, title, metadata, transcript, notes
            )
        except Exception as exc:
            result.export_url = None
            await notify({"type": "warning", "message": f"Document export failed: {exc}"})
            raise

    # ── step 4 ────────────────────────────────────────────────────────

    async def _account(self, job: FinalizationJob, result: FinalizationResult) -> None:
        meter = job.meter
        result.duration_minutes = meter.duration_minutes
        result.cost_breakdown = CostBreakdown(
            speech_cost=estimate_speech_cost(result.duration_minutes, self._billing.speech_cost_per_minute),
            ai_cost=estimate_ai_cost(meter.token_usage),
        )

        now = datetime.now(timezone.utc).isoformat()
        record = {
            "id": job.session_id,
            "userId": job.user_id,
            "classTitle": job.class_title,
            "dateISO": job.date_iso,
            "transcriptPath": result.transcript_path,
            "docUrl": result.export_url,
            "recordingPath": job.recording_path,
            "createdAt": now,
            "updatedAt": now,
            "durationMinutes": result.duration_minutes,
            "speechCost": result.cost_breakdown.speech_cost,
            "aiCost": result.cost_breakdown.ai_cost,
            "transcriptLength": len(job.full_transcript),
            "notes": result.structured_notes.to_dict() if result.structured_notes else None,
            "failures": [failure.to_dict() for failure in result.failures],
        }

        errors: list[str] = []

        async def attempt(label: str, fn, *args) -> None:
            try:
                await asyncio.to_thread(fn, *args)
            except Exception as exc:
                _logger.warning("Accounting call %s failed for %s: %s", label, job.session_id, exc)
                errors.append(f"{label}: {exc}")

        await attempt("save_session", self._persistence.save_session, record)
        await attempt(
            "log_usage.speech",
            self._persistence.log_usage,
            job.user_id,
            job.session_id,
            "Speech",
            "StreamingTranscription",
            result.cost_breakdown.speech_cost,
            f"{result.duration_minutes:.2f} minutes, {meter.audio_bytes} bytes",
        )
        usage = meter.token_usage
        if usage is not None:
            await attempt(
                "log_usage.ai",
                self._persistence.log_usage,
                job.user_id,
                job.session_id,
                "AI",
                usage.model,
                result.cost_breakdown.ai_cost,
                json.dumps(
                    {
                        "inputTokens": usage.input_tokens,
                        "outputTokens": usage.output_tokens,
                        "totalTokens": usage.total_tokens,
                        "requestId": usage.request_id,
                    }
                ),
            )
        if not is_anonymous(job.user_id):
            await attempt(
                "debit_usage",
                self._persistence.debit_usage,
                job.user_id,
                result.duration_minutes,
                job.session_id,
            )

        if errors:
            raise CollaboratorFailure("accounting", "; ".join(errors))
