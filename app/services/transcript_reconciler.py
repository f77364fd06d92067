"""Merge incremental recognition events into a per-speaker transcript."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Optional

from app.services.transcription.base import TranscriptEvent

DEFAULT_SPEAKER = "Speaker"


@dataclass
class TranscriptSegment:
    speaker: str
    text: str
    is_final: bool = False


class TranscriptReconciler:
    """
    Turn a stream of overlapping partial/final events into speaker turns.

    Rules:
    - Events are applied in sequence order. Out-of-order events are held
      until the gap is filled; stale or repeated sequence numbers are ignored.
    - An event from the open segment's speaker (unset tags compare equal)
      replaces that segment's text; latest wins, no diffing.
    - A different speaker seals the open segment (dropped if empty) and
      opens a new one.
    - Sealed segments are never touched again; at most one segment is open.

    With ``utterance_policy="append"`` a new utterance after a final from the
    same speaker is appended inside the open segment instead of replacing it.
    """

    def __init__(self, utterance_policy: str = "latest", first_sequence: int = 1) -> None:
        self._policy = utterance_policy
        self._sealed: list[TranscriptSegment] = []
        self._open: Optional[TranscriptSegment] = None
        # append policy: finalized text of the open segment before the current utterance
        self._committed = ""
        self._next_sequence = first_sequence
        self._held: list[tuple[int, TranscriptEvent]] = []
        self._seen_final = False
        self._logger = logging.getLogger("relay.reconciler")

    # ── intake ────────────────────────────────────────────────────────

    def push(self, event: TranscriptEvent) -> list[TranscriptEvent]:
        """Accept one event; return the events actually applied, in order."""
        if event.sequence < self._next_sequence or any(seq == event.sequence for seq, _ in self._held):
            self._logger.debug("Dropping stale event seq=%s", event.sequence)
            return []
        heapq.heappush(self._held, (event.sequence, event))

        applied: list[TranscriptEvent] = []
        while self._held and self._held[0][0] == self._next_sequence:
            _, ready = heapq.heappop(self._held)
            self._apply(ready)
            applied.append(ready)
            self._next_sequence += 1
        if self._held:
            self._logger.debug(
                "Holding %d event(s) waiting for seq=%s", len(self._held), self._next_sequence
            )
        return applied

    def drain(self) -> list[TranscriptEvent]:
        """Apply any held events in sequence order even if gaps never filled."""
        applied: list[TranscriptEvent] = []
        while self._held:
            seq, event = heapq.heappop(self._held)
            self._apply(event)
            applied.append(event)
            self._next_sequence = seq + 1
        return applied

    def _apply(self, event: TranscriptEvent) -> None:
        speaker = event.speaker_tag or DEFAULT_SPEAKER
        current = self._open
        if not event.is_partial:
            self._seen_final = True

        if current is not None and current.speaker == speaker:
            if self._policy == "append":
                if event.is_partial:
                    current.text = _join(self._committed, event.text)
                else:
                    self._committed = _join(self._committed, event.text)
                    current.text = self._committed
            else:
                current.text = event.text
            current.is_final = not event.is_partial
            return

        if current is not None:
            self._seal(current)

        self._open = TranscriptSegment(speaker=speaker, text=event.text, is_final=not event.is_partial)
        self._committed = "" if event.is_partial else event.text

    def _seal(self, segment: TranscriptSegment) -> None:
        self._open = None
        self._committed = ""
        if not segment.text:
            return
        segment.is_final = True
        self._sealed.append(segment)

    # ── views ─────────────────────────────────────────────────────────

    @property
    def sealed_segments(self) -> list[TranscriptSegment]:
        return list(self._sealed)

    @property
    def open_segment(self) -> Optional[TranscriptSegment]:
        return self._open

    def segments(self) -> list[TranscriptSegment]:
        """Sealed segments plus the open one (as a copy marked final)."""
        result = list(self._sealed)
        if self._open is not None and self._open.text:
            result.append(TranscriptSegment(self._open.speaker, self._open.text, True))
        return result

    def has_final_text(self) -> bool:
        """True once any final event was applied, even if a later partial reopened its segment."""
        if self._sealed:
            return True
        return self._seen_final and self._open is not None and bool(self._open.text)

    def full_transcript(self) -> str:
        return "\n".join(f"{segment.speaker}: {segment.text}" for segment in self.segments())


def _join(head: str, tail: str) -> str:
    if not head:
        return tail
    if not tail:
        return head
    return f"{head} {tail}"
