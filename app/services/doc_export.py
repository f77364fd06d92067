from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from app.services.summarization import NoteSections

_SECTION_TITLES = {
    "introduction": "Introduction",
    "key_concepts": "Key Concepts",
    "explanations": "Explanations",
    "definitions": "Definitions",
    "summary": "Summary",
    "exam_questions": "Potential Exam Questions",
}


def notes_to_doc_text(class_title: str, date_iso: str, refined_transcript: str, notes: "NoteSections") -> str:
    """Plain-text notes document: header, six bullet sections, then the transcript."""
    parts = [f"{class_title} - {date_iso}\n\n"]
    for attr, title in _SECTION_TITLES.items():
        bullets = "\n".join(f"• {item}" for item in getattr(notes, attr, []) or [])
        parts.append(f"{title.upper()}\n{bullets}\n\n")
    parts.append("REFINED TRANSCRIPT\n")
    parts.append(refined_transcript)
    return "".join(parts)


def _slug(text: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", text).strip("-")
    return slug[:80] or "notes"


class LocalDocumentExporter:
    """Writes the notes document into ``exports_dir`` and returns a file:// URL.

    An identity counts as linked when ``is_linked_fn`` says so (the account
    record's ``export_linked`` flag for the file-backed store).
    """

    def __init__(self, exports_dir: str, is_linked_fn: Callable[[str], bool]) -> None:
        self._exports_dir = exports_dir
        self._is_linked_fn = is_linked_fn
        self._logger = logging.getLogger("relay.export")
        os.makedirs(self._exports_dir, exist_ok=True)

    def is_linked(self, identity: str) -> bool:
        return bool(self._is_linked_fn(identity))

    def export(self, title: str, metadata: dict, transcript: str, notes: "NoteSections") -> str:
        class_title = metadata.get("classTitle", title)
        date_iso = metadata.get("dateISO", "")
        text = notes_to_doc_text(class_title, date_iso, transcript, notes)

        owner = _slug(str(metadata.get("userId", "anonymous")))
        path = Path(self._exports_dir) / owner / f"{_slug(title)}-{metadata.get('sessionId', 'session')}.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        self._logger.info("Notes exported: %s (%d chars)", path, len(text))
        return path.resolve().as_uri()
