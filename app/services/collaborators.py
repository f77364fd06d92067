"""Narrow synchronous interfaces the relay calls out to.

Accounts, billing and document storage live outside the relay; these
protocols are all it knows about them. Implementations must serialize their
own conflicting writes (two sessions of one identity finishing together).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from app.services.summarization import NoteSections, SummaryResult

ANONYMOUS_IDENTITY = "demo-user"


class IdentityService(Protocol):
    def resolve_identity(self, token: Optional[str]) -> str:
        ...

    def has_active_plan(self, identity: str) -> bool:
        ...


class PersistenceService(Protocol):
    def save_session(self, record: dict) -> None:
        ...

    def log_usage(
        self,
        identity: str,
        session_id: str,
        service: str,
        operation: str,
        cost: float,
        details: str,
    ) -> None:
        ...

    def debit_usage(self, identity: str, duration_minutes: float, session_id: str) -> None:
        ...


class DocumentExporter(Protocol):
    def is_linked(self, identity: str) -> bool:
        ...

    def export(self, title: str, metadata: dict, transcript: str, notes: "NoteSections") -> str:
        ...


class Summarizer(Protocol):
    def summarize(
        self,
        transcript: str,
        label: str,
        identity: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> "SummaryResult":
        ...


def is_anonymous(identity: str) -> bool:
    return not identity or identity == ANONYMOUS_IDENTITY
