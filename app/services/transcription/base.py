from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from app.services.transcription.stream import BackendStream


@dataclass(frozen=True)
class TranscriptEvent:
    is_partial: bool
    text: str
    speaker_tag: Optional[str]
    sequence: int


@dataclass(frozen=True)
class BackendConfig:
    """Stream configuration, fixed for the lifetime of one session."""
    sample_rate: int = 16000
    language_code: str = "en-US"
    vocabulary: Optional[str] = None
    language_model: Optional[str] = None
    speaker_labels: bool = False


class TranscriptionBackend(ABC):
    """Opens duplex recognition streams: PCM frames out, TranscriptEvents in."""

    name: str = "base"

    @abstractmethod
    async def open(self, config: BackendConfig) -> "BackendStream":
        """Connect to the recognizer and return a started stream.

        Raises BackendUnavailable if the recognizer cannot be reached or
        refuses the configuration.
        """
        raise NotImplementedError


class TranscriptionProviderError(RuntimeError):
    fatal: bool = True


class BackendUnavailable(TranscriptionProviderError):
    pass


class BackendRejected(TranscriptionProviderError):
    """A single utterance or request was refused; the stream keeps going."""
    fatal = False


class StreamTerminated(TranscriptionProviderError):
    pass
