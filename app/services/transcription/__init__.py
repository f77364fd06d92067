from app.services.transcription.base import (
    BackendConfig,
    BackendRejected,
    BackendUnavailable,
    StreamTerminated,
    TranscriptEvent,
    TranscriptionBackend,
    TranscriptionProviderError,
)
from app.services.transcription.stream import BackendStream


def create_backend(settings) -> TranscriptionBackend:
    """Build the configured backend from TranscriptionSettings.

    Imports are deferred so a remote-only deployment never loads faster-whisper.
    """
    if settings.provider == "remote":
        from app.services.transcription.remote import RemoteConfig, RemoteStreamingBackend

        return RemoteStreamingBackend(
            RemoteConfig(
                url=settings.remote_url,
                api_key=settings.remote_api_key,
                audio_queue_frames=settings.audio_queue_frames,
            )
        )
    if settings.provider == "faster-whisper":
        from app.services.transcription.whisper_local import FasterWhisperBackend, WhisperConfig

        return FasterWhisperBackend(
            WhisperConfig(
                model_size=settings.model_size,
                device=settings.device,
                compute_type=settings.compute_type,
                chunk_seconds=settings.chunk_seconds,
                partial_interval_seconds=settings.partial_interval_seconds,
                audio_queue_frames=settings.audio_queue_frames,
            )
        )
    raise RuntimeError(f"Unsupported transcription provider: {settings.provider}")


__all__ = [
    "BackendConfig",
    "BackendRejected",
    "BackendStream",
    "BackendUnavailable",
    "StreamTerminated",
    "TranscriptEvent",
    "TranscriptionBackend",
    "TranscriptionProviderError",
    "create_backend",
]
