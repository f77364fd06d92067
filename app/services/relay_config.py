from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TranscriptionSettings:
    """Backend selection plus the per-session stream configuration.

    The stream fields (sample_rate, language_code, vocabulary, language_model,
    speaker_labels) are copied into a BackendConfig when a session opens and
    stay fixed for that session.
    """
    provider: str  # "faster-whisper" or "remote"
    sample_rate: int
    language_code: str
    vocabulary: Optional[str]
    language_model: Optional[str]
    speaker_labels: bool
    # faster-whisper
    model_size: str
    device: str
    compute_type: str
    chunk_seconds: float
    partial_interval_seconds: float
    # remote
    remote_url: str
    remote_api_key: Optional[str]
    audio_queue_frames: int


@dataclass(frozen=True)
class SessionSettings:
    stop_flush_timeout_seconds: float
    finalize_timeout_seconds: float
    release_grace_seconds: float
    outbound_queue_size: int


@dataclass(frozen=True)
class BillingSettings:
    speech_cost_per_minute: float  # speech service, USD
    hourly_rate: float  # what the identity is charged per recorded hour


@dataclass(frozen=True)
class RelayConfig:
    transcription: TranscriptionSettings
    session: SessionSettings
    billing: BillingSettings
    enforce_entitlement: bool
    utterance_policy: str  # "latest" or "append"
    save_audio: bool


def parse_relay_config(config_dict: dict) -> RelayConfig:
    """Parse the relay sections of config.json.

    Example:
        {
            "transcription": {"provider": "remote", "remote_url": "ws://asr:9000/stream"},
            "session": {"finalize_timeout_seconds": 30},
            "entitlement": {"enforce": false},
            "reconciler": {"utterance_policy": "latest"}
        }

    Missing keys fall back to defaults; a few stream fields may also come
    from the environment (TRANSCRIBE_LANGUAGE_CODE, TRANSCRIBE_VOCAB_NAME,
    TRANSCRIBE_LANGUAGE_MODEL).
    """
    transcription_dict = config_dict.get("transcription", {})
    session_dict = config_dict.get("session", {})
    billing_dict = config_dict.get("billing", {})
    entitlement_dict = config_dict.get("entitlement", {})
    reconciler_dict = config_dict.get("reconciler", {})
    audio_dict = config_dict.get("audio", {})

    transcription = TranscriptionSettings(
        provider=transcription_dict.get("provider", "faster-whisper"),
        sample_rate=int(transcription_dict.get("sample_rate", 16000)),
        language_code=transcription_dict.get("language_code")
        or os.environ.get("TRANSCRIBE_LANGUAGE_CODE", "en-US"),
        vocabulary=transcription_dict.get("vocabulary")
        or os.environ.get("TRANSCRIBE_VOCAB_NAME")
        or None,
        language_model=transcription_dict.get("language_model")
        or os.environ.get("TRANSCRIBE_LANGUAGE_MODEL")
        or None,
        speaker_labels=bool(transcription_dict.get("speaker_labels", False)),
        model_size=transcription_dict.get("model_size", "base"),
        device=transcription_dict.get("device", "cpu"),
        compute_type=transcription_dict.get("compute_type", "int8"),
        chunk_seconds=float(transcription_dict.get("chunk_seconds", 10.0)),
        partial_interval_seconds=float(transcription_dict.get("partial_interval_seconds", 2.0)),
        remote_url=transcription_dict.get("remote_url", ""),
        remote_api_key=transcription_dict.get("remote_api_key"),
        audio_queue_frames=int(transcription_dict.get("audio_queue_frames", 64)),
    )

    session = SessionSettings(
        stop_flush_timeout_seconds=float(session_dict.get("stop_flush_timeout_seconds", 10.0)),
        finalize_timeout_seconds=float(session_dict.get("finalize_timeout_seconds", 30.0)),
        release_grace_seconds=float(session_dict.get("release_grace_seconds", 3.0)),
        outbound_queue_size=int(session_dict.get("outbound_queue_size", 256)),
    )

    billing = BillingSettings(
        speech_cost_per_minute=float(billing_dict.get("speech_cost_per_minute", 0.024)),
        hourly_rate=float(billing_dict.get("hourly_rate", 2.0)),
    )

    utterance_policy = str(reconciler_dict.get("utterance_policy", "latest")).lower()
    if utterance_policy not in ("latest", "append"):
        utterance_policy = "latest"

    return RelayConfig(
        transcription=transcription,
        session=session,
        billing=billing,
        enforce_entitlement=bool(entitlement_dict.get("enforce", False)),
        utterance_policy=utterance_policy,
        save_audio=bool(audio_dict.get("save_audio", False)),
    )
