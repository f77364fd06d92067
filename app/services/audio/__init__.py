from app.services.audio.pcm_framer import BYTES_PER_SAMPLE, PcmFramer, SessionRecorder

__all__ = ["BYTES_PER_SAMPLE", "PcmFramer", "SessionRecorder"]
