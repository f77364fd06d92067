from __future__ import annotations


class RelayError(RuntimeError):
    pass


class InvalidFrame(RelayError):
    """Binary payload that cannot be forwarded as 16-bit PCM."""


class ProtocolViolation(RelayError):
    """Control message received out of order (audio before init, second init...)."""


class CollaboratorFailure(RelayError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message

