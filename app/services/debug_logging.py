from __future__ import annotations

import json
import logging
from typing import Any


def dbg(
    logger: logging.Logger,
    session_id: str,
    stage: str,
    message: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log one ``DIAG {...}`` line for a session.

    Lines share the server log, so ``grep <session id>`` follows a session
    end to end. Never pass tokens or API keys as fields.
    """
    if not logger.isEnabledFor(level):
        return
    payload = {"sessionId": session_id, "stage": stage, "message": message}
    if fields:
        payload["data"] = fields
    logger.log(level, "DIAG %s", json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str))
