"""Runtime paths for the relay.

Config and logs always live under the working directory. Everything a
session produces (transcripts, exports, recordings, session records) goes
under ``data_dir``, which config.json may point somewhere else.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppContext:
    cwd: str
    data_dir: str

    @classmethod
    def resolve(cls, cwd: str, config: dict, logger: logging.Logger) -> "AppContext":
        """Use config["data_dir"] when it is a writable directory, else ./data."""
        default_data_dir = os.path.join(cwd, "data")
        custom = str(config.get("data_dir") or "")
        if custom and os.path.isdir(custom) and os.access(custom, os.W_OK):
            logger.info("Boot: using custom data_dir=%s", custom)
            return cls(cwd=cwd, data_dir=custom)
        if custom:
            logger.warning(
                "Boot: custom data_dir=%s is invalid or not writable, falling back to %s",
                custom, default_data_dir,
            )
        return cls(cwd=cwd, data_dir=default_data_dir)

    @staticmethod
    def config_path_for(cwd: str) -> str:
        return os.path.join(cwd, "data", "config.json")

    @property
    def config_path(self) -> str:
        return self.config_path_for(self.cwd)

    @property
    def transcripts_dir(self) -> str:
        return os.path.join(self.data_dir, "transcripts")

    @property
    def exports_dir(self) -> str:
        return os.path.join(self.data_dir, "exports")

    @property
    def recordings_dir(self) -> str:
        return os.path.join(self.data_dir, "recordings")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.cwd, "logs")

    def ensure_dirs(self) -> None:
        for path in (
            os.path.dirname(self.config_path),
            self.data_dir,
            self.transcripts_dir,
            self.exports_dir,
            self.recordings_dir,
            self.logs_dir,
        ):
            os.makedirs(path, exist_ok=True)
