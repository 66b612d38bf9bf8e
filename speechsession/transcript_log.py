"""Optional persistence of reconciled final transcripts."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

from .config import TranscriptLoggingConfig


class TranscriptFileLogger:
    """Append accepted finals to a text file, one per line."""

    def __init__(self, settings: TranscriptLoggingConfig, override_path: Optional[str] = None) -> None:
        self._settings = settings
        self._override_path = override_path
        self._file: Optional[TextIO] = None

    @property
    def path(self) -> Optional[Path]:
        if self._override_path:
            return Path(self._override_path).expanduser()
        if self._settings.file_path:
            return Path(self._settings.file_path).expanduser()
        return None

    @property
    def active(self) -> bool:
        return self._file is not None

    def __enter__(self) -> "TranscriptFileLogger":
        path = self.path
        if path is None or not (self._settings.enabled or self._override_path):
            return self

        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "w" if self._settings.overwrite else "a"
        self._file = path.open(mode=mode, encoding="utf-8")
        logging.info("Transcript logging to %s (mode=%s)", path, mode)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if self._file:
            self._file.close()
            self._file = None

    def log_final(self, text: str, confidence: Optional[float] = None) -> None:
        if not self._file or not text:
            return

        line = text
        if confidence is not None:
            line = f"{line} ({confidence:.2f})"
        if self._settings.include_timestamps:
            timestamp = datetime.now().isoformat(timespec="seconds")
            line = f"[{timestamp}] {line}"
        self._file.write(line + "\n")
        self._file.flush()
