"""Partial/final transcript stabilisation and duplicate-final suppression."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .asr.base import TranscriptEvent
from .config import ReconcilerConfig


def normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def text_similarity(first: str, second: str) -> float:
    """Score how alike two transcripts are, from 0.0 to 1.0."""

    if not first or not second:
        return 0.0
    norm1 = normalize_text(first)
    norm2 = normalize_text(second)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0

    shorter, longer = (norm1, norm2) if len(norm1) < len(norm2) else (norm2, norm1)
    if shorter in longer and len(shorter) > 10:
        return len(shorter) / len(longer)

    words1 = norm1.split(" ")
    words2 = norm2.split(" ")
    common = [word for word in words1 if word in words2]
    return (2 * len(common)) / (len(words1) + len(words2))


@dataclass(frozen=True)
class ReconciledEvent:
    """Transcript update that survived filtering."""

    text: str
    is_final: bool
    confidence: Optional[float]
    received_at: float


class ResultReconciler:
    """Filter noisy partials and suppress near-duplicate finals.

    ``window_seconds`` and ``threshold`` are empirical tuning values: a final
    is dropped when it arrives within the window of the previous accepted
    final and scores strictly above the threshold.
    """

    def __init__(self, window_seconds: float = 2.0, threshold: float = 0.8) -> None:
        self.window_seconds = window_seconds
        self.threshold = threshold
        self._current_partial = ""
        self._last_final_text = ""
        self._last_final_at: Optional[float] = None

    @classmethod
    def from_config(cls, config: ReconcilerConfig) -> "ResultReconciler":
        return cls(window_seconds=config.dedup_window_seconds, threshold=config.similarity_threshold)

    @property
    def current_partial(self) -> str:
        return self._current_partial

    @property
    def last_final_text(self) -> str:
        return self._last_final_text

    def ingest(self, event: TranscriptEvent) -> Optional[ReconciledEvent]:
        text = event.text.strip()
        if not text:
            return None

        if not event.is_final:
            if text == self._current_partial:
                return None
            self._current_partial = text
            return ReconciledEvent(text, False, event.confidence, event.received_at)

        if self._last_final_at is not None:
            elapsed = event.received_at - self._last_final_at
            if elapsed < self.window_seconds:
                similarity = text_similarity(text, self._last_final_text)
                if similarity > self.threshold:
                    logging.debug(
                        "Suppressed duplicate final %r (similarity %.2f after %.2fs).",
                        text,
                        similarity,
                        elapsed,
                    )
                    return None

        self._last_final_text = text
        self._last_final_at = event.received_at
        self._current_partial = ""
        return ReconciledEvent(text, True, event.confidence, event.received_at)

    def reset(self) -> None:
        self._current_partial = ""
        self._last_final_text = ""
        self._last_final_at = None
