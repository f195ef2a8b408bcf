"""Classify review output as a negative verdict or not."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, Optional, Tuple

DEFAULT_NEGATIVE_PHRASES: Tuple[str, ...] = (
    "changes requested",
    "not complete",
    "partially complete",
)


class Verdict(str, Enum):
    NEGATIVE = "negative"
    NOT_NEGATIVE = "not_negative"


class VerdictClassifier(ABC):
    """Decides whether a review agent asked for more work."""

    @abstractmethod
    def classify(self, text: str) -> Verdict:
        """Return the verdict for a review's final text."""


class KeywordVerdictClassifier(VerdictClassifier):
    """Case-insensitive phrase match. The phrase list is not exhaustive."""

    def __init__(self, phrases: Optional[Iterable[str]] = None) -> None:
        source = DEFAULT_NEGATIVE_PHRASES if phrases is None else phrases
        self.phrases = tuple(phrase.strip().lower() for phrase in source if phrase.strip())

    def classify(self, text: str) -> Verdict:
        lowered = (text or "").lower()
        if any(phrase in lowered for phrase in self.phrases):
            return Verdict.NEGATIVE
        return Verdict.NOT_NEGATIVE
