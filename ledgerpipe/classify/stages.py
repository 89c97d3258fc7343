"""Stage interface for the classification cascade."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ledgerpipe.database.models import Transaction


@dataclass
class ClassificationResult:
    """Outcome of a stage that resolved a record."""
    category_id: str
    cost_center_id: str | None
    auto_validated: bool
    source: str  # rule | pattern | generative
    confidence: float
    reasoning: str | None = None


class Stage(ABC):
    """One step of the cascade.

    try_classify returns None when the stage has no answer, letting the
    next stage try. Exceptions are reserved for real failures.
    """

    name: str = "stage"

    @abstractmethod
    def try_classify(self, txn: Transaction) -> ClassificationResult | None:
        """Classify a record or return None."""
