"""Pattern stage: learned patterns from past human confirmations.

Two tiers:
  - trusted (confidence >= 0.85 and at least 3 occurrences): auto-validated
  - suggestion (confidence >= 0.60): recorded as advisory, left pending,
    and the generative stage is not consulted
Below the suggestion bar the stage returns None and the record falls
through. This stage never writes to the pattern table.
"""

from __future__ import annotations

import logging

from ledgerpipe.classify.normalize import canonical_key
from ledgerpipe.classify.stages import ClassificationResult, Stage
from ledgerpipe.database.models import LearnedPattern, Transaction
from ledgerpipe.database.repository import Repository

logger = logging.getLogger(__name__)

AUTO_VALIDATE_CONFIDENCE = 0.85
MIN_OCCURRENCES = 3
SUGGEST_CONFIDENCE = 0.60


def is_trusted(pattern: LearnedPattern) -> bool:
    return (
        pattern.confidence >= AUTO_VALIDATE_CONFIDENCE
        and pattern.occurrence_count >= MIN_OCCURRENCES
    )


def is_suggestion(pattern: LearnedPattern) -> bool:
    return pattern.confidence >= SUGGEST_CONFIDENCE


class PatternStage(Stage):
    name = "pattern"

    def __init__(self, repo: Repository):
        self.repo = repo

    def try_classify(self, txn: Transaction) -> ClassificationResult | None:
        key = canonical_key(txn.raw_description)
        if not key:
            return None

        pattern = self.repo.get_pattern(txn.organization_id, key)
        if pattern is None:
            return None

        trusted = is_trusted(pattern)
        if not trusted and not is_suggestion(pattern):
            logger.debug(
                "Pattern '%s' below threshold (confidence=%.2f, occurrences=%d)",
                key, pattern.confidence, pattern.occurrence_count,
            )
            return None

        return ClassificationResult(
            category_id=pattern.category_id,
            cost_center_id=pattern.cost_center_id,
            auto_validated=trusted,
            source="pattern",
            confidence=pattern.confidence,
            reasoning=f"Learned from {pattern.occurrence_count} confirmations",
        )
