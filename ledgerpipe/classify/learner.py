"""Pattern learner: turns human confirmations into learned patterns.

Each confirmation upserts the pattern for the record's canonical key:

  occurrence_count  every confirmation, never decreases
  agreement_count   confirmations that agreed with the stored category
  avg_amount        running mean of confirmed amounts
  confidence        (agreement_count / occurrence_count) * (1 - 0.5 ** agreement_count)

With unanimous confirmations confidence goes 0.5, 0.75, 0.875, ..., so a
pattern first clears the 0.85 auto-validation bar on its third agreeing
confirmation. An override to a different category lowers confidence; once
agreement falls below half the occurrences the pattern switches to the
new category and restarts its agreement count.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from ledgerpipe.classify.normalize import canonical_key
from ledgerpipe.database.models import LearnedPattern, Transaction, _now
from ledgerpipe.database.repository import Repository

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 3


def pattern_confidence(agreement_count: int, occurrence_count: int) -> float:
    if occurrence_count <= 0 or agreement_count <= 0:
        return 0.0
    ratio = agreement_count / occurrence_count
    return round(ratio * (1 - 0.5 ** agreement_count), 4)


def fold_confirmation(
    existing: LearnedPattern | None,
    organization_id: str,
    key: str,
    amount: float,
    category_id: str,
    cost_center_id: str | None,
) -> LearnedPattern:
    """Return the pattern state after one more confirmation."""
    if existing is None:
        return LearnedPattern(
            organization_id=organization_id,
            canonical_key=key,
            category_id=category_id,
            cost_center_id=cost_center_id,
            occurrence_count=1,
            agreement_count=1,
            avg_amount=round(amount, 2),
            confidence=pattern_confidence(1, 1),
        )

    occurrences = existing.occurrence_count + 1
    avg_amount = round(
        (existing.avg_amount * existing.occurrence_count + amount) / occurrences, 2,
    )
    category = existing.category_id
    cost_center = existing.cost_center_id
    agreements = existing.agreement_count

    if category_id == existing.category_id:
        agreements += 1
        if cost_center_id is not None:
            cost_center = cost_center_id
    elif agreements * 2 < occurrences:
        category = category_id
        cost_center = cost_center_id
        agreements = 1

    return replace(
        existing,
        category_id=category,
        cost_center_id=cost_center,
        occurrence_count=occurrences,
        agreement_count=agreements,
        avg_amount=avg_amount,
        confidence=pattern_confidence(agreements, occurrences),
        last_used_at=_now(),
    )


class PatternLearner:
    def __init__(self, repo: Repository):
        self.repo = repo

    def on_human_confirm(
        self,
        txn: Transaction,
        category_id: str,
        cost_center_id: str | None = None,
    ) -> LearnedPattern | None:
        """Fold a human-confirmed classification into the learned patterns.

        Returns the stored pattern, or None when the description is too
        generic to learn from.
        """
        if not category_id:
            return None
        key = canonical_key(txn.raw_description)
        if len(key) < MIN_KEY_LENGTH:
            logger.debug("Not learning from short key '%s'", key)
            return None

        pattern = self.repo.upsert_pattern(
            txn.organization_id,
            key,
            lambda existing: fold_confirmation(
                existing, txn.organization_id, key, txn.amount,
                category_id, cost_center_id,
            ),
        )
        logger.info(
            "Learned '%s' -> %s (occurrences=%d, confidence=%.2f)",
            key, pattern.category_id, pattern.occurrence_count, pattern.confidence,
        )
        return pattern
