"""Classification pipeline: ordered stage cascade.

Stages (in priority order):
1. Rules: operator-authored, always auto-validated
2. Learned patterns: auto-validated only when confident and frequent,
   otherwise an advisory suggestion
3. Generative suggestion: advisory, never auto-validated
4. Unresolved: stays pending_validation for human review

The first stage that returns a result wins. Stage order is the list order,
so deployments can drop or reorder stages without touching this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ledgerpipe.classify.generative import GenerativeStage
from ledgerpipe.classify.patterns import PatternStage
from ledgerpipe.classify.rules import RuleStage
from ledgerpipe.classify.stages import ClassificationResult, Stage
from ledgerpipe.database.models import Transaction, _now
from ledgerpipe.database.repository import Repository
from ledgerpipe.errors import (
    ClassificationFailure,
    UpstreamError,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_TIMEOUTS = 2


class ClassificationEngine:
    """Run records through an ordered list of stages."""

    def __init__(self, stages: list[Stage]):
        self.stages = list(stages)
        self.disabled: set[str] = set()

    def disable(self, stage_name: str) -> None:
        self.disabled.add(stage_name)

    def classify(self, txn: Transaction) -> ClassificationResult | None:
        for stage in self.stages:
            if stage.name in self.disabled:
                continue
            result = stage.try_classify(txn)
            if result is not None:
                return result
        return None


def build_engine(repo: Repository, completion_fn=None) -> ClassificationEngine:
    """Default cascade; the generative stage is left out without a completion_fn."""
    stages: list[Stage] = [RuleStage(repo), PatternStage(repo)]
    if completion_fn is not None:
        stages.append(GenerativeStage(repo, completion_fn))
    return ClassificationEngine(stages)


def apply_classification(
    txn: Transaction,
    result: ClassificationResult | None,
    repo: Repository,
) -> None:
    """Write a stage result to the DB and mirror it on txn.

    Auto-validated results mark the record validated. Advisory results
    record the suggestion and leave it pending. None leaves it untouched.
    """
    if result is None:
        return

    repo.update_transaction_classification(
        txn.id,
        category_id=result.category_id,
        cost_center_id=result.cost_center_id,
        source=result.source,
        confidence=result.confidence,
        reasoning=result.reasoning,
        validated=result.auto_validated,
    )
    txn.category_id = result.category_id
    txn.cost_center_id = result.cost_center_id
    txn.classification_source = result.source
    txn.confidence = result.confidence
    txn.reasoning = result.reasoning
    if result.auto_validated:
        txn.validation_status = "validated"
        txn.validated_at = _now()


@dataclass
class ClassificationSummary:
    total: int = 0
    classified: int = 0
    auto_validated: int = 0
    unresolved: int = 0
    failed: int = 0
    by_source: dict[str, int] = field(default_factory=dict)


def classify_batch(
    engine: ClassificationEngine,
    repo: Repository,
    txns: list[Transaction],
    limit: int | None = None,
) -> ClassificationSummary:
    """Classify up to limit pending records, isolating per-record failures.

    A rate-limit or quota error from the completion service disables the
    generative stage for the rest of the batch; records that would have
    reached it stay unresolved. MAX_CONSECUTIVE_TIMEOUTS timeouts in a row
    disable it the same way, while each timed-out record counts as failed.
    """
    summary = ClassificationSummary()
    pending = [t for t in txns if t.validation_status == "pending_validation"]
    if limit is not None:
        pending = pending[:limit]

    timeouts = 0
    for txn in pending:
        summary.total += 1
        try:
            result = engine.classify(txn)
            apply_classification(txn, result, repo)
        except (UpstreamRateLimited, UpstreamQuotaExhausted) as e:
            logger.warning("Completion service unavailable, disabling generative stage: %s", e)
            engine.disable(GenerativeStage.name)
            summary.unresolved += 1
            continue
        except UpstreamTimeout as e:
            logger.warning("%s", ClassificationFailure(txn.id, e))
            summary.failed += 1
            timeouts += 1
            if timeouts >= MAX_CONSECUTIVE_TIMEOUTS:
                logger.warning(
                    "%d consecutive completion timeouts, disabling generative stage", timeouts,
                )
                engine.disable(GenerativeStage.name)
            continue
        except UpstreamError as e:
            logger.warning("%s", ClassificationFailure(txn.id, e))
            summary.failed += 1
            timeouts = 0
            continue
        except Exception as e:
            logger.exception("%s", ClassificationFailure(txn.id, e))
            summary.failed += 1
            timeouts = 0
            continue

        timeouts = 0
        if result is None:
            summary.unresolved += 1
            continue
        summary.classified += 1
        summary.by_source[result.source] = summary.by_source.get(result.source, 0) + 1
        if result.auto_validated:
            summary.auto_validated += 1

    logger.info(
        "Classified %d/%d (auto-validated=%d, unresolved=%d, failed=%d)",
        summary.classified, summary.total, summary.auto_validated,
        summary.unresolved, summary.failed,
    )
    return summary
