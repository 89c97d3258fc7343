"""Human review: accept, override or assign a classification."""

from __future__ import annotations

import logging

from ledgerpipe.classify.learner import PatternLearner
from ledgerpipe.database.models import Transaction
from ledgerpipe.database.repository import Repository
from ledgerpipe.errors import PatternConflictError

logger = logging.getLogger(__name__)

HUMAN_CONFIDENCE = 1.0


def confirm_classification(
    repo: Repository,
    learner: PatternLearner | None,
    txn_id: str,
    category_id: str,
    cost_center_id: str | None = None,
) -> Transaction:
    """Validate a transaction with a human-chosen category and learn from it.

    Raises:
        ValueError: If the transaction does not exist or the category or
            cost center is not in the organization's taxonomy.
    """
    txn = repo.get_transaction(txn_id)
    if txn is None:
        raise ValueError(f"Transaction not found: {txn_id}")

    category_ids = {c.id for c in repo.list_categories(txn.organization_id)}
    if category_id not in category_ids:
        raise ValueError(f"Unknown category '{category_id}' for {txn.organization_id}")
    if cost_center_id is not None:
        cost_center_ids = {c.id for c in repo.list_cost_centers(txn.organization_id)}
        if cost_center_id not in cost_center_ids:
            raise ValueError(
                f"Unknown cost center '{cost_center_id}' for {txn.organization_id}"
            )

    repo.update_transaction_classification(
        txn.id,
        category_id=category_id,
        cost_center_id=cost_center_id,
        source="human",
        confidence=HUMAN_CONFIDENCE,
        reasoning=None,
        validated=True,
    )

    if learner is not None:
        try:
            learner.on_human_confirm(txn, category_id, cost_center_id)
        except PatternConflictError:
            # The confirmation itself is stored; only the learning step is lost
            logger.warning("Could not update learned pattern for %s", txn.id)

    return repo.get_transaction(txn.id)
