"""Generative stage: completion-service suggestion for unresolved records.

Sends one record at a time with the organization's category and cost-center
taxonomy. Suggestions are advisory only: they are never auto-validated and
their confidence is capped below the pattern threshold. Responses are
untrusted; ids outside the taxonomy are discarded.

Upstream errors (rate limit, quota, timeout) propagate to the caller so a
batch can stop calling a metered service.
"""

from __future__ import annotations

import logging

from ledgerpipe.classify.stages import ClassificationResult, Stage
from ledgerpipe.database.models import Category, CostCenter, Transaction
from ledgerpipe.database.repository import Repository
from ledgerpipe.responses import first_json, strip_code_fence

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.75

SYSTEM_PROMPT = (
    "You are a bookkeeping assistant that classifies bank transactions. "
    "Given a transaction, pick the most appropriate category and, when one "
    "clearly applies, a cost center, using ONLY ids from the lists provided. "
    "Return ONLY a JSON object with these fields:\n"
    '  - "category_id": the best matching category id, or null\n'
    '  - "cost_center_id": the best matching cost center id, or null\n'
    '  - "confidence": your confidence from 0.0 to 1.0\n'
    '  - "reasoning": brief explanation (one sentence)\n'
    "Return ONLY the JSON object, no other text."
)


def build_prompt(
    txn: Transaction,
    categories: list[Category],
    cost_centers: list[CostCenter],
) -> str:
    kind = "income" if txn.direction == "credit" else "expense"
    category_lines = "\n".join(f"  - {c.id}: {c.name}" for c in categories)
    cost_center_lines = "\n".join(f"  - {c.id}: {c.name}" for c in cost_centers) or "  (none)"
    return (
        f"Transaction: {txn.raw_description}\n"
        f"Amount: {txn.amount:.2f} ({kind})\n"
        f"Date: {txn.date}\n\n"
        f"Categories:\n{category_lines}\n\n"
        f"Cost centers:\n{cost_center_lines}"
    )


def parse_response(
    response: str,
    category_ids: set[str],
    cost_center_ids: set[str],
) -> ClassificationResult | None:
    """Parse a JSON suggestion, validating ids against the taxonomy.

    The first complete JSON object in the response is used, so code fences
    and surrounding prose are tolerated. Anything else yields None.
    """
    text = strip_code_fence(response or "")
    data = first_json(text, "{")
    if data is None:
        logger.error("Failed to parse classification response: %s", text[:200])
        return None

    category_id = data.get("category_id")
    if not category_id:
        return None
    if not isinstance(category_id, str) or category_id not in category_ids:
        logger.warning("Model returned unknown category_id %r", category_id)
        return None

    cost_center_id = data.get("cost_center_id") or None
    if cost_center_id is not None and (
        not isinstance(cost_center_id, str) or cost_center_id not in cost_center_ids
    ):
        logger.warning("Model returned unknown cost_center_id %r", cost_center_id)
        cost_center_id = None

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = max(0.0, min(MAX_CONFIDENCE, confidence))

    reasoning = data.get("reasoning")
    return ClassificationResult(
        category_id=category_id,
        cost_center_id=cost_center_id,
        auto_validated=False,
        source="generative",
        confidence=confidence,
        reasoning=str(reasoning) if reasoning else None,
    )


class GenerativeStage(Stage):
    """Last stage of the cascade.

    Args:
        repo: Repository for the taxonomy.
        completion_fn: Callable (system, prompt) -> str.
    """

    name = "generative"

    def __init__(self, repo: Repository, completion_fn):
        self.repo = repo
        self.completion_fn = completion_fn
        self._taxonomy: dict[tuple[str, str], tuple[list[Category], list[CostCenter]]] = {}

    def _taxonomy_for(self, organization_id: str, direction: str):
        key = (organization_id, direction)
        if key not in self._taxonomy:
            self._taxonomy[key] = (
                self.repo.list_categories(organization_id, direction),
                self.repo.list_cost_centers(organization_id),
            )
        return self._taxonomy[key]

    def try_classify(self, txn: Transaction) -> ClassificationResult | None:
        categories, cost_centers = self._taxonomy_for(txn.organization_id, txn.direction)
        if not categories:
            logger.debug("No categories for %s/%s, skipping", txn.organization_id, txn.direction)
            return None

        response = self.completion_fn(
            SYSTEM_PROMPT, build_prompt(txn, categories, cost_centers),
        )
        return parse_response(
            response,
            {c.id for c in categories},
            {c.id for c in cost_centers},
        )
