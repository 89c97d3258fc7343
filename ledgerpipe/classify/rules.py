"""Rule stage: operator-authored reconciliation rules.

A rule matches a record when:
  - its direction equals the record's direction,
  - its canonical description is contained in (contains), equal to
    (exact), or shares at least 70% of its words with (similarity) the
    record's canonical key,
  - if it has an amount, the record amount is within 1% of it,
  - if it has a due day, the record's day of month equals it.

When several rules match, the most specific one wins: longest key first,
then exact over contains over similarity, then rules that also pin an
amount or due day.
Rule matches are always auto-validated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgerpipe.classify.normalize import canonical_key
from ledgerpipe.classify.stages import ClassificationResult, Stage
from ledgerpipe.database.models import ReconciliationRule, Transaction
from ledgerpipe.database.repository import Repository

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01  # fraction of the rule amount
RULE_CONFIDENCE = 1.0
SIMILARITY_THRESHOLD = 0.70

# Higher ranks win ties on key length
_MATCH_RANK = {"exact": 2, "contains": 1, "similarity": 0}


@dataclass
class RuleMatch:
    """A rule that matched, with its precomputed key."""
    rule: ReconciliationRule
    key: str

    @property
    def specificity(self) -> tuple:
        return (
            len(self.key),
            _MATCH_RANK.get(self.rule.match_type, 0),
            self.rule.amount is not None,
            self.rule.due_day is not None,
        )


def amount_matches(rule_amount: float | None, amount: float) -> bool:
    if rule_amount is None:
        return True
    expected = abs(rule_amount)
    return abs(abs(amount) - expected) <= expected * AMOUNT_TOLERANCE


def due_day_matches(due_day: int | None, date: str) -> bool:
    if due_day is None:
        return True
    try:
        return int(date[8:10]) == due_day
    except ValueError:
        return False


def word_similarity(a: str, b: str) -> float:
    """Share of words in common, over the longer of the two keys."""
    words_a = a.split()
    words_b = b.split()
    if not words_a or not words_b:
        return 0.0
    common = set(words_b)
    shared = sum(1 for w in words_a if w in common)
    return shared / max(len(words_a), len(words_b))


def description_matches(match_type: str, rule_key: str, txn_key: str) -> bool:
    if not rule_key or not txn_key:
        return False
    if match_type == "exact":
        return rule_key == txn_key
    if match_type == "similarity":
        return word_similarity(rule_key, txn_key) >= SIMILARITY_THRESHOLD
    return rule_key in txn_key


def match_rules(
    txn: Transaction, rules: list[ReconciliationRule]
) -> RuleMatch | None:
    """Return the most specific rule matching txn, or None."""
    txn_key = canonical_key(txn.raw_description)
    matches: list[RuleMatch] = []
    for rule in rules:
        if not rule.is_active or rule.direction != txn.direction:
            continue
        rule_key = canonical_key(rule.description)
        if not description_matches(rule.match_type, rule_key, txn_key):
            continue
        if not amount_matches(rule.amount, txn.amount):
            continue
        if not due_day_matches(rule.due_day, txn.date):
            continue
        matches.append(RuleMatch(rule=rule, key=rule_key))

    if not matches:
        return None
    return max(matches, key=lambda m: m.specificity)


class RuleStage(Stage):
    """First stage of the cascade; reads rules once per organization and direction."""

    name = "rule"

    def __init__(self, repo: Repository):
        self.repo = repo
        self._cache: dict[tuple[str, str], list[ReconciliationRule]] = {}

    def _rules_for(self, organization_id: str, direction: str) -> list[ReconciliationRule]:
        key = (organization_id, direction)
        if key not in self._cache:
            self._cache[key] = self.repo.get_active_rules(organization_id, direction)
        return self._cache[key]

    def try_classify(self, txn: Transaction) -> ClassificationResult | None:
        match = match_rules(txn, self._rules_for(txn.organization_id, txn.direction))
        if match is None:
            return None

        logger.debug("Rule %s matched %s", match.rule.id, txn.id)
        return ClassificationResult(
            category_id=match.rule.category_id,
            cost_center_id=match.rule.cost_center_id,
            auto_validated=True,
            source="rule",
            confidence=RULE_CONFIDENCE,
            reasoning=f"Matched rule '{match.rule.description}'",
        )
