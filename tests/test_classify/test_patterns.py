"""Tests for the learned-pattern stage and its auto-validation thresholds."""

from unittest.mock import MagicMock

import pytest

from ledgerpipe.classify.patterns import (
    AUTO_VALIDATE_CONFIDENCE,
    MIN_OCCURRENCES,
    SUGGEST_CONFIDENCE,
    PatternStage,
    is_suggestion,
    is_trusted,
)
from ledgerpipe.database.models import LearnedPattern, Transaction


def _txn(**kw) -> Transaction:
    defaults = dict(
        organization_id="acme", account_id="acme-checking", batch_id="b1",
        date="2024-01-15", description="Padaria Sao Joao",
        raw_description="PIX Padaria São João", amount=12.0,
        direction="debit", fingerprint="fp",
    )
    defaults.update(kw)
    return Transaction(**defaults)


def _pattern(confidence, occurrences, **kw) -> LearnedPattern:
    return LearnedPattern(
        organization_id="acme",
        canonical_key="padaria sao joao",
        category_id="restaurants",
        cost_center_id=kw.get("cost_center_id"),
        occurrence_count=occurrences,
        agreement_count=occurrences,
        confidence=confidence,
    )


def _stage(pattern):
    repo = MagicMock()
    repo.get_pattern.return_value = pattern
    return PatternStage(repo), repo


class TestThresholds:
    def test_constants(self):
        assert AUTO_VALIDATE_CONFIDENCE == 0.85
        assert MIN_OCCURRENCES == 3

    @pytest.mark.parametrize("confidence,occurrences,trusted", [
        (0.99, 2, False),
        (0.85, 3, True),
        (0.84, 10, False),
        (0.95, 5, True),
    ])
    def test_is_trusted(self, confidence, occurrences, trusted):
        assert is_trusted(_pattern(confidence, occurrences)) is trusted

    @pytest.mark.parametrize("confidence,suggested", [(0.6, True), (0.59, False), (0.75, True)])
    def test_is_suggestion(self, confidence, suggested):
        assert is_suggestion(_pattern(confidence, 1)) is suggested


class TestPatternStage:
    def test_two_occurrences_not_auto_validated(self):
        stage, _ = _stage(_pattern(0.99, 2))
        result = stage.try_classify(_txn())
        assert result.auto_validated is False
        assert result.source == "pattern"

    def test_suggestion_tier(self):
        stage, _ = _stage(_pattern(0.75, 2, cost_center_id="ops"))
        result = stage.try_classify(_txn())
        assert result.auto_validated is False
        assert result.category_id == "restaurants"
        assert result.cost_center_id == "ops"
        assert result.confidence == 0.75

    def test_suggestion_boundary(self):
        stage, _ = _stage(_pattern(SUGGEST_CONFIDENCE, 1))
        assert stage.try_classify(_txn()).auto_validated is False

    def test_below_suggestion_returns_none(self):
        stage, _ = _stage(_pattern(0.5, 1))
        assert stage.try_classify(_txn()) is None

    def test_three_occurrences_at_threshold_auto_validated(self):
        stage, _ = _stage(_pattern(0.85, 3, cost_center_id="ops"))
        result = stage.try_classify(_txn())
        assert result.auto_validated is True
        assert result.source == "pattern"
        assert result.category_id == "restaurants"
        assert result.cost_center_id == "ops"
        assert result.confidence == 0.85

    def test_looks_up_canonical_key(self):
        stage, repo = _stage(None)
        assert stage.try_classify(_txn()) is None
        repo.get_pattern.assert_called_once_with("acme", "padaria sao joao")

    def test_empty_key_skips_lookup(self):
        stage, repo = _stage(None)
        assert stage.try_classify(_txn(raw_description="PIX 123")) is None
        repo.get_pattern.assert_not_called()

    def test_never_writes(self):
        stage, repo = _stage(_pattern(0.9, 4))
        stage.try_classify(_txn())
        repo.upsert_pattern.assert_not_called()
