"""Tests for the pattern learner."""

from unittest.mock import MagicMock

import pytest

from ledgerpipe.classify.learner import (
    PatternLearner,
    fold_confirmation,
    pattern_confidence,
)
from ledgerpipe.classify.patterns import PatternStage
from ledgerpipe.database.models import (
    Account,
    LearnedPattern,
    Organization,
    Transaction,
)
from ledgerpipe.database.repository import Repository
from tests.conftest import MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    r.upsert_organization(Organization(id="acme", name="Acme"))
    r.upsert_account(Account(id="acme-checking", organization_id="acme", name="Checking"))
    yield r
    r.close()


def _txn(**kw) -> Transaction:
    defaults = dict(
        organization_id="acme", account_id="acme-checking", batch_id="b1",
        date="2024-01-15", description="PIX Padaria São João",
        raw_description="PIX Padaria São João", amount=10.0,
        direction="debit", fingerprint="fp",
    )
    defaults.update(kw)
    return Transaction(**defaults)


class TestPatternConfidence:
    @pytest.mark.parametrize("agreements,expected", [(1, 0.5), (2, 0.75), (3, 0.875), (4, 0.9375)])
    def test_unanimous_progression(self, agreements, expected):
        assert pattern_confidence(agreements, agreements) == expected

    def test_disagreement_lowers(self):
        assert pattern_confidence(3, 4) < pattern_confidence(3, 3)
        assert pattern_confidence(3, 4) == round(0.75 * 0.875, 4)

    def test_zero(self):
        assert pattern_confidence(0, 0) == 0.0
        assert pattern_confidence(0, 3) == 0.0


class TestFoldConfirmation:
    def _existing(self, **kw):
        defaults = dict(
            organization_id="acme", canonical_key="padaria sao joao",
            category_id="restaurants", occurrence_count=3, agreement_count=3,
            avg_amount=10.0, confidence=0.875, version=3,
        )
        defaults.update(kw)
        return LearnedPattern(**defaults)

    def test_first_confirmation(self):
        p = fold_confirmation(None, "acme", "padaria sao joao", 12.5, "restaurants", "ops")
        assert p.occurrence_count == 1
        assert p.agreement_count == 1
        assert p.confidence == 0.5
        assert p.avg_amount == 12.5
        assert p.cost_center_id == "ops"

    def test_agreeing_confirmation(self):
        p = fold_confirmation(self._existing(), "acme", "padaria sao joao", 30.0, "restaurants", None)
        assert p.occurrence_count == 4
        assert p.agreement_count == 4
        assert p.confidence == 0.9375
        assert p.avg_amount == 15.0

    def test_override_lowers_confidence_keeps_category(self):
        existing = self._existing()
        p = fold_confirmation(existing, "acme", "padaria sao joao", 10.0, "groceries", None)
        assert p.category_id == "restaurants"
        assert p.occurrence_count == 4
        assert p.agreement_count == 3
        assert p.confidence < existing.confidence

    def test_category_switches_when_agreement_below_half(self):
        existing = self._existing(occurrence_count=2, agreement_count=1, confidence=0.25)
        p = fold_confirmation(existing, "acme", "padaria sao joao", 10.0, "groceries", "admin")
        assert p.category_id == "groceries"
        assert p.cost_center_id == "admin"
        assert p.agreement_count == 1
        assert p.occurrence_count == 3

    def test_does_not_mutate_input(self):
        existing = self._existing()
        fold_confirmation(existing, "acme", "padaria sao joao", 10.0, "restaurants", None)
        assert existing.occurrence_count == 3


class TestPatternLearner:
    def test_three_confirmations_become_trusted(self, repo):
        learner = PatternLearner(repo)
        for amount in (10.0, 12.0, 14.0):
            pattern = learner.on_human_confirm(_txn(amount=amount), "restaurants")

        assert pattern.occurrence_count == 3
        assert pattern.confidence == 0.875
        assert pattern.avg_amount == 12.0
        assert pattern.version == 3

        result = PatternStage(repo).try_classify(_txn(raw_description="Padaria SAO JOAO 1234"))
        assert result.auto_validated is True
        assert result.category_id == "restaurants"

    def test_key_shared_across_noise(self, repo):
        learner = PatternLearner(repo)
        learner.on_human_confirm(_txn(raw_description="PIX 01/02 Padaria São João"), "restaurants")
        learner.on_human_confirm(_txn(raw_description="TED PADARIA SAO JOAO"), "restaurants")
        assert len(repo.list_patterns("acme")) == 1

    def test_override_lowers_stored_confidence(self, repo):
        learner = PatternLearner(repo)
        for _ in range(3):
            learner.on_human_confirm(_txn(), "restaurants")
        pattern = learner.on_human_confirm(_txn(), "groceries")
        assert pattern.category_id == "restaurants"
        assert pattern.confidence < 0.85
        assert repo.get_pattern("acme", "padaria sao joao").confidence == pattern.confidence

    @pytest.mark.parametrize("description", ["PIX 123", "TED AB", ""])
    def test_short_keys_not_learned(self, repo, description):
        assert PatternLearner(repo).on_human_confirm(_txn(raw_description=description), "restaurants") is None
        assert repo.list_patterns("acme") == []

    def test_missing_category_ignored(self):
        repo = MagicMock()
        assert PatternLearner(repo).on_human_confirm(_txn(), "") is None
        repo.upsert_pattern.assert_not_called()
