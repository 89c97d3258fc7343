"""Tests for seeding reference data from config."""

import pytest

from ledgerpipe.config import Config
from ledgerpipe.database.repository import Repository
from ledgerpipe.database.seed import rule_from_config, seed_from_config
from tests.conftest import FIXTURE_CONFIG_DIR, MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)


class TestRuleFromConfig:
    def test_defaults(self):
        rule = rule_from_config({"description": " Uber ", "category_id": "travel"}, "acme")
        assert rule.description == "Uber"
        assert rule.direction == "debit"
        assert rule.match_type == "contains"
        assert rule.amount is None
        assert rule.is_active is True

    def test_full_entry(self):
        rule = rule_from_config({
            "description": "Aluguel", "category_id": "rent", "direction": "debit",
            "match": "exact", "amount": "2500", "due_day": "10",
            "cost_center_id": "admin", "active": False,
        }, "acme")
        assert rule.amount == 2500.0
        assert rule.due_day == 10
        assert rule.match_type == "exact"
        assert rule.cost_center_id == "admin"
        assert rule.is_active is False

    def test_similarity_match_type(self):
        rule = rule_from_config(
            {"description": "Bom Preco", "category_id": "groceries", "match": "similarity"}, "acme",
        )
        assert rule.match_type == "similarity"

    @pytest.mark.parametrize("entry", [
        {"category_id": "rent"},
        {"description": "Aluguel"},
        {"description": "Aluguel", "category_id": "rent", "direction": "sideways"},
        {"description": "Aluguel", "category_id": "rent", "match": "regex"},
    ])
    def test_incomplete_or_invalid(self, entry):
        assert rule_from_config(entry, "acme") is None


class TestSeedFromConfig:
    def test_counts(self, repo, config):
        result = seed_from_config(repo, config)
        assert result.organizations == 2
        assert result.accounts == 3
        assert result.rules == 5
        assert result.skipped_rules == 2

    def test_accounts_belong_to_org(self, repo, config):
        seed_from_config(repo, config)
        assert repo.get_account("acme-card").organization_id == "acme"
        assert repo.get_account("acme-card").account_type == "credit_card"
        assert [a.id for a in repo.list_accounts("beta")] == ["beta-checking"]

    def test_org_scoped_taxonomy(self, repo, config):
        seed_from_config(repo, config)
        acme = {c.id for c in repo.list_categories("acme")}
        beta = {c.id for c in repo.list_categories("beta")}
        assert "consulting" not in acme
        assert "consulting" in beta
        assert {c.id for c in repo.list_cost_centers("beta")} == {"admin", "ops"}

    def test_org_scoped_rules(self, repo, config):
        seed_from_config(repo, config)
        assert len(repo.get_active_rules("acme")) == 4
        assert [r.category_id for r in repo.get_active_rules("beta")] == ["consulting"]

    def test_reseed_replaces_rules(self, repo, config):
        seed_from_config(repo, config)
        seed_from_config(repo, config)
        assert len(repo.get_active_rules("acme")) == 4
        assert len(repo.list_categories("acme")) == 7
