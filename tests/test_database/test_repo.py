"""Tests for the SQLite repository."""

from dataclasses import replace

import pytest

from ledgerpipe.database.models import (
    Account,
    Category,
    CostCenter,
    ImportBatch,
    LearnedPattern,
    Organization,
    ReconciliationRule,
    Transaction,
)
from ledgerpipe.database.repository import Repository
from ledgerpipe.errors import PatternConflictError, PersistenceError
from tests.conftest import MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    r.upsert_organization(Organization(id="acme", name="Acme"))
    r.upsert_account(Account(id="acme-checking", organization_id="acme", name="Checking"))
    yield r
    r.close()


@pytest.fixture
def batch(repo):
    return repo.insert_batch(ImportBatch(
        organization_id="acme", account_id="acme-checking", format="delimited",
    ))


def _txn(batch_id, **kw) -> Transaction:
    defaults = dict(
        organization_id="acme",
        account_id="acme-checking",
        batch_id=batch_id,
        date="2024-01-15",
        description="Mercado",
        raw_description="Mercado",
        amount=45.90,
        direction="debit",
        fingerprint="fp1",
    )
    defaults.update(kw)
    return Transaction(**defaults)


# ── Migrations ────────────────────────────────────────────


class TestMigrations:
    def test_idempotent(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        versions = repo.conn.execute("SELECT version FROM schema_version").fetchall()
        assert [v[0] for v in versions] == [1]

    def test_tables_created(self, repo):
        names = {
            r[0] for r in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            ).fetchall()
        }
        assert {
            "organizations", "accounts", "categories", "cost_centers",
            "reconciliation_rules", "import_batches", "transactions",
            "learned_patterns",
        } <= names


# ── Reference data ────────────────────────────────────────


class TestReferenceData:
    def test_account_roundtrip(self, repo):
        acct = repo.get_account("acme-checking")
        assert acct.organization_id == "acme"

    def test_upsert_account_updates_name(self, repo):
        repo.upsert_account(Account(id="acme-checking", organization_id="acme", name="Renamed"))
        assert repo.get_account("acme-checking").name == "Renamed"

    def test_list_categories_by_direction(self, repo):
        repo.upsert_category(Category("acme", "groceries", "Groceries", "debit"))
        repo.upsert_category(Category("acme", "sales", "Sales", "credit"))
        repo.upsert_category(Category("acme", "fees", "Fees", None))

        debit_ids = [c.id for c in repo.list_categories("acme", "debit")]
        assert debit_ids == ["fees", "groceries"]
        assert len(repo.list_categories("acme")) == 3

    def test_cost_centers(self, repo):
        repo.upsert_cost_center(CostCenter("acme", "ops", "Operations"))
        assert [c.id for c in repo.list_cost_centers("acme")] == ["ops"]

    def test_active_rules_filtered(self, repo):
        repo.insert_rule(ReconciliationRule("acme", "Mercado", "debit", "groceries"))
        repo.insert_rule(ReconciliationRule("acme", "Venda", "credit", "sales"))
        repo.insert_rule(ReconciliationRule("acme", "Old", "debit", "x", is_active=False))

        rules = repo.get_active_rules("acme", "debit")
        assert [r.description for r in rules] == ["Mercado"]
        assert rules[0].is_active is True

    def test_delete_rules(self, repo):
        repo.insert_rule(ReconciliationRule("acme", "Mercado", "debit", "groceries"))
        assert repo.delete_rules("acme") == 1
        assert repo.get_active_rules("acme") == []


# ── Batches ───────────────────────────────────────────────


class TestBatches:
    def test_insert_and_get(self, repo, batch):
        fetched = repo.get_batch(batch.id)
        assert fetched.status == "pending"
        assert fetched.format == "delimited"

    def test_update_status_with_counts(self, repo, batch):
        repo.update_batch_status(
            batch.id, "processing",
        )
        repo.update_batch_status(
            batch.id, "awaiting_validation",
            imported_count=3, duplicate_count=1, period_start="2024-01-01",
        )
        fetched = repo.get_batch(batch.id)
        assert fetched.status == "awaiting_validation"
        assert fetched.imported_count == 3
        assert fetched.duplicate_count == 1
        assert fetched.period_start == "2024-01-01"

    def test_update_rejects_unknown_columns(self, repo, batch):
        with pytest.raises(ValueError, match="Unknown columns"):
            repo.update_batch_status(batch.id, "failed", bogus=1)

    def test_invalid_status_rejected(self, repo, batch):
        with pytest.raises(PersistenceError):
            repo.update_batch_status(batch.id, "exploded")

    def test_list_batches(self, repo, batch):
        assert [b.id for b in repo.list_batches("acme")] == [batch.id]
        assert repo.list_batches("other") == []


# ── Transactions ──────────────────────────────────────────


class TestTransactions:
    def test_insert_and_get(self, repo, batch):
        txn = repo.insert_transaction(_txn(batch.id))
        fetched = repo.get_transaction(txn.id)
        assert fetched.amount == 45.90
        assert fetched.validation_status == "pending_validation"

    def test_batch_insert_atomic(self, repo, batch):
        good = _txn(batch.id, fingerprint="a")
        bad = _txn(batch.id, fingerprint="b", direction="sideways")
        with pytest.raises(PersistenceError):
            repo.insert_transactions_batch([good, bad])
        assert repo.get_transactions_by_batch(batch.id) == []

    def test_existing_fingerprints_scoped_to_account(self, repo, batch):
        repo.upsert_account(Account(id="acme-card", organization_id="acme", name="Card"))
        repo.insert_transaction(_txn(batch.id, fingerprint="shared"))

        assert repo.get_existing_fingerprints("acme-checking", ["shared", "other"]) == {"shared"}
        assert repo.get_existing_fingerprints("acme-card", ["shared"]) == set()

    def test_existing_fingerprints_many(self, repo, batch):
        repo.insert_transactions_batch([
            _txn(batch.id, fingerprint=f"fp{i}") for i in range(1200)
        ])
        wanted = [f"fp{i}" for i in range(0, 1500, 3)]
        found = repo.get_existing_fingerprints("acme-checking", wanted)
        assert found == {f"fp{i}" for i in range(0, 1200, 3)}

    def test_update_classification_validated(self, repo, batch):
        txn = repo.insert_transaction(_txn(batch.id))
        repo.update_transaction_classification(
            txn.id, "groceries", None, "rule", 1.0, validated=True,
        )
        fetched = repo.get_transaction(txn.id)
        assert fetched.validation_status == "validated"
        assert fetched.validated_at is not None
        assert fetched.classification_source == "rule"

    def test_update_classification_suggestion(self, repo, batch):
        txn = repo.insert_transaction(_txn(batch.id))
        repo.update_transaction_classification(
            txn.id, "groceries", "ops", "generative", 0.6, reasoning="looks like food",
        )
        fetched = repo.get_transaction(txn.id)
        assert fetched.validation_status == "pending_validation"
        assert fetched.category_id == "groceries"
        assert fetched.validated_at is None

    def test_pending_unclassified_only(self, repo, batch):
        a = repo.insert_transaction(_txn(batch.id, fingerprint="a"))
        b = repo.insert_transaction(_txn(batch.id, fingerprint="b"))
        repo.update_transaction_classification(b.id, "groceries", None, "generative", 0.5)

        assert {t.id for t in repo.get_pending_transactions("acme")} == {a.id, b.id}
        assert [t.id for t in repo.get_pending_transactions("acme", unclassified_only=True)] == [a.id]

    def test_count_by_status(self, repo, batch):
        a = repo.insert_transaction(_txn(batch.id, fingerprint="a"))
        repo.insert_transaction(_txn(batch.id, fingerprint="b"))
        repo.update_transaction_classification(a.id, "x", None, "human", 1.0, validated=True)
        assert repo.count_transactions_by_status("acme") == {
            "pending_validation": 1, "validated": 1,
        }


# ── Learned patterns ──────────────────────────────────────


def _bump(existing):
    if existing is None:
        return LearnedPattern("acme", "mercado", "groceries", occurrence_count=1)
    return replace(existing, occurrence_count=existing.occurrence_count + 1)


class TestPatterns:
    def test_insert_then_update(self, repo):
        first = repo.upsert_pattern("acme", "mercado", _bump)
        assert first.version == 1
        second = repo.upsert_pattern("acme", "mercado", _bump)
        assert second.version == 2
        assert second.id == first.id
        stored = repo.get_pattern("acme", "mercado")
        assert stored.occurrence_count == 2

    def test_conflict_retried(self, repo):
        repo.upsert_pattern("acme", "mercado", _bump)
        calls = {"n": 0}

        def racing(existing):
            calls["n"] += 1
            if calls["n"] == 1:
                # Concurrent writer lands between our read and write
                repo.conn.execute(
                    "UPDATE learned_patterns SET version = version + 1 WHERE canonical_key = 'mercado'"
                )
                repo.conn.commit()
            return _bump(existing)

        result = repo.upsert_pattern("acme", "mercado", racing)
        assert calls["n"] == 2
        assert result.occurrence_count == 2

    def test_conflict_exhausted(self, repo):
        repo.upsert_pattern("acme", "mercado", _bump)

        def always_racing(existing):
            repo.conn.execute(
                "UPDATE learned_patterns SET version = version + 1 WHERE canonical_key = 'mercado'"
            )
            repo.conn.commit()
            return _bump(existing)

        with pytest.raises(PatternConflictError):
            repo.upsert_pattern("acme", "mercado", always_racing, attempts=2)

    def test_unique_per_organization(self, repo):
        repo.upsert_organization(Organization(id="beta", name="Beta"))
        repo.upsert_pattern("acme", "mercado", _bump)
        repo.upsert_pattern("beta", "mercado", _bump)
        assert repo.get_pattern("beta", "mercado").organization_id == "beta"
        assert len(repo.list_patterns("acme")) == 1

    def test_delete(self, repo):
        repo.upsert_pattern("acme", "mercado", _bump)
        assert repo.delete_pattern("acme", "mercado") is True
        assert repo.get_pattern("acme", "mercado") is None
        assert repo.delete_pattern("acme", "mercado") is False
