"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. Write failures surface as PersistenceError.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from pathlib import Path

from ledgerpipe.errors import PatternConflictError, PersistenceError

from .models import (
    Account,
    Category,
    CostCenter,
    ImportBatch,
    LearnedPattern,
    Organization,
    ReconciliationRule,
    Transaction,
    _now,
)

logger = logging.getLogger(__name__)

# SQLite caps host parameters per statement; stay well below it
_IN_CHUNK = 500

_TXN_COLUMNS = (
    "id, organization_id, account_id, batch_id, date, description,"
    " raw_description, amount, direction, fingerprint, validation_status,"
    " category_id, cost_center_id, classification_source, confidence,"
    " reasoning, validated_at, created_at, updated_at"
)


def _txn_params(t: Transaction) -> tuple:
    return (
        t.id, t.organization_id, t.account_id, t.batch_id, t.date,
        t.description, t.raw_description, t.amount, t.direction,
        t.fingerprint, t.validation_status, t.category_id,
        t.cost_center_id, t.classification_source, t.confidence,
        t.reasoning, t.validated_at, t.created_at, t.updated_at,
    )


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _write(self, sql: str, params: Iterable = ()) -> int:
        """Execute one write statement and commit. Returns rowcount."""
        try:
            cur = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(str(e)) from e

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so statements are split manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                    logger.info("Applied migration %s", sql_file.name)
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Organizations & accounts ────────────────────────────

    def upsert_organization(self, org: Organization) -> Organization:
        self._write(
            "INSERT INTO organizations (id, name, created_at) VALUES (?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET name = excluded.name",
            (org.id, org.name, org.created_at),
        )
        return org

    def get_organization(self, org_id: str) -> Organization | None:
        row = self.conn.execute(
            "SELECT * FROM organizations WHERE id = ?", (org_id,)
        ).fetchone()
        return Organization(**dict(row)) if row else None

    def upsert_account(self, acct: Account) -> Account:
        self._write(
            "INSERT INTO accounts (id, organization_id, name, account_type, created_at)"
            " VALUES (?, ?, ?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET name = excluded.name,"
            " account_type = excluded.account_type",
            (acct.id, acct.organization_id, acct.name, acct.account_type, acct.created_at),
        )
        return acct

    def get_account(self, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return Account(**dict(row)) if row else None

    def list_accounts(self, organization_id: str) -> list[Account]:
        rows = self.conn.execute(
            "SELECT * FROM accounts WHERE organization_id = ? ORDER BY id",
            (organization_id,),
        ).fetchall()
        return [Account(**dict(r)) for r in rows]

    # ── Taxonomy ────────────────────────────────────────────

    def upsert_category(self, cat: Category) -> Category:
        self._write(
            "INSERT INTO categories (organization_id, id, name, direction)"
            " VALUES (?, ?, ?, ?)"
            " ON CONFLICT(organization_id, id) DO UPDATE SET"
            " name = excluded.name, direction = excluded.direction",
            (cat.organization_id, cat.id, cat.name, cat.direction),
        )
        return cat

    def list_categories(
        self, organization_id: str, direction: str | None = None
    ) -> list[Category]:
        """Categories for an organization.

        With a direction, returns categories for that direction plus the
        direction-less ones.
        """
        sql = "SELECT * FROM categories WHERE organization_id = ?"
        params: list = [organization_id]
        if direction is not None:
            sql += " AND (direction = ? OR direction IS NULL)"
            params.append(direction)
        rows = self.conn.execute(sql + " ORDER BY id", params).fetchall()
        return [Category(**dict(r)) for r in rows]

    def upsert_cost_center(self, cc: CostCenter) -> CostCenter:
        self._write(
            "INSERT INTO cost_centers (organization_id, id, name) VALUES (?, ?, ?)"
            " ON CONFLICT(organization_id, id) DO UPDATE SET name = excluded.name",
            (cc.organization_id, cc.id, cc.name),
        )
        return cc

    def list_cost_centers(self, organization_id: str) -> list[CostCenter]:
        rows = self.conn.execute(
            "SELECT * FROM cost_centers WHERE organization_id = ? ORDER BY id",
            (organization_id,),
        ).fetchall()
        return [CostCenter(**dict(r)) for r in rows]

    # ── Reconciliation rules ────────────────────────────────

    def insert_rule(self, rule: ReconciliationRule) -> ReconciliationRule:
        self._write(
            "INSERT INTO reconciliation_rules"
            " (id, organization_id, description, match_type, amount, due_day,"
            "  direction, category_id, cost_center_id, is_active, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (rule.id, rule.organization_id, rule.description, rule.match_type,
             rule.amount, rule.due_day, rule.direction, rule.category_id,
             rule.cost_center_id, int(rule.is_active), rule.created_at),
        )
        return rule

    def get_active_rules(
        self, organization_id: str, direction: str | None = None
    ) -> list[ReconciliationRule]:
        sql = (
            "SELECT * FROM reconciliation_rules"
            " WHERE organization_id = ? AND is_active = 1"
        )
        params: list = [organization_id]
        if direction is not None:
            sql += " AND direction = ?"
            params.append(direction)
        rows = self.conn.execute(sql + " ORDER BY created_at", params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def delete_rules(self, organization_id: str) -> int:
        return self._write(
            "DELETE FROM reconciliation_rules WHERE organization_id = ?",
            (organization_id,),
        )

    # ── Import batches ──────────────────────────────────────

    def insert_batch(self, batch: ImportBatch) -> ImportBatch:
        self._write(
            "INSERT INTO import_batches"
            " (id, organization_id, account_id, file_name, format, status,"
            "  total_count, imported_count, duplicate_count, error_count,"
            "  period_start, period_end, error_message, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (batch.id, batch.organization_id, batch.account_id, batch.file_name,
             batch.format, batch.status, batch.total_count, batch.imported_count,
             batch.duplicate_count, batch.error_count, batch.period_start,
             batch.period_end, batch.error_message, batch.created_at,
             batch.updated_at),
        )
        return batch

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        row = self.conn.execute(
            "SELECT * FROM import_batches WHERE id = ?", (batch_id,)
        ).fetchone()
        return ImportBatch(**dict(row)) if row else None

    def list_batches(
        self, organization_id: str | None = None, limit: int = 20
    ) -> list[ImportBatch]:
        sql = "SELECT * FROM import_batches"
        params: list = []
        if organization_id is not None:
            sql += " WHERE organization_id = ?"
            params.append(organization_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [ImportBatch(**dict(r)) for r in self.conn.execute(sql, params).fetchall()]

    _BATCH_UPDATE_COLS = frozenset({
        "total_count", "imported_count", "duplicate_count", "error_count",
        "period_start", "period_end", "error_message",
    })

    def update_batch_status(self, batch_id: str, status: str, **kwargs):
        # Reject unknown column names to prevent silent bugs
        unknown = set(kwargs.keys()) - self._BATCH_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_batch_status: {unknown}")

        sets = ["status = ?", "updated_at = ?"]
        vals: list = [status, _now()]
        for col in sorted(kwargs):
            sets.append(f"{col} = ?")
            vals.append(kwargs[col])
        vals.append(batch_id)
        self._write(
            f"UPDATE import_batches SET {', '.join(sets)} WHERE id = ?", vals
        )

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: Transaction) -> Transaction:
        self._write(
            f"INSERT INTO transactions ({_TXN_COLUMNS})"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            _txn_params(txn),
        )
        return txn

    def insert_transactions_batch(self, txns: list[Transaction]):
        """Insert multiple transactions atomically.

        Either all inserts succeed or none do.

        Raises:
            PersistenceError: If any row is rejected.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                f"INSERT INTO transactions ({_TXN_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                [_txn_params(t) for t in txns],
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(str(e)) from e

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_existing_fingerprints(
        self, account_id: str, fingerprints: Iterable[str]
    ) -> set[str]:
        """Return the subset of fingerprints already stored for the account."""
        wanted = list(dict.fromkeys(fingerprints))
        found: set[str] = set()
        for i in range(0, len(wanted), _IN_CHUNK):
            chunk = wanted[i:i + _IN_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            rows = self.conn.execute(
                "SELECT DISTINCT fingerprint FROM transactions"
                f" WHERE account_id = ? AND fingerprint IN ({placeholders})",
                [account_id, *chunk],
            ).fetchall()
            found.update(r["fingerprint"] for r in rows)
        return found

    def get_transactions_by_batch(
        self,
        batch_id: str,
        validation_status: str | None = None,
        limit: int | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE batch_id = ?"
        params: list = [batch_id]
        if validation_status is not None:
            sql += " AND validation_status = ?"
            params.append(validation_status)
        sql += " ORDER BY date, created_at"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_transaction(r) for r in self.conn.execute(sql, params).fetchall()]

    def get_pending_transactions(
        self,
        organization_id: str | None = None,
        unclassified_only: bool = False,
        limit: int | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE validation_status = 'pending_validation'"
        params: list = []
        if organization_id is not None:
            sql += " AND organization_id = ?"
            params.append(organization_id)
        if unclassified_only:
            sql += " AND category_id IS NULL"
        sql += " ORDER BY date DESC, created_at"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_transaction(r) for r in self.conn.execute(sql, params).fetchall()]

    def update_transaction_classification(
        self,
        txn_id: str,
        category_id: str | None,
        cost_center_id: str | None,
        source: str,
        confidence: float | None,
        reasoning: str | None = None,
        validated: bool = False,
    ):
        """Record a classification; validated=True also marks the row validated."""
        now = _now()
        self._write(
            "UPDATE transactions SET category_id = ?, cost_center_id = ?,"
            " classification_source = ?, confidence = ?, reasoning = ?,"
            " validation_status = ?, validated_at = ?, updated_at = ?"
            " WHERE id = ?",
            (category_id, cost_center_id, source, confidence, reasoning,
             "validated" if validated else "pending_validation",
             now if validated else None, now, txn_id),
        )

    def count_transactions_by_status(
        self, organization_id: str | None = None
    ) -> dict[str, int]:
        sql = "SELECT validation_status, COUNT(*) AS n FROM transactions"
        params: list = []
        if organization_id is not None:
            sql += " WHERE organization_id = ?"
            params.append(organization_id)
        sql += " GROUP BY validation_status"
        counts = {"pending_validation": 0, "validated": 0}
        for r in self.conn.execute(sql, params).fetchall():
            counts[r["validation_status"]] = r["n"]
        return counts

    # ── Learned patterns ────────────────────────────────────

    def get_pattern(
        self, organization_id: str, canonical_key: str
    ) -> LearnedPattern | None:
        row = self.conn.execute(
            "SELECT * FROM learned_patterns"
            " WHERE organization_id = ? AND canonical_key = ?",
            (organization_id, canonical_key),
        ).fetchone()
        return LearnedPattern(**dict(row)) if row else None

    def upsert_pattern(
        self,
        organization_id: str,
        canonical_key: str,
        mutate: Callable[[LearnedPattern | None], LearnedPattern],
        attempts: int = 3,
    ) -> LearnedPattern:
        """Read-modify-write a learned pattern under optimistic concurrency.

        mutate receives the stored pattern (or None) and returns the new
        state. The write only lands if the row's version is unchanged since
        the read; otherwise the cycle is retried.

        Raises:
            PatternConflictError: If every attempt lost a race.
        """
        for attempt in range(1, attempts + 1):
            existing = self.get_pattern(organization_id, canonical_key)
            updated = mutate(existing)
            updated.organization_id = organization_id
            updated.canonical_key = canonical_key

            if existing is None:
                updated.version = 1
                try:
                    self.conn.execute(
                        "INSERT INTO learned_patterns"
                        " (id, organization_id, canonical_key, category_id,"
                        "  cost_center_id, occurrence_count, agreement_count,"
                        "  avg_amount, confidence, last_used_at, version)"
                        " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                        (updated.id, organization_id, canonical_key,
                         updated.category_id, updated.cost_center_id,
                         updated.occurrence_count, updated.agreement_count,
                         updated.avg_amount, updated.confidence,
                         updated.last_used_at, updated.version),
                    )
                    self.conn.commit()
                    return updated
                except sqlite3.IntegrityError:
                    # Another writer created the key first
                    self.conn.rollback()
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise PersistenceError(str(e)) from e
            else:
                rowcount = self._write(
                    "UPDATE learned_patterns SET category_id = ?, cost_center_id = ?,"
                    " occurrence_count = ?, agreement_count = ?, avg_amount = ?,"
                    " confidence = ?, last_used_at = ?, version = version + 1"
                    " WHERE id = ? AND version = ?",
                    (updated.category_id, updated.cost_center_id,
                     updated.occurrence_count, updated.agreement_count,
                     updated.avg_amount, updated.confidence, updated.last_used_at,
                     existing.id, existing.version),
                )
                if rowcount == 1:
                    updated.id = existing.id
                    updated.version = existing.version + 1
                    return updated

            logger.debug(
                "Pattern write conflict on %s (attempt %d/%d)",
                canonical_key, attempt, attempts,
            )

        raise PatternConflictError(
            f"Pattern '{canonical_key}' changed concurrently {attempts} times"
        )

    def list_patterns(self, organization_id: str) -> list[LearnedPattern]:
        rows = self.conn.execute(
            "SELECT * FROM learned_patterns WHERE organization_id = ?"
            " ORDER BY confidence DESC, occurrence_count DESC",
            (organization_id,),
        ).fetchall()
        return [LearnedPattern(**dict(r)) for r in rows]

    def delete_pattern(self, organization_id: str, canonical_key: str) -> bool:
        return self._write(
            "DELETE FROM learned_patterns"
            " WHERE organization_id = ? AND canonical_key = ?",
            (organization_id, canonical_key),
        ) > 0

    # ── Row converters ──────────────────────────────────────

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(**dict(row))

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> ReconciliationRule:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        return ReconciliationRule(**data)
