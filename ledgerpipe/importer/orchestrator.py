"""Import orchestration: parse → dedup → insert → classify.

An import batch moves through a small state machine:

    pending → processing → awaiting_validation
                         ↘ failed

Parse, size, storage and upstream errors fail the batch, keep the message
on the batch row, and re-raise to the caller. Row insert failures are
counted, not raised. Classification runs last and is best-effort: its
failures are logged and never change the batch status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ledgerpipe.classify.pipeline import (
    ClassificationEngine,
    build_engine,
    classify_batch,
)
from ledgerpipe.config import Config
from ledgerpipe.database.dedup import Deduplicator, FingerprintedRecord
from ledgerpipe.database.models import ImportBatch, Transaction
from ledgerpipe.database.repository import Repository
from ledgerpipe.errors import (
    FormatError,
    InvalidBatchTransition,
    LedgerpipeError,
    PersistenceError,
    StorageError,
    UnknownAccountError,
)
from ledgerpipe.importer.storage import BlobStore
from ledgerpipe.parsers.base import BaseParser, RawStatement, resolve_format
from ledgerpipe.parsers.delimited import DelimitedParser
from ledgerpipe.parsers.image import DEFAULT_MAX_BYTES, ImageParser
from ledgerpipe.parsers.ofx import OfxParser

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFICATION_LIMIT = 500

NO_TRANSACTIONS_MESSAGE = "No transactions found in statement"

# Allowed batch status transitions
TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"awaiting_validation", "failed"}),
    "awaiting_validation": frozenset(),
    "failed": frozenset(),
}


@dataclass
class ImportOutcome:
    """Result of one submit_import call."""
    batch_id: str
    status: str
    total: int = 0
    imported: int = 0
    duplicates: int = 0
    errors: int = 0
    classified: int = 0
    skipped: int = 0  # blocks/rows the parser dropped
    period_start: str | None = None
    period_end: str | None = None


class ImportOrchestrator:
    """Owns the import batch lifecycle.

    Args:
        repo: Database repository.
        dedup: Deduplicator; built from repo when omitted.
        completion_fn: Optional callable used by the image parser and the
            generative stage. Without it, image imports fail and the
            cascade stops at learned patterns.
        storage: Optional BlobStore for path-based payloads.
        engine: Optional pre-built ClassificationEngine; a fresh default
            cascade is built per import when omitted.
    """

    def __init__(
        self,
        repo: Repository,
        dedup: Deduplicator | None = None,
        completion_fn=None,
        storage: BlobStore | None = None,
        engine: ClassificationEngine | None = None,
        image_max_bytes: int = DEFAULT_MAX_BYTES,
        classification_limit: int = DEFAULT_CLASSIFICATION_LIMIT,
    ):
        self.repo = repo
        self.dedup = dedup or Deduplicator(repo)
        self.completion_fn = completion_fn
        self.storage = storage
        self.engine = engine
        self.image_max_bytes = image_max_bytes
        self.classification_limit = classification_limit

    @classmethod
    def from_config(
        cls,
        repo: Repository,
        config: Config,
        completion_fn=None,
        storage: BlobStore | None = None,
    ) -> ImportOrchestrator:
        return cls(
            repo,
            completion_fn=completion_fn,
            storage=storage,
            image_max_bytes=config.image_max_bytes,
            classification_limit=config.classification_limit,
        )

    # ── Batch lifecycle ──────────────────────────────────

    def create_batch(
        self,
        organization_id: str,
        account_id: str,
        format: str,
        file_name: str | None = None,
        batch_id: str | None = None,
    ) -> ImportBatch:
        """Create a pending batch for an account of the organization.

        Raises:
            UnknownAccountError: If the account is not in the organization.
            FormatError: If the format tag is not recognized.
        """
        account = self.repo.get_account(account_id)
        if account is None or account.organization_id != organization_id:
            raise UnknownAccountError(
                f"Account '{account_id}' not found in organization '{organization_id}'"
            )
        fmt = resolve_format(format)
        if fmt is None:
            raise FormatError(f"Unsupported statement format: {format}")

        batch = ImportBatch(
            organization_id=organization_id,
            account_id=account_id,
            format=fmt,
            file_name=file_name,
        )
        if batch_id is not None:
            batch.id = batch_id
        self.repo.insert_batch(batch)
        logger.info("Created batch %s (%s) for account %s", batch.id, fmt, account_id)
        return batch

    def transition(self, batch: ImportBatch, target: str, **fields) -> ImportBatch:
        """Move batch to target status, writing any count/period fields.

        Writing the current status again is allowed and idempotent.

        Raises:
            InvalidBatchTransition: If target is not reachable from the
                batch's current status.
        """
        if target != batch.status and target not in TRANSITIONS.get(batch.status, ()):
            raise InvalidBatchTransition(batch.id, batch.status, target)
        self.repo.update_batch_status(batch.id, target, **fields)
        batch.status = target
        for name, value in fields.items():
            setattr(batch, name, value)
        logger.info("Batch %s -> %s", batch.id, target)
        return batch

    def _fail(self, batch: ImportBatch, message: str) -> None:
        try:
            self.transition(batch, "failed", error_message=message)
        except LedgerpipeError:
            logger.exception("Could not mark batch %s as failed", batch.id)

    # ── Import ───────────────────────────────────────────

    def submit_import(
        self,
        batch_id: str,
        organization_id: str,
        account_id: str,
        format: str,
        payload: bytes | str | None = None,
        file_path: str | None = None,
        file_name: str | None = None,
    ) -> ImportOutcome:
        """Run a full import for one statement.

        Exactly one of payload (inline content) or file_path (blob storage
        path) is used; file_path wins when both are given.

        Returns ImportOutcome with counts and the statement period.

        Raises:
            FormatError, SizeLimitError, StorageError, UpstreamError: After
                marking the batch failed.
            InvalidBatchTransition: If the batch is not pending.
            UnknownAccountError: If the account is not in the organization.
        """
        if file_name is None and file_path is not None:
            file_name = Path(file_path).name

        batch = self.repo.get_batch(batch_id)
        if batch is None:
            batch = self.create_batch(
                organization_id, account_id, format,
                file_name=file_name, batch_id=batch_id,
            )
        elif batch.organization_id != organization_id or batch.account_id != account_id:
            raise UnknownAccountError(
                f"Batch {batch_id} belongs to a different organization or account"
            )

        self.transition(batch, "processing")
        fmt = batch.format

        try:
            statement = self._load_statement(fmt, payload, file_path, file_name)
            parser = self._parser_for(fmt)
            candidates = parser.parse(statement)
            if not candidates:
                raise FormatError(NO_TRANSACTIONS_MESSAGE)

            dedup_result = self.dedup.filter_new(account_id, candidates)
            imported, errors = self._insert(batch, dedup_result.new)
        except LedgerpipeError as e:
            logger.warning("Import failed for batch %s: %s", batch.id, e)
            self._fail(batch, str(e))
            raise
        except Exception as e:
            logger.exception("Import failed for batch %s", batch.id)
            self._fail(batch, str(e))
            raise

        dates = [c.date for c in candidates]
        outcome = ImportOutcome(
            batch_id=batch.id,
            status="awaiting_validation",
            total=len(candidates),
            imported=imported,
            duplicates=dedup_result.duplicate_count,
            errors=errors,
            skipped=parser.skipped_count,
            period_start=min(dates),
            period_end=max(dates),
        )
        try:
            self.transition(
                batch, "awaiting_validation",
                total_count=outcome.total,
                imported_count=outcome.imported,
                duplicate_count=outcome.duplicates,
                error_count=outcome.errors,
                period_start=outcome.period_start,
                period_end=outcome.period_end,
            )
        except LedgerpipeError as e:
            # Records are already written; keep the counts on the failed batch
            logger.error(
                "Could not finalize batch %s (%d new, %d duplicate, %d error(s)): %s",
                batch.id, imported, outcome.duplicates, errors, e,
            )
            self._fail(
                batch,
                f"Could not finalize import after {imported} new, {outcome.duplicates}"
                f" duplicate, {errors} error record(s): {e}",
            )
            raise
        logger.info(
            "Batch %s imported: %d new, %d duplicate, %d error(s), period %s..%s",
            batch.id, imported, outcome.duplicates, errors,
            outcome.period_start, outcome.period_end,
        )

        if imported:
            outcome.classified = self._classify(batch)
        return outcome

    def _load_statement(
        self,
        fmt: str,
        payload: bytes | str | None,
        file_path: str | None,
        file_name: str | None,
    ) -> RawStatement:
        if file_path is not None:
            if self.storage is None:
                raise StorageError("No blob storage configured for path-based imports")
            content = self.storage.fetch(file_path)
        elif payload is not None:
            content = payload
        else:
            raise FormatError("Import needs either a payload or a file path")
        return RawStatement.from_payload(fmt, content, file_name=file_name)

    def _parser_for(self, fmt: str) -> BaseParser:
        if fmt == "ledger":
            return OfxParser()
        if fmt == "delimited":
            return DelimitedParser()
        if fmt == "image":
            return ImageParser(self.completion_fn, max_bytes=self.image_max_bytes)
        raise FormatError(f"Unsupported statement format: {fmt}")

    def _insert(
        self, batch: ImportBatch, items: list[FingerprintedRecord]
    ) -> tuple[int, int]:
        """Insert new records; returns (imported, errors).

        Tries one atomic batch insert first, then falls back to row-by-row
        so a single bad row does not sink the rest.
        """
        txns = [
            Transaction(
                organization_id=batch.organization_id,
                account_id=batch.account_id,
                batch_id=batch.id,
                date=item.record.date,
                description=item.record.description,
                raw_description=item.record.raw_description,
                amount=item.record.amount,
                direction=item.record.direction,
                fingerprint=item.fingerprint,
            )
            for item in items
        ]
        if not txns:
            return 0, 0

        try:
            self.repo.insert_transactions_batch(txns)
            return len(txns), 0
        except PersistenceError as e:
            logger.warning("Batch insert failed (%s), retrying row by row", e)

        imported = errors = 0
        for txn in txns:
            try:
                self.repo.insert_transaction(txn)
                imported += 1
            except PersistenceError as e:
                logger.warning("Row insert failed for %s: %s", txn.date, e)
                errors += 1
        return imported, errors

    def _classify(self, batch: ImportBatch) -> int:
        try:
            engine = self.engine or build_engine(self.repo, self.completion_fn)
            txns = self.repo.get_transactions_by_batch(
                batch.id, validation_status="pending_validation",
                limit=self.classification_limit,
            )
            summary = classify_batch(engine, self.repo, txns, limit=self.classification_limit)
            return summary.classified
        except Exception:
            logger.exception("Classification failed for batch %s", batch.id)
            return 0
