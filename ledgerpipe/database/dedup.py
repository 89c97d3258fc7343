"""Content-hash deduplication for statement imports.

Every candidate gets a fingerprint, SHA256(account|date|amount|raw_desc),
and is compared against fingerprints already stored for the same account.
Comparison is against persisted state only: two identical lines inside one
file are both new, so re-importing a file reports exactly the first run's
imported count as duplicates.

There is no lock between the lookup and the insert. Two concurrent imports
of the same file for the same account can both see a fingerprint as new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ledgerpipe.database.repository import Repository
from ledgerpipe.parsers.base import CandidateRecord, compute_fingerprint

logger = logging.getLogger(__name__)


@dataclass
class FingerprintedRecord:
    """A candidate paired with its fingerprint."""
    record: CandidateRecord
    fingerprint: str


@dataclass
class DedupResult:
    """Outcome of filtering one statement's candidates."""
    new: list[FingerprintedRecord] = field(default_factory=list)
    duplicate_count: int = 0

    @property
    def new_count(self) -> int:
        return len(self.new)


def fingerprint_record(account_id: str, record: CandidateRecord) -> str:
    return compute_fingerprint(
        account_id, record.date, record.amount, record.raw_description,
    )


class Deduplicator:
    """Filter candidates whose fingerprint already exists for the account."""

    def __init__(self, repo: Repository):
        self.repo = repo

    def filter_new(
        self, account_id: str, candidates: list[CandidateRecord]
    ) -> DedupResult:
        fingerprinted = [
            FingerprintedRecord(record=c, fingerprint=fingerprint_record(account_id, c))
            for c in candidates
        ]
        existing = self.repo.get_existing_fingerprints(
            account_id, (f.fingerprint for f in fingerprinted),
        )

        result = DedupResult()
        for item in fingerprinted:
            if item.fingerprint in existing:
                result.duplicate_count += 1
            else:
                result.new.append(item)

        logger.debug(
            "Dedup for account %s: %d new, %d duplicate",
            account_id, result.new_count, result.duplicate_count,
        )
        return result
