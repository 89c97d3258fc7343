"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
Primary keys are TEXT (UUID strings generated via uuid4()) unless the
caller supplies them, as config-seeded reference data does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Reference data ───────────────────────────────────────


@dataclass
class Organization:
    id: str
    name: str
    created_at: str = field(default_factory=_now)


@dataclass
class Account:
    id: str
    organization_id: str
    name: str
    account_type: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Category:
    organization_id: str
    id: str
    name: str
    direction: str | None = None  # credit | debit | None (either)


@dataclass
class CostCenter:
    organization_id: str
    id: str
    name: str


@dataclass
class ReconciliationRule:
    organization_id: str
    description: str
    direction: str
    category_id: str
    id: str = field(default_factory=_new_id)
    match_type: str = "contains"  # contains | exact | similarity
    amount: float | None = None
    due_day: int | None = None
    cost_center_id: str | None = None
    is_active: bool = True
    created_at: str = field(default_factory=_now)


# ── Imports ──────────────────────────────────────────────


@dataclass
class ImportBatch:
    organization_id: str
    account_id: str
    format: str
    id: str = field(default_factory=_new_id)
    file_name: str | None = None
    status: str = "pending"
    total_count: int = 0
    imported_count: int = 0
    duplicate_count: int = 0
    error_count: int = 0
    period_start: str | None = None
    period_end: str | None = None
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    organization_id: str
    account_id: str
    batch_id: str
    date: str
    description: str
    raw_description: str
    amount: float
    direction: str
    fingerprint: str
    id: str = field(default_factory=_new_id)
    validation_status: str = "pending_validation"
    category_id: str | None = None
    cost_center_id: str | None = None
    classification_source: str | None = None  # rule | pattern | generative | human
    confidence: float | None = None
    reasoning: str | None = None
    validated_at: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


# ── Learning ─────────────────────────────────────────────


@dataclass
class LearnedPattern:
    organization_id: str
    canonical_key: str
    category_id: str
    id: str = field(default_factory=_new_id)
    cost_center_id: str | None = None
    occurrence_count: int = 0
    agreement_count: int = 0
    avg_amount: float = 0.0
    confidence: float = 0.0
    last_used_at: str = field(default_factory=_now)
    version: int = 0
