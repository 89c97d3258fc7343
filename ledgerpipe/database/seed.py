"""Load reference data from config into the database.

Organizations, accounts, categories and cost centers are upserted by id.
Rules have no stable id in config, so an organization's rules are replaced
wholesale on every seed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgerpipe.config import Config
from ledgerpipe.database.models import (
    Account,
    Category,
    CostCenter,
    Organization,
    ReconciliationRule,
)
from ledgerpipe.database.repository import Repository

logger = logging.getLogger(__name__)

VALID_DIRECTIONS = ("credit", "debit")
VALID_MATCH_TYPES = ("contains", "exact", "similarity")


@dataclass
class SeedResult:
    organizations: int = 0
    accounts: int = 0
    categories: int = 0
    cost_centers: int = 0
    rules: int = 0
    skipped_rules: int = 0


def rule_from_config(entry: dict, organization_id: str) -> ReconciliationRule | None:
    """Build a rule from a rules.yaml entry, or None if it is incomplete."""
    description = str(entry.get("description", "")).strip()
    category_id = entry.get("category_id")
    direction = entry.get("direction", "debit")
    match_type = entry.get("match", "contains")
    if not description or not category_id:
        return None
    if direction not in VALID_DIRECTIONS or match_type not in VALID_MATCH_TYPES:
        return None

    amount = entry.get("amount")
    due_day = entry.get("due_day")
    return ReconciliationRule(
        organization_id=organization_id,
        description=description,
        match_type=match_type,
        amount=float(amount) if amount is not None else None,
        due_day=int(due_day) if due_day is not None else None,
        direction=direction,
        category_id=category_id,
        cost_center_id=entry.get("cost_center_id"),
        is_active=bool(entry.get("active", True)),
    )


def seed_from_config(repo: Repository, config: Config) -> SeedResult:
    result = SeedResult()

    for org in config.organizations:
        org_id = org["id"]
        repo.upsert_organization(Organization(id=org_id, name=org.get("name", org_id)))
        result.organizations += 1

        for acct in org.get("accounts", []):
            repo.upsert_account(Account(
                id=acct["id"],
                organization_id=org_id,
                name=acct.get("name", acct["id"]),
                account_type=acct.get("type"),
            ))
            result.accounts += 1

        for cat in config.categories_for(org_id):
            repo.upsert_category(Category(
                organization_id=org_id,
                id=cat["id"],
                name=cat.get("name", cat["id"]),
                direction=cat.get("direction"),
            ))
            result.categories += 1

        for cc in config.cost_centers_for(org_id):
            repo.upsert_cost_center(CostCenter(
                organization_id=org_id, id=cc["id"], name=cc.get("name", cc["id"]),
            ))
            result.cost_centers += 1

        repo.delete_rules(org_id)
        for entry in config.rules:
            if entry.get("organization", org_id) != org_id:
                continue
            rule = rule_from_config(entry, org_id)
            if rule is None:
                logger.warning("Skipping incomplete rule: %s", entry)
                result.skipped_rules += 1
                continue
            repo.insert_rule(rule)
            result.rules += 1

    logger.info(
        "Seeded %d organization(s), %d account(s), %d categories, %d rule(s)",
        result.organizations, result.accounts, result.categories, result.rules,
    )
    return result
