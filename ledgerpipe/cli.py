"""CLI entry point for ledgerpipe.

Commands:
    ledgerpipe seed                              Load organizations, accounts, taxonomy and rules from config
    ledgerpipe import FILE --account ACCT [--org ORG] [--format FMT] [--batch-id ID] [--from-storage]
    ledgerpipe status [BATCH_ID] [--org ORG]     Batch status, accounts and validation counts
    ledgerpipe review [--org ORG] [--limit N]    List transactions pending validation
    ledgerpipe confirm TXN_ID CATEGORY_ID [--cost-center CC]
    ledgerpipe classify [--org ORG] [--limit N]  Re-run the cascade over pending transactions
    ledgerpipe patterns --org ORG [--delete KEY] List or delete learned patterns
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from uuid import uuid4

from ledgerpipe.errors import LedgerpipeError

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on LEDGERPIPE_LOG_LEVEL env var."""
    level = os.environ.get("LEDGERPIPE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from ledgerpipe.config import Config

    config_dir = os.environ.get("LEDGERPIPE_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("LEDGERPIPE_MIGRATIONS_DIR", default))


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from ledgerpipe.database.repository import Repository

    db_path = os.environ.get("LEDGERPIPE_DB_PATH", "ledgerpipe.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_storage():
    """BlobStore rooted at LEDGERPIPE_STORAGE_DIR, or None if unset."""
    storage_dir = os.environ.get("LEDGERPIPE_STORAGE_DIR")
    if not storage_dir:
        return None

    from ledgerpipe.importer.storage import BlobStore

    return BlobStore(storage_dir)


def _check_org(repo, org_id: str | None) -> bool:
    """False (with a message) if org_id is given but was never seeded."""
    if org_id is None or repo.get_organization(org_id) is not None:
        return True
    print(f"Unknown organization: {org_id} (run 'ledgerpipe seed'?)")
    return False


def _make_completion_fn(config):
    """Create the completion callback, or None if ANTHROPIC_API_KEY is not set."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    from ledgerpipe.completion import make_completion_fn

    settings = config.completion
    return make_completion_fn(
        api_key,
        model=settings["model"],
        vision_model=settings.get("vision_model"),
        timeout=float(settings["timeout_seconds"]),
        max_tokens=int(settings["max_tokens"]),
    )


# ── Command handlers ─────────────────────────────────────


def cmd_seed(args: argparse.Namespace) -> int:
    """Load reference data from config."""
    from ledgerpipe.database.seed import seed_from_config

    config = _get_config()
    repo = _get_repo()
    try:
        result = seed_from_config(repo, config)
    finally:
        repo.close()

    print(
        f"Seeded {result.organizations} organization(s), {result.accounts} account(s),"
        f" {result.categories} categories, {result.cost_centers} cost center(s),"
        f" {result.rules} rule(s)"
    )
    if result.skipped_rules:
        print(f"Skipped {result.skipped_rules} incomplete rule(s)")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import one statement file."""
    from ledgerpipe.importer.orchestrator import ImportOrchestrator

    config = _get_config()
    storage = _get_storage()
    fmt = args.format or Path(args.file).suffix.lstrip(".")
    if not fmt:
        print("Error: Cannot infer format; pass --format")
        return 1

    org_id = args.org
    if org_id is None:
        account = config.account_by_id(args.account)
        if account is None:
            print(f"Error: Account '{args.account}' is not in config; pass --org")
            return 1
        org_id = account["organization_id"]

    payload = None
    file_path = None
    if args.from_storage:
        if storage is None:
            print("Error: LEDGERPIPE_STORAGE_DIR is not set")
            return 1
        file_path = str(args.file)
        if not storage.exists(file_path):
            print(f"Error: File not found in storage: {file_path}")
            return 1
    else:
        local = Path(args.file).resolve()
        if not local.exists():
            print(f"Error: File not found: {local}")
            return 1
        payload = local.read_bytes()

    repo = _get_repo()
    orchestrator = ImportOrchestrator.from_config(
        repo, config,
        completion_fn=_make_completion_fn(config),
        storage=storage,
    )
    try:
        outcome = orchestrator.submit_import(
            args.batch_id or str(uuid4()),
            org_id,
            args.account,
            fmt,
            payload=payload,
            file_path=file_path,
            file_name=Path(args.file).name,
        )
    except LedgerpipeError as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    print(
        f"Batch {outcome.batch_id}: {outcome.status}"
        f" (imported={outcome.imported}, duplicates={outcome.duplicates},"
        f" errors={outcome.errors}, classified={outcome.classified})"
    )
    print(f"  Period: {outcome.period_start} .. {outcome.period_end}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show one batch, or recent batches and validation counts."""
    repo = _get_repo()
    try:
        if args.batch_id:
            batch = repo.get_batch(args.batch_id)
            if batch is None:
                print(f"Batch not found: {args.batch_id}")
                return 1
            print(f"Batch {batch.id} [{batch.status}]")
            print(f"  Account:     {batch.account_id} ({batch.format})")
            print(f"  Imported:    {batch.imported_count}")
            print(f"  Duplicates:  {batch.duplicate_count}")
            print(f"  Errors:      {batch.error_count}")
            print(f"  Period:      {batch.period_start} .. {batch.period_end}")
            if batch.error_message:
                print(f"  Message:     {batch.error_message}")
            return 0

        if not _check_org(repo, args.org):
            return 1
        counts = repo.count_transactions_by_status(args.org)
        print("ledgerpipe status")
        print("=" * 40)
        if args.org:
            org = repo.get_organization(args.org)
            print(f"  Organization:        {org.name} ({org.id})")
            for acct in repo.list_accounts(org.id):
                print(f"    {acct.id:<18} {acct.account_type or ''}")
        print(f"  Validated:           {counts['validated']:,}")
        print(f"  Pending validation:  {counts['pending_validation']:,}")
        batches = repo.list_batches(args.org, limit=10)
        if batches:
            print("\nRecent batches:")
            for b in batches:
                print(
                    f"  {b.id[:8]}  {b.status:<20} {b.account_id:<18}"
                    f"  new={b.imported_count} dup={b.duplicate_count}"
                )
        return 0
    finally:
        repo.close()


def cmd_review(args: argparse.Namespace) -> int:
    """List transactions pending validation, with any suggestion."""
    repo = _get_repo()
    try:
        if not _check_org(repo, args.org):
            return 1
        txns = repo.get_pending_transactions(args.org, limit=args.limit)
    finally:
        repo.close()

    if not txns:
        print("No transactions pending validation.")
        return 0

    print(f"Transactions pending validation ({len(txns)}):")
    print("-" * 90)
    for t in txns:
        sign = "-" if t.direction == "debit" else "+"
        suggestion = t.category_id or ""
        conf = f"{t.confidence:.0%}" if t.confidence is not None else ""
        print(
            f"  {t.id[:8]}  {t.date}  {sign}{t.amount:>10.2f}"
            f"  {t.description[:30]:<30}  {suggestion:<18} {conf}"
        )
    return 0


def cmd_confirm(args: argparse.Namespace) -> int:
    """Validate a transaction with a category and learn from it."""
    from ledgerpipe.classify.learner import PatternLearner
    from ledgerpipe.classify.review import confirm_classification

    repo = _get_repo()
    try:
        txn = confirm_classification(
            repo, PatternLearner(repo), args.transaction_id,
            args.category_id, args.cost_center,
        )
    except (ValueError, LedgerpipeError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    print(f"Validated {txn.id}: {txn.category_id}")
    return 0


def cmd_classify(args: argparse.Namespace) -> int:
    """Run the cascade over unclassified pending transactions."""
    from ledgerpipe.classify.pipeline import build_engine, classify_batch

    config = _get_config()
    repo = _get_repo()
    try:
        if not _check_org(repo, args.org):
            return 1
        txns = repo.get_pending_transactions(args.org, unclassified_only=True, limit=args.limit)
        engine = build_engine(repo, _make_completion_fn(config))
        summary = classify_batch(engine, repo, txns, limit=args.limit)
    finally:
        repo.close()

    print(
        f"Classified {summary.classified}/{summary.total}"
        f" (auto-validated={summary.auto_validated}, unresolved={summary.unresolved},"
        f" failed={summary.failed})"
    )
    return 0


def cmd_patterns(args: argparse.Namespace) -> int:
    """List learned patterns, or delete one."""
    repo = _get_repo()
    try:
        if not _check_org(repo, args.org):
            return 1
        if args.delete:
            if repo.delete_pattern(args.org, args.delete):
                print(f"Deleted pattern '{args.delete}'")
                return 0
            print(f"Pattern not found: {args.delete}")
            return 1

        patterns = repo.list_patterns(args.org)
    finally:
        repo.close()

    if not patterns:
        print("No learned patterns.")
        return 0
    for p in patterns:
        print(
            f"  {p.canonical_key[:40]:<40}  {p.category_id:<18}"
            f"  n={p.occurrence_count:<3} conf={p.confidence:.2f}"
        )
    return 0


_COMMANDS = {
    "seed": cmd_seed,
    "import": cmd_import,
    "status": cmd_status,
    "review": cmd_review,
    "confirm": cmd_confirm,
    "classify": cmd_classify,
    "patterns": cmd_patterns,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgerpipe",
        description="Bank statement import and classification pipeline",
    )
    subparsers = parser.add_subparsers(dest="command")

    # seed
    subparsers.add_parser("seed", help="Load reference data from config")

    # import
    import_p = subparsers.add_parser("import", help="Import a statement file")
    import_p.add_argument("file", help="Statement file (local path, or storage path with --from-storage)")
    import_p.add_argument("--org", help="Organization ID (default: the account's organization in config)")
    import_p.add_argument("--account", required=True, help="Account ID")
    import_p.add_argument("--format", help="ofx, csv, pdf, png, ... (default: file extension)")
    import_p.add_argument("--batch-id", help="Batch ID (default: new UUID)")
    import_p.add_argument("--from-storage", action="store_true", help="Read FILE from blob storage")

    # status
    status_p = subparsers.add_parser("status", help="Show batch status and validation counts")
    status_p.add_argument("batch_id", nargs="?", help="Batch ID")
    status_p.add_argument("--org", help="Organization ID")

    # review
    review_p = subparsers.add_parser("review", help="List transactions pending validation")
    review_p.add_argument("--org", help="Organization ID")
    review_p.add_argument("--limit", type=int, default=50)

    # confirm
    confirm_p = subparsers.add_parser("confirm", help="Validate a transaction with a category")
    confirm_p.add_argument("transaction_id")
    confirm_p.add_argument("category_id")
    confirm_p.add_argument("--cost-center", help="Cost center ID")

    # classify
    classify_p = subparsers.add_parser("classify", help="Classify pending transactions")
    classify_p.add_argument("--org", help="Organization ID")
    classify_p.add_argument("--limit", type=int, default=500)

    # patterns
    patterns_p = subparsers.add_parser("patterns", help="List or delete learned patterns")
    patterns_p.add_argument("--org", required=True, help="Organization ID")
    patterns_p.add_argument("--delete", metavar="KEY", help="Canonical key to delete")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
