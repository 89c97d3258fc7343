"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date as _date

DESCRIPTION_MAX_LENGTH = 255
NO_DESCRIPTION = "(no description)"

# Boundary aliases → canonical format tag
FORMAT_ALIASES: dict[str, str] = {
    "ledger": "ledger",
    "ofx": "ledger",
    "qfx": "ledger",
    "delimited": "delimited",
    "csv": "delimited",
    "txt": "delimited",
    "image": "image",
    "pdf": "image",
    "png": "image",
    "jpg": "image",
    "jpeg": "image",
    "gif": "image",
    "webp": "image",
}


def resolve_format(fmt: str) -> str | None:
    """Map a format tag or file extension to ledger/delimited/image."""
    return FORMAT_ALIASES.get(fmt.lower().lstrip("."))


@dataclass
class RawStatement:
    """An uploaded statement, before parsing."""
    format: str            # ledger | delimited | image
    content: bytes | str
    size: int
    file_name: str | None = None

    @classmethod
    def from_payload(
        cls, fmt: str, content: bytes | str, file_name: str | None = None,
    ) -> RawStatement:
        size = len(content.encode("utf-8")) if isinstance(content, str) else len(content)
        return cls(format=fmt, content=content, size=size, file_name=file_name)


@dataclass
class CandidateRecord:
    """Normalized output of a parser, before dedup and persistence."""
    date: str              # YYYY-MM-DD
    description: str       # truncated to DESCRIPTION_MAX_LENGTH
    raw_description: str   # untruncated, used for the fingerprint
    amount: float          # unsigned magnitude
    direction: str         # credit | debit


class BaseParser(ABC):
    """Abstract base for all statement parsers.

    Attributes:
        skipped_count: Number of transaction blocks or rows dropped during
            the last parse() call. Check this after parse() to detect silent
            data loss.
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, statement: RawStatement) -> list[CandidateRecord]:
        """Parse a statement and return candidate records.

        Implementations increment self.skipped_count for every malformed
        block they drop, and raise FormatError only when the statement as
        a whole is unreadable.
        """


def make_candidate(date: str, description: str, signed_amount: float) -> CandidateRecord:
    """Build a CandidateRecord from a signed amount (negative = debit)."""
    raw = description.strip()
    return CandidateRecord(
        date=date,
        description=raw[:DESCRIPTION_MAX_LENGTH],
        raw_description=raw,
        amount=round(abs(signed_amount), 2),
        direction="credit" if signed_amount >= 0 else "debit",
    )


def decode_text(content: bytes | str) -> str:
    """Decode statement bytes as UTF-8 (BOM tolerated), falling back to Latin-1."""
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def compute_fingerprint(
    account_id: str, date: str, amount: float, raw_desc: str
) -> str:
    """SHA256(account|date|amount|raw_desc), scoped to the account."""
    key = f"{account_id}|{date}|{amount:.2f}|{raw_desc}"
    return hashlib.sha256(key.encode()).hexdigest()


def parse_ofx_date(dtposted: str) -> str | None:
    """Extract YYYY-MM-DD from OFX date strings.

    Handles formats:
        20240115120000[-3:GMT]
        20241231120000.000[-7:MST]
        20241231

    Returns None if the date string is too short or not a calendar date.
    """
    if not dtposted or len(dtposted) < 8:
        return None
    digits = dtposted[:8]
    if not digits.isdigit():
        return None
    return _valid_date(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))


def parse_statement_date(value: str) -> str | None:
    """Normalize a statement date to YYYY-MM-DD.

    Year-first (2024-01-15, 2024/01/15) and day-first (15/01/2024,
    15-01-2024, 15.01.24) are told apart by which token has four digits.
    A trailing time component is ignored.
    """
    value = value.strip().strip('"')
    if not value:
        return None
    value = re.split(r"[T\s]", value, maxsplit=1)[0]
    parts = re.split(r"[/\-.]", value)
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None

    if len(parts[0]) == 4:
        year, month, day = parts
    else:
        day, month, year = parts
        if len(year) == 2:
            year = f"20{year}"
        elif len(year) != 4:
            return None
    return _valid_date(int(year), int(month), int(day))


def _valid_date(year: int, month: int, day: int) -> str | None:
    try:
        return _date(year, month, day).isoformat()
    except ValueError:
        return None


_AMOUNT_JUNK = re.compile(r"[^\d,.\-]")


def parse_amount(value: str | float | int) -> float:
    """Parse a signed statement amount.

    Accepts locale decimal commas (-45,90), thousands separators in either
    convention (1.234,56 / 1,234.56), currency symbols, and parenthesised
    or trailing-minus negatives. Whichever of ',' and '.' appears last is
    the decimal separator.

    Raises:
        ValueError: If no number can be read.
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().strip('"')
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    cleaned = _AMOUNT_JUNK.sub("", text)
    if "-" in cleaned:
        negative = True
        cleaned = cleaned.replace("-", "")
    if not any(ch.isdigit() for ch in cleaned):
        raise ValueError(f"Not an amount: {value!r}")

    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")
    if last_comma >= 0 and last_dot >= 0:
        if last_comma > last_dot:
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif last_comma >= 0:
        if cleaned.count(",") > 1:
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(",", ".")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    amount = float(cleaned)
    return -amount if negative else amount
