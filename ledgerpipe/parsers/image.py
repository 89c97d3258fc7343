"""Image/scan statement parser backed by a vision-capable completion service.

The only non-deterministic parser. The whole document is sent once with an
instruction to return a flat JSON array of {date, description, amount}.
The response is untrusted: extract_transactions() turns it into a tagged
Extraction and never raises on malformed model output. Upstream rate-limit
and quota errors from the completion callback propagate unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ledgerpipe.completion import Attachment
from ledgerpipe.errors import FormatError, SizeLimitError, UpstreamError
from ledgerpipe.responses import first_json, strip_code_fence

from .base import (
    NO_DESCRIPTION,
    BaseParser,
    CandidateRecord,
    RawStatement,
    make_candidate,
    parse_amount,
    parse_statement_date,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 500 * 1024

SIZE_HINT = "Export the statement as OFX or CSV instead"

SYSTEM_PROMPT = (
    "You extract transactions from bank and credit card statements. "
    "Return ONLY a JSON array, no other text. Each element must be an object with:\n"
    '  - "date": transaction date as YYYY-MM-DD\n'
    '  - "description": the transaction description as printed\n'
    '  - "amount": number, negative for debits/expenses and positive for credits\n'
    "Ignore balances, subtotals and headers. "
    "If there are no transactions, return []."
)

USER_PROMPT = "Extract every transaction from this statement."

_DATE_KEYS = ("date", "data")
_DESCRIPTION_KEYS = ("description", "descricao", "descrição")
_AMOUNT_KEYS = ("amount", "valor", "value")


@dataclass
class Extraction:
    """Outcome of reading a model response.

    status is "ok" when an array with at least one usable record was found,
    "empty" when the array held nothing usable, and "malformed" when no
    array could be parsed at all.
    """
    status: str
    records: list[CandidateRecord] = field(default_factory=list)
    skipped: int = 0
    detail: str | None = None


def sniff_media_type(data: bytes) -> str | None:
    """Identify a PDF or image payload from its magic bytes."""
    if data.startswith(b"%PDF"):
        return "application/pdf"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _first_key(item: dict, keys: tuple[str, ...]):
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _item_to_candidate(item) -> CandidateRecord | None:
    if not isinstance(item, dict):
        return None
    raw_date = _first_key(item, _DATE_KEYS)
    raw_amount = _first_key(item, _AMOUNT_KEYS)
    if raw_date is None or raw_amount is None:
        return None

    date = parse_statement_date(str(raw_date))
    if date is None:
        return None
    try:
        amount = parse_amount(raw_amount if isinstance(raw_amount, (int, float)) else str(raw_amount))
    except ValueError:
        return None
    if amount == 0:
        return None

    description = str(_first_key(item, _DESCRIPTION_KEYS) or NO_DESCRIPTION)
    return make_candidate(date, description, amount)


def extract_transactions(response: str | None) -> Extraction:
    """Parse a model response into candidate records."""
    if not response or not response.strip():
        return Extraction(status="empty", detail="empty response")

    cleaned = strip_code_fence(response)
    items = first_json(cleaned, "[")
    if items is None:
        return Extraction(status="malformed", detail=cleaned[:200])

    records: list[CandidateRecord] = []
    skipped = 0
    for item in items:
        record = _item_to_candidate(item)
        if record is None:
            skipped += 1
        else:
            records.append(record)

    if not records:
        return Extraction(status="empty", skipped=skipped, detail="no usable transactions")
    return Extraction(status="ok", records=records, skipped=skipped)


class ImageParser(BaseParser):
    """Parse scanned statements (PDF, PNG, JPEG, GIF, WEBP).

    Args:
        completion_fn: Callable (system, prompt, attachment) -> str.
        max_bytes: Size ceiling; larger payloads are rejected before any
            network call.
    """

    def __init__(self, completion_fn=None, max_bytes: int = DEFAULT_MAX_BYTES):
        super().__init__()
        self.completion_fn = completion_fn
        self.max_bytes = max_bytes
        self.last_extraction: Extraction | None = None

    def parse(self, statement: RawStatement) -> list[CandidateRecord]:
        self.skipped_count = 0
        self.last_extraction = None

        if statement.size > self.max_bytes:
            raise SizeLimitError(statement.size, self.max_bytes, hint=SIZE_HINT)
        if not isinstance(statement.content, bytes):
            raise FormatError("Image statements must be binary content")

        media_type = sniff_media_type(statement.content)
        if media_type is None:
            raise FormatError("Unrecognized image/scan content (expected PDF, PNG, JPEG, GIF or WEBP)")
        if self.completion_fn is None:
            raise UpstreamError(
                "No completion service configured for image statements (set ANTHROPIC_API_KEY)"
            )

        response = self.completion_fn(
            SYSTEM_PROMPT, USER_PROMPT,
            attachment=Attachment(data=statement.content, media_type=media_type),
        )
        extraction = extract_transactions(response)
        self.last_extraction = extraction
        self.skipped_count = extraction.skipped

        if extraction.status == "malformed":
            logger.warning("Could not read transactions from model response: %s", extraction.detail)
        elif extraction.status == "empty":
            logger.info("Model response held no usable transactions")
        return extraction.records
