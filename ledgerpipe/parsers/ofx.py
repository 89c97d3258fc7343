"""OFX/QFX parser for tag-delimited ledger statements.

Handles both SGML (unclosed <TAG>value) and XML-style (<TAG>value</TAG>)
exports. Values are extracted with regex, not an XML parser, since most
banks emit SGML that no XML parser accepts.
"""

from __future__ import annotations

import logging
import re

from ledgerpipe.errors import FormatError

from .base import (
    NO_DESCRIPTION,
    BaseParser,
    CandidateRecord,
    RawStatement,
    decode_text,
    make_candidate,
    parse_amount,
    parse_ofx_date,
)

logger = logging.getLogger(__name__)

# Match from <STMTTRN> to </STMTTRN> or next <STMTTRN> or </BANKTRANLIST> or end-of-string
_BLOCK_RE = re.compile(
    r'<STMTTRN>(.*?)(?=</STMTTRN>|<STMTTRN>|</BANKTRANLIST>|\Z)',
    re.DOTALL | re.IGNORECASE,
)


class OfxParser(BaseParser):
    """Parse OFX/QFX statements into candidate records."""

    def parse(self, statement: RawStatement) -> list[CandidateRecord]:
        content = decode_text(statement.content)
        self.skipped_count = 0

        if "<OFX" not in content.upper() and "<STMTTRN>" not in content.upper():
            raise FormatError("Not an OFX statement: no <OFX> or <STMTTRN> tag found")

        records: list[CandidateRecord] = []
        for block in _BLOCK_RE.findall(content):
            record = self._parse_block(block)
            if record is not None:
                records.append(record)
            else:
                self.skipped_count += 1

        if self.skipped_count:
            logger.warning("Skipped %d malformed STMTTRN block(s)", self.skipped_count)
        return records

    def _parse_block(self, block: str) -> CandidateRecord | None:
        dtposted = self._extract_tag(block, "DTPOSTED")
        trnamt = self._extract_tag(block, "TRNAMT")
        if not dtposted or not trnamt:
            return None

        date = parse_ofx_date(dtposted)
        if date is None:
            return None

        try:
            amount = parse_amount(trnamt)
        except ValueError:
            return None

        description = (
            self._extract_tag(block, "MEMO")
            or self._extract_tag(block, "NAME")
            or NO_DESCRIPTION
        )
        return make_candidate(date, description, amount)

    @staticmethod
    def _extract_tag(block: str, tag: str) -> str | None:
        """Extract value for a SGML tag.

        Handles both:
            <TAG>value          (no closing tag)
            <TAG>value</TAG>    (with closing)
        """
        match = re.search(rf'<{tag}>([^<\n\r]*)', block, re.IGNORECASE)
        if match:
            value = match.group(1).strip()
            return value or None
        return None
