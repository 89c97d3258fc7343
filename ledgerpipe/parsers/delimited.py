"""Delimited-text (CSV) statement parser.

Bank CSV exports vary in separator, header language and number format.
The separator is ';' when the header line contains one, otherwise ','.
Columns are resolved by matching header cells against synonym sets for
date, description and amount (Portuguese, English, Spanish; accents and
case ignored).

Rows with an empty field, an invalid date or a zero amount are dropped.
"""

from __future__ import annotations

import csv
import io
import logging
import unicodedata

from ledgerpipe.errors import FormatError

from .base import (
    BaseParser,
    CandidateRecord,
    RawStatement,
    decode_text,
    make_candidate,
    parse_amount,
    parse_statement_date,
)

logger = logging.getLogger(__name__)

DATE_COLUMNS = frozenset({
    "data", "date", "fecha", "dt", "data lancamento", "data movimento",
    "data transacao", "transaction date", "posted date", "posting date",
})
DESCRIPTION_COLUMNS = frozenset({
    "descricao", "description", "descripcion", "historico", "lancamento",
    "memo", "detalhe", "detalhes", "estabelecimento", "concepto", "payee",
})
AMOUNT_COLUMNS = frozenset({
    "valor", "amount", "value", "importe", "monto", "quantia", "valor (r$)",
})


def _fold(cell: str) -> str:
    """Lower-case, strip quotes and accents from a header cell."""
    text = cell.strip().strip('"').strip().lower()
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def detect_separator(header_line: str) -> str:
    return ";" if ";" in header_line else ","


def resolve_columns(header: list[str]) -> dict[str, int]:
    """Map each required field to its column index.

    Raises:
        FormatError: If any required field has no matching header cell.
    """
    wanted = {
        "date": DATE_COLUMNS,
        "description": DESCRIPTION_COLUMNS,
        "amount": AMOUNT_COLUMNS,
    }
    columns: dict[str, int] = {}
    for idx, cell in enumerate(header):
        folded = _fold(cell)
        for field_name, synonyms in wanted.items():
            if field_name not in columns and folded in synonyms:
                columns[field_name] = idx

    missing = [name for name in wanted if name not in columns]
    if missing:
        raise FormatError(
            f"CSV header is missing required column(s): {', '.join(missing)}"
        )
    return columns


class DelimitedParser(BaseParser):
    """Parse CSV bank statements with a header row."""

    def parse(self, statement: RawStatement) -> list[CandidateRecord]:
        text = decode_text(statement.content)
        self.skipped_count = 0

        lines = text.splitlines()
        while lines and not lines[0].strip():
            lines.pop(0)
        if not lines:
            raise FormatError("CSV statement is empty")

        separator = detect_separator(lines[0])
        reader = csv.reader(io.StringIO("\n".join(lines)), delimiter=separator)
        header = next(reader)
        columns = resolve_columns(header)

        records: list[CandidateRecord] = []
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            record = self._parse_row(row, columns)
            if record is not None:
                records.append(record)
            else:
                self.skipped_count += 1

        if self.skipped_count:
            logger.warning("Skipped %d CSV row(s)", self.skipped_count)
        return records

    @staticmethod
    def _parse_row(row: list[str], columns: dict[str, int]) -> CandidateRecord | None:
        try:
            date_str = row[columns["date"]].strip()
            description = row[columns["description"]].strip().strip('"')
            amount_str = row[columns["amount"]].strip()
        except IndexError:
            return None
        if not date_str or not description or not amount_str:
            return None

        date = parse_statement_date(date_str)
        if date is None:
            return None

        try:
            amount = parse_amount(amount_str)
        except ValueError:
            return None
        if amount == 0:
            return None

        return make_candidate(date, description, amount)
