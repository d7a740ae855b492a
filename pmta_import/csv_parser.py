"""CSV normalisation for PowerMTA accounting files.

The accounting files are loosely structured: quoting is inconsistent and rows
may be short or long compared to the header. Rows are therefore never rejected;
each is mapped onto the header shape as well as possible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles

from .errors import ParseFailureError
from .logger import get_logger
from .models import Record


@dataclass(frozen=True)
class ParsedFile:
    headers: Tuple[str, ...]
    records: Tuple[Record, ...]

    @property
    def record_count(self) -> int:
        return len(self.records)


def _clean(value: str) -> str:
    value = value.strip()
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return value.strip()


def split_line(line: str) -> List[str]:
    """Split one CSV line, honouring commas inside double-quoted spans.

    ``""`` inside a quoted span is a literal quote. Quote characters delimiting
    a span are dropped and every field is trimmed.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)
    while i < length:
        char = line[i]
        if char == '"':
            if in_quotes and i + 1 < length and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            fields.append(_clean("".join(current)))
            current = []
        else:
            current.append(char)
        i += 1
    fields.append(_clean("".join(current)))
    return fields


class CsvNormalizer:
    """Turn accounting CSV text into header-keyed :class:`Record` objects."""

    def __init__(self, *, encoding: str = "utf-8-sig", decode_errors: str = "strict", logger: Optional[logging.Logger] = None):
        self.encoding = encoding
        self.decode_errors = decode_errors
        self.logger = logger or get_logger()

    def parse_text(self, text: str, filename: str) -> ParsedFile:
        """Parse already decoded text; ``filename`` is stamped on every record."""
        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            return ParsedFile(headers=(), records=())

        headers = tuple(split_line(lines[0].lstrip("\ufeff")))
        records = tuple(
            self._build_record(headers, split_line(line), filename, line_number)
            for line_number, line in enumerate(lines[1:], start=1)
        )
        return ParsedFile(headers=headers, records=records)

    @staticmethod
    def _build_record(headers: Sequence[str], values: Sequence[str], filename: str, line_number: int) -> Record:
        fields = {header: (values[idx] if idx < len(values) else "") for idx, header in enumerate(headers)}
        return Record(fields=fields, filename=filename, line_number=line_number)

    async def parse(self, path: str | Path) -> ParsedFile:
        """Read ``path`` and parse it.

        Raises:
            ParseFailureError: the file is missing, unreadable or not decodable.
        """
        path = Path(path)
        try:
            async with aiofiles.open(path, mode="r", encoding=self.encoding, errors=self.decode_errors) as f:
                text = await f.read()
        except UnicodeDecodeError as exc:
            raise ParseFailureError(path.name, f"cannot decode as {self.encoding}: {exc.reason}") from exc
        except OSError as exc:
            raise ParseFailureError(path.name, exc.strerror or str(exc)) from exc

        parsed = self.parse_text(text, path.name)
        self.logger.info("Parsed %s: %d records", path.name, parsed.record_count)
        return parsed
