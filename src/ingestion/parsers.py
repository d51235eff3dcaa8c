from __future__ import annotations

import csv
import io
from typing import List, Tuple, Union

from src.errors import DataError


def decode_upload(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DataError("CSV file must be UTF-8 encoded") from exc


def parse_csv(content: Union[bytes, str]) -> Tuple[List[str], List[List[str]]]:
    """Split a CSV document into its header and data rows.

    Blank lines are skipped. Rows are returned as read; rows whose width
    differs from the header are rejected later by the dataset store.
    """
    text = decode_upload(content)
    try:
        records = [row for row in csv.reader(io.StringIO(text), strict=True) if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise DataError(f"Malformed CSV: {exc}") from exc

    if not records:
        raise DataError("CSV file is empty")
    header = [cell.strip() for cell in records[0]]
    rows = [[cell.strip() for cell in row] for row in records[1:]]
    return header, rows
