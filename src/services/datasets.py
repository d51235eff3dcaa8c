from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from src.errors import DataError, NotFound, TenantMismatch

logger = logging.getLogger(__name__)

CellValue = Optional[Any]
_ALLOWED_TYPES = (str, int, float, type(None))
_COLUMN_PATTERN = re.compile(r"[^a-zA-Z0-9_]")


def sanitize_column(name: str, position: int) -> str:
    cleaned = _COLUMN_PATTERN.sub("_", (name or "").strip()).lower()
    return cleaned or f"col_{position}"


def sanitize_columns(names: Sequence[str]) -> Tuple[str, ...]:
    seen: Dict[str, int] = {}
    result: List[str] = []
    for position, name in enumerate(names):
        column = sanitize_column(name, position)
        if column == "id":
            column = "id_"
        if column in seen:
            seen[column] += 1
            column = f"{column}_{seen[column]}"
        seen.setdefault(column, 0)
        result.append(column)
    return tuple(result)


def _slug(display_name: str) -> str:
    slug = _COLUMN_PATTERN.sub("_", display_name.strip()).lower().strip("_")
    return slug[:40] or "table"


def _check_value(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, _ALLOWED_TYPES)


@dataclass
class Dataset:
    table_id: str
    tenant_id: str
    display_name: str
    columns: Tuple[str, ...]
    row_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def row_dict(self, row_id: int, values: Mapping[str, CellValue]) -> Dict[str, CellValue]:
        record: Dict[str, CellValue] = {"id": row_id}
        record.update((column, values.get(column)) for column in self.columns)
        return record

    def summary(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_id,
            "display_name": self.display_name,
            "columns": list(self.columns),
            "row_count": self.row_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SearchHit:
    table_id: str
    display_name: str
    row: Dict[str, CellValue]


class DatasetStore:
    """Tenant-scoped tables with dynamic columns and immutable row ids.

    Table metadata and rows live in two collections. Row ids come from a
    per-table counter that is only ever incremented, so ids of deleted rows
    are never handed out again.
    """

    def __init__(self, tables, rows) -> None:
        self._tables = tables
        self._rows = rows

    @staticmethod
    def _from_document(document: Dict[str, Any], row_count: int = 0) -> Dataset:
        return Dataset(
            table_id=document["table_id"],
            tenant_id=document["tenant_id"],
            display_name=document.get("display_name", document["table_id"]),
            columns=tuple(document.get("columns", ())),
            row_count=row_count,
            created_at=document.get("created_at") or datetime.now(UTC),
        )

    def _owned(self, tenant_id: str, table_id: str) -> Dataset:
        document = self._tables.find_one({"table_id": table_id})
        if document is None:
            raise NotFound(f"Table '{table_id}' not found")
        if document["tenant_id"] != tenant_id:
            logger.warning(
                "Cross-tenant table access rejected",
                extra={"tenant_id": tenant_id, "table_id": table_id},
            )
            raise TenantMismatch()
        return self._from_document(document)

    def _with_count(self, document: Dict[str, Any]) -> Dataset:
        return self._from_document(document, self._rows.count_documents({"table_id": document["table_id"]}))

    def create_table(self, tenant_id: str, display_name: str, columns: Sequence[str]) -> str:
        if not display_name or not display_name.strip():
            raise DataError("Display name is required")
        if not columns:
            raise DataError("A table needs at least one column")
        sanitized = sanitize_columns(columns)
        now = datetime.now(UTC)
        table_id = f"dt_{_slug(display_name)}_{now.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:6]}"
        self._tables.insert_one(
            {
                "table_id": table_id,
                "tenant_id": tenant_id,
                "display_name": display_name.strip(),
                "columns": list(sanitized),
                "next_row_id": 1,
                "created_at": now,
            }
        )
        logger.info(
            "Dataset created",
            extra={"tenant_id": tenant_id, "table_id": table_id, "columns": len(sanitized)},
        )
        return table_id

    def _normalize_row(self, dataset: Dataset, index: int, row: Any) -> Dict[str, CellValue]:
        if isinstance(row, Mapping):
            unknown = [key for key in row if key not in dataset.columns]
            if unknown:
                raise DataError(f"Row {index}: unknown columns {sorted(unknown)}")
            values = [row.get(column, "") for column in dataset.columns]
        elif isinstance(row, (list, tuple)):
            if len(row) != len(dataset.columns):
                raise DataError(
                    f"Row {index}: expected {len(dataset.columns)} values, got {len(row)}"
                )
            values = list(row)
        else:
            raise DataError(f"Row {index}: unsupported row type {type(row).__name__}")

        for value in values:
            if not _check_value(value):
                raise DataError(f"Row {index}: unsupported value type {type(value).__name__}")
        return dict(zip(dataset.columns, values))

    def import_rows(self, tenant_id: str, table_id: str, rows: Iterable[Any]) -> int:
        dataset = self._owned(tenant_id, table_id)
        prepared = [self._normalize_row(dataset, index, row) for index, row in enumerate(rows)]
        if not prepared:
            return 0

        counter = self._tables.find_one_and_update(
            {"table_id": table_id, "tenant_id": tenant_id},
            {"$inc": {"next_row_id": len(prepared)}},
            return_document=ReturnDocument.BEFORE,
        )
        if counter is None:
            raise NotFound(f"Table '{table_id}' not found")
        first = counter["next_row_id"]
        documents = [
            {"table_id": table_id, "tenant_id": tenant_id, "row_id": first + offset, "values": values}
            for offset, values in enumerate(prepared)
        ]
        try:
            self._rows.insert_many(documents)
        except PyMongoError:
            self._rows.delete_many({"table_id": table_id, "row_id": {"$gte": first, "$lt": first + len(documents)}})
            logger.error(
                "Row import failed, partial rows removed",
                extra={"tenant_id": tenant_id, "table_id": table_id},
            )
            raise
        logger.info(
            "Rows imported",
            extra={"tenant_id": tenant_id, "table_id": table_id, "count": len(documents)},
        )
        return len(documents)

    def list_rows(self, tenant_id: str, table_id: str) -> List[Dict[str, CellValue]]:
        dataset = self._owned(tenant_id, table_id)
        documents = self._rows.find({"table_id": table_id}, sort=[("row_id", ASCENDING)])
        return [dataset.row_dict(document["row_id"], document.get("values", {})) for document in documents]

    def update_row(
        self,
        tenant_id: str,
        table_id: str,
        row_id: int,
        values: Mapping[str, CellValue],
    ) -> Dict[str, CellValue]:
        dataset = self._owned(tenant_id, table_id)
        changes: Dict[str, CellValue] = {}
        for column in dataset.columns:
            if column not in values:
                continue
            value = values[column]
            if not _check_value(value):
                raise DataError(f"Unsupported value type for column '{column}'")
            changes[f"values.{column}"] = value

        query = {"table_id": table_id, "row_id": row_id}
        if changes:
            document = self._rows.find_one_and_update(
                query, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        else:
            document = self._rows.find_one(query)
        if document is None:
            raise NotFound(f"Row {row_id} not found")
        return dataset.row_dict(row_id, document.get("values", {}))

    def delete_row(self, tenant_id: str, table_id: str, row_id: int) -> None:
        self._owned(tenant_id, table_id)
        result = self._rows.delete_one({"table_id": table_id, "row_id": row_id})
        if not result.deleted_count:
            raise NotFound(f"Row {row_id} not found")

    def delete_table(self, tenant_id: str, table_id: str) -> None:
        self._owned(tenant_id, table_id)
        self._rows.delete_many({"table_id": table_id})
        self._tables.delete_one({"table_id": table_id})
        logger.info("Dataset deleted", extra={"tenant_id": tenant_id, "table_id": table_id})

    def get_table(self, tenant_id: str, table_id: str) -> Dataset:
        dataset = self._owned(tenant_id, table_id)
        dataset.row_count = self._rows.count_documents({"table_id": table_id})
        return dataset

    def list_tables(self, tenant_id: str) -> List[Dataset]:
        documents = self._tables.find({"tenant_id": tenant_id}, sort=[("created_at", DESCENDING)])
        return [self._with_count(document) for document in documents]

    def find_table(self, tenant_id: str, reference: str) -> Dataset:
        """Resolve a table by id, falling back to a case-insensitive display name."""
        if self._tables.find_one({"table_id": reference}) is not None:
            return self._owned(tenant_id, reference)
        lowered = reference.strip().lower()
        for table in self.list_tables(tenant_id):
            if table.display_name.lower() == lowered:
                return table
        raise NotFound(f"Table '{reference}' not found")

    def search(self, tenant_id: str, query: str, limit: int = 5) -> List[SearchHit]:
        needle = query.strip().lower()
        if not needle or limit <= 0:
            return []
        hits: List[SearchHit] = []
        for table in self.list_tables(tenant_id):
            for row in self.list_rows(tenant_id, table.table_id):
                if any(needle in str(value).lower() for key, value in row.items() if key != "id" and value is not None):
                    hits.append(SearchHit(table_id=table.table_id, display_name=table.display_name, row=row))
                    if len(hits) >= limit:
                        return hits
        return hits
