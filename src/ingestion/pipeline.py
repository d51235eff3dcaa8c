from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Union

from src.errors import DataError
from src.ingestion.parsers import parse_csv
from src.services.datasets import DatasetStore

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    table_name: str
    display_name: str
    columns: List[str]
    rows_imported: int


class DatasetImportPipeline:
    """Turns an uploaded CSV into a new tenant dataset, all or nothing."""

    def __init__(self, datasets: DatasetStore, max_bytes: int = 10 * 1024 * 1024) -> None:
        self._datasets = datasets
        self._max_bytes = max_bytes

    def run(
        self,
        *,
        tenant_id: str,
        display_name: str,
        filename: str,
        content: Union[bytes, str],
    ) -> ImportResult:
        if not (filename or "").lower().endswith(".csv"):
            raise DataError("Only .csv files are supported")
        if len(content) > self._max_bytes:
            raise DataError(f"File exceeds the {self._max_bytes // (1024 * 1024)} MB upload limit")

        header, rows = parse_csv(content)
        name = (display_name or "").strip() or filename.rsplit(".", 1)[0]
        table_id = self._datasets.create_table(tenant_id, name, header)
        try:
            count = self._datasets.import_rows(tenant_id, table_id, rows)
        except DataError:
            self._datasets.delete_table(tenant_id, table_id)
            logger.warning(
                "Import rejected, table removed",
                extra={"tenant_id": tenant_id, "table_id": table_id},
            )
            raise

        table = self._datasets.get_table(tenant_id, table_id)
        logger.info(
            "Dataset imported",
            extra={"tenant_id": tenant_id, "table_id": table_id, "rows": count},
        )
        return ImportResult(
            table_name=table_id,
            display_name=table.display_name,
            columns=list(table.columns),
            rows_imported=count,
        )
