from __future__ import annotations

import pytest

from conftest import memory_dataset_store
from src.errors import DataError
from src.ingestion.parsers import parse_csv
from src.ingestion.pipeline import DatasetImportPipeline


def test_parse_csv_skips_blank_lines_and_strips_cells():
    header, rows = parse_csv(b"\xef\xbb\xbfName , Price\n\nApple, 1500\n Banana ,900\n")

    assert header == ["Name", "Price"]
    assert rows == [["Apple", "1500"], ["Banana", "900"]]


def test_parse_csv_rejects_empty_and_non_utf8():
    with pytest.raises(DataError):
        parse_csv(b"\n\n")
    with pytest.raises(DataError):
        parse_csv(b"\xff\xfe\x00bad")


def test_pipeline_creates_table_and_imports_rows():
    store = memory_dataset_store()
    pipeline = DatasetImportPipeline(store)

    result = pipeline.run(
        tenant_id="tenant-a",
        display_name="Price List",
        filename="prices.csv",
        content=b"Name,Unit Price\nApple,1500\nBanana,900\n",
    )

    assert result.rows_imported == 2
    assert result.columns == ["name", "unit_price"]
    assert result.table_name.startswith("dt_price_list_")
    rows = store.list_rows("tenant-a", result.table_name)
    assert rows[1] == {"id": 2, "name": "Banana", "unit_price": "900"}


def test_pipeline_uses_filename_when_display_name_missing():
    store = memory_dataset_store()
    result = DatasetImportPipeline(store).run(
        tenant_id="tenant-a", display_name="", filename="stock.csv", content="sku\nA1\n"
    )

    assert result.display_name == "stock"


def test_ragged_row_rejects_whole_upload():
    store = memory_dataset_store()
    pipeline = DatasetImportPipeline(store)

    with pytest.raises(DataError) as excinfo:
        pipeline.run(
            tenant_id="tenant-a",
            display_name="Broken",
            filename="broken.csv",
            content=b"a,b\n1,2\n3\n",
        )

    assert "Row 1" in excinfo.value.message
    assert store.list_tables("tenant-a") == []


def test_pipeline_enforces_extension_and_size():
    pipeline = DatasetImportPipeline(memory_dataset_store(), max_bytes=10)

    with pytest.raises(DataError):
        pipeline.run(tenant_id="t", display_name="x", filename="data.xlsx", content=b"a")
    with pytest.raises(DataError):
        pipeline.run(tenant_id="t", display_name="x", filename="data.csv", content=b"a" * 11)
