from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

CellValue = Optional[Union[str, int, float]]


class TableSummary(BaseModel):
    table_name: str
    display_name: str
    columns: List[str]
    row_count: int
    created_at: str


class ImportResponse(BaseModel):
    status: str = "imported"
    table_name: str
    display_name: str
    columns: List[str]
    rows_imported: int


class RowUpdatePayload(BaseModel):
    row_id: int
    data: Dict[str, CellValue] = Field(default_factory=dict)


class RowDeletePayload(BaseModel):
    row_id: int


class TableData(BaseModel):
    table_name: str
    display_name: str
    columns: List[str]
    rows: List[Dict[str, Any]]
