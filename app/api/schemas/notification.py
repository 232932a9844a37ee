from pydantic import BaseModel


class DismissRequest(BaseModel):
    ids: list[str]


class SyncReportResponse(BaseModel):
    synced: int
    failed: int
    errors: dict[str, str] = {}
