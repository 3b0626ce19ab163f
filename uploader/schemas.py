from pydantic import BaseModel


class UploadObjectResponse(BaseModel):
    key: str
    status: str


class ListObjectsResponse(BaseModel):
    keys: list[str]
    truncated: bool


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    trace_id: str | None = None
