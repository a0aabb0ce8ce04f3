from typing import Any

from pydantic import BaseModel, Field


class FieldViolationRead(BaseModel):
    field: str
    code: str
    message: str
    limit: str | None = None


class ErrorResponse(BaseModel):
    detail: Any
    code: str | None = None
    errors: list[FieldViolationRead] = Field(default_factory=list)
