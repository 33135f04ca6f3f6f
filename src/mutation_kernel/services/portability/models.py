"""
Data Portability Domain Models

A user may ask for a copy of their data (export) or for its deletion
(erase). Both are tracked as ExportRequest rows.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class RequestType(str, Enum):
    EXPORT = "export"
    ERASE = "erase"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class ExportStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ExportRequest(BaseModel):
    request_id: str = Field(..., description="Unique export/erase request identifier")
    user_id: str
    request_type: RequestType
    format: str = ""
    status: ExportStatus
    reason: str = ""
    requested_at: datetime
    completed_at: datetime | None = None
    download_url: str = ""

    model_config = {"frozen": True}


class CreateExportInput(BaseModel):
    """user_id defaults to the caller; format defaults to json"""

    user_id: str = ""
    format: str = ""

    @field_validator("user_id")
    @classmethod
    def strip_user(cls, v: str) -> str:
        return v.strip()

    @field_validator("format")
    @classmethod
    def normalize_format(cls, v: str) -> str:
        return v.strip().lower()


class EraseInput(BaseModel):
    user_id: str = ""
    reason: str = ""

    @field_validator("user_id", "reason")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class ExportCompletedPayload(BaseModel):
    request_id: str
    user_id: str
    request_type: str
    format: str = ""
    completed_at: datetime
