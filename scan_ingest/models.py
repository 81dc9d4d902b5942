"""
Data models for the Image Scan Ingest service.
"""

from enum import Enum
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator
from . import __version__
from .tags import normalize_tag_name


class TagObservation(BaseModel):
    """A single tag reported by the scanner for an image."""
    tag: str
    confidence: float = Field(allow_inf_nan=False)
    id: Optional[int] = None  # ignored on input, filled in by resolution

    @field_validator("tag")
    @classmethod
    def canonical_name(cls, v: str) -> str:
        return normalize_tag_name(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def numeric_confidence(cls, v):
        # bool is an int subclass; a JSON true/false is not a confidence
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("confidence must be a number")
        return v


class ScanResultEvent(BaseModel):
    """Scan result delivered by the external classifier webhook."""
    model_config = ConfigDict(populate_by_name=True)

    id: StrictInt = Field(ge=-2**31, le=2**31 - 1)  # range of the images.id column
    is_valid: StrictBool = Field(alias="isValid")
    tags: Optional[List[TagObservation]] = None


class ResolvedTag(BaseModel):
    """A deduplicated observation paired with its stored tag id."""
    name: str
    tag_id: int
    confidence: float = Field(allow_inf_nan=False)


class ResultStatus(str, Enum):
    """Outcome of processing one scan event."""
    OK = "Ok"
    BAD_REQUEST = "BadRequest"
    NOT_FOUND = "NotFound"
    SERVER_FAULT = "ServerFault"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ResultStatus.OK: 200,
    ResultStatus.BAD_REQUEST: 400,
    ResultStatus.NOT_FOUND: 404,
    ResultStatus.SERVER_FAULT: 500,
}


class ProcessingResult(BaseModel):
    """Result of processing a scan event."""
    image_id: Optional[int] = None
    status: ResultStatus = ResultStatus.OK
    message: Optional[str] = None
    purged: bool = False
    tags_applied: List[str] = []
    processing_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.OK

    def to_response(self) -> Dict[str, Any]:
        """Body returned to the webhook caller."""
        if self.ok:
            return {"ok": True}
        return {"error": self.message or self.status.value}


class HealthStatus(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__
    metrics: Dict[str, Any] = {}
