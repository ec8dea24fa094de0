from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

SESSION_PENDING = "pending"
SESSION_PROCESSING = "processing"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"

SESSION_STATUSES = (SESSION_PENDING, SESSION_PROCESSING, SESSION_COMPLETED, SESSION_FAILED)

NIL_SESSION_ID = uuid.UUID(int=0)


class Session(BaseModel):
    """One job-matching request as published by the upstream producer."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    created_at: datetime | None = None
    name: str = ""
    user_id: uuid.UUID | None = None
    status: str = SESSION_PENDING
    job_title: str = ""
    job_description: str = ""


@dataclass(frozen=True)
class ResumeRef:
    id: str
    session_id: str
    object_key: str
    mime: str
    original_filename: str = ""


class DocumentVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    candidate_email: str = ""
    match_score: int = 0
    relevant_experiences: list[str] = Field(default_factory=list)
    relevant_skills: list[str] = Field(default_factory=list)
    missing_skills: list[str] = Field(default_factory=list)
    summary: str = ""
    recommendation: str = ""
    is_error: bool = Field(default=False, alias="is_error_result")
    error_message: str = Field(default="", alias="error")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Oracles emit null for fields they could not fill.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @classmethod
    def failure(cls, message: str) -> DocumentVerdict:
        return cls(is_error=True, error_message=message)

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        if not data.get("error"):
            data.pop("error", None)
        return data


@dataclass
class SessionResultSet:
    session_id: str
    results: list[DocumentVerdict] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def to_json(self) -> str:
        return json.dumps([v.to_wire() for v in self.results], ensure_ascii=True)


@dataclass(frozen=True)
class StatusEvent:
    session_id: str
    status: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def routing_key(self) -> str:
        return f"session.{self.session_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
