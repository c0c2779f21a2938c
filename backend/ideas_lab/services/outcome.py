from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

ACCEPTED = "accepted"
DUPLICATE = "duplicate"
REJECTED = "rejected"


@dataclass
class CommandOutcome:
    """Result of a console command. Errors are reported here, never raised."""

    status: str
    job_id: str | None = None
    artifact_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    http_status: int | None = None
    field_errors: dict[str, str] = field(default_factory=dict)
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.status in (ACCEPTED, DUPLICATE)

    @classmethod
    def accepted(cls, **kwargs) -> CommandOutcome:
        return cls(status=ACCEPTED, **kwargs)

    @classmethod
    def duplicate(cls, **kwargs) -> CommandOutcome:
        return cls(status=DUPLICATE, **kwargs)

    @classmethod
    def rejected(cls, error: str, **kwargs) -> CommandOutcome:
        return cls(status=REJECTED, error=error, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.ok,
            "status": self.status,
            "jobId": self.job_id,
            "artifactId": self.artifact_id,
            "error": self.error,
            "errorCode": self.error_code,
        }
        if self.field_errors:
            payload["fieldErrors"] = self.field_errors
        if self.data is not None:
            payload["data"] = (
                self.data.model_dump(by_alias=True, mode="json") if isinstance(self.data, BaseModel) else self.data
            )
        return payload
