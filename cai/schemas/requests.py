from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .enums import ProcessingMode, ResponseFormat


class RequestMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    urgency: float | None = Field(default=None, ge=0.0, le=1.0, description="Caller-declared urgency")
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    deadline: datetime | None = None
    accepted_formats: list[ResponseFormat | str] = Field(default_factory=list)
    aspects: list[str] = Field(default_factory=list, description="Aspects the response should address")
    preferred_mode: ProcessingMode | None = None
    accuracy: Literal["standard", "high"] = "standard"
    multi_step: bool = False

    def routing_key(self) -> dict[str, Any]:
        """Fields that influence feature scoring, used to key the routing cache."""
        return {
            "urgency": self.urgency,
            "priority": self.priority,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "accuracy": self.accuracy,
            "multi_step": self.multi_step,
        }


class Request(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    content: str | dict[str, Any] | None = None
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, sort_keys=True, default=str)

    @property
    def is_blank(self) -> bool:
        if self.content is None:
            return True
        if isinstance(self.content, str):
            return not self.content.strip()
        return not self.content

    def with_context(self, **updates: Any) -> "Request":
        """Return a copy whose context carries ``updates`` on top of the current entries."""
        merged = {**self.context, **updates}
        return self.model_copy(update={"context": merged})


__all__ = ["Request", "RequestMetadata"]
