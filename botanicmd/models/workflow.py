"""
Identification workflow models.

An IdentificationAttempt is owned by exactly one IdentificationWorkflow and is
replaced, never reused, when the user starts over.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from botanicmd.models.plant import Candidate, PlantRecord


class Phase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    SELECTING = "selecting"
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(str, Enum):
    """User-facing error taxonomy."""

    NETWORK = "network"
    ANALYSIS_FAILED = "analysis_failed"
    MALFORMED_RESPONSE = "malformed_response"
    NOT_FOUND = "not_found"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNAUTHENTICATED = "unauthenticated"
    UNEXPECTED = "unexpected"


class ClassifiedError(BaseModel):
    kind: ErrorKind
    message: str


class ImageInput(BaseModel):
    kind: Literal["image"] = "image"
    data: bytes = Field(repr=False)
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


class TextInput(BaseModel):
    kind: Literal["text"] = "text"
    query: str


IdentificationInput = ImageInput | TextInput


class IntakeDecision(BaseModel):
    """Result of intake validation: accepted, or rejected with a reason."""

    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> "IntakeDecision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> "IntakeDecision":
        return cls(accepted=False, reason=reason)


class IdentificationAttempt(BaseModel):
    """One user-initiated identification request.

    Once the phase leaves IDLE exactly one of ``result``, ``error`` or a
    non-empty unresolved ``candidates`` list is populated (ANALYZING excepted,
    which holds none of them while a call is in flight).
    """

    sequence: int = 0
    input: IdentificationInput | None = None
    phase: Phase = Phase.IDLE
    result: PlantRecord | None = None
    error: ClassifiedError | None = None
    candidates: list[Candidate] = Field(default_factory=list)
    started_at: datetime | None = None


class HistoryEntry(BaseModel):
    """Lightweight record of a successful identification."""

    id: str
    plant_name: str
    scientific_name: str | None = None
    date: datetime
    type: Literal["image", "text"]
    query: str | None = None
    result: Literal["success", "error"] = "success"
