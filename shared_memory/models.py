"""
Record models - pydantic models for everything the store persists or returns.

Fields are snake_case in Python and camelCase on the wire and on disk, so
log files written by earlier versions of the store keep decoding.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Environment = Literal["dev", "test", "staging", "prod"]
RecordKind = Literal["conversation", "operational"]

ENVIRONMENTS: tuple[str, ...] = ("dev", "test", "staging", "prod")

# Fallback search has no real metric; every hit gets this distance.
FALLBACK_DISTANCE = 0.5


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: int | None = None
    tags: list[str] = Field(default_factory=list)
    domain: str | None = None

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class ConversationRecord(_Record):
    """One user/assistant exchange within a session."""

    session_id: str = Field(min_length=1)
    user_message: str = ""
    assistant_response: str = ""
    context: list[str] = Field(default_factory=list)

    @property
    def primary_key(self) -> str:
        return self.session_id

    def document(self) -> str:
        return f"User: {self.user_message}\nAssistant: {self.assistant_response}"


class OperationalRecord(_Record):
    """An incident report: what was seen, why, and how it was fixed."""

    incident_id: str = Field(min_length=1)
    symptoms: list[str] = Field(min_length=1)
    environment: Environment
    root_cause: str | None = None
    resolution: str | None = None
    affected_resources: list[str] = Field(default_factory=list)
    diagnostic_steps: list[str] = Field(default_factory=list)

    @property
    def primary_key(self) -> str:
        return self.incident_id

    def document(self) -> str:
        return (
            f"Symptoms: {', '.join(self.symptoms)}\n"
            f"Root Cause: {self.root_cause or 'Unknown'}\n"
            f"Resolution: {self.resolution or 'Pending'}\n"
            f"Diagnostic Steps: {', '.join(self.diagnostic_steps)}"
        )


def memory_id(record: ConversationRecord | OperationalRecord) -> str:
    """Build the `<primaryKey>_<timestamp>` identifier for a stamped record."""
    return f"{record.primary_key}_{record.timestamp}"


class SearchResult(BaseModel):
    """
    A single search hit.

    `distance` comes from the similarity backend; lower is closer. Results
    served by the fallback engine carry FALLBACK_DISTANCE and are ordered by
    recency, so callers must not read ranking into them.
    """

    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    distance: float = Field(ge=0)
    kind: RecordKind

    @property
    def similarity(self) -> float:
        return 1 - self.distance


class SessionContext(BaseModel):
    """Aggregate view of a session's stored conversations."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    message_count: int = 0
    domains: list[str] = Field(default_factory=list)
    common_tags: list[str] = Field(default_factory=list)
    last_activity: int | None = None
    summary: str = "No previous context found"


# =========================================================================
# Metadata filters
# =========================================================================


@dataclass(frozen=True)
class _ExactMatchFilter:
    """Exact-match conjunction over a fixed set of metadata fields."""

    def _terms(self) -> dict[str, str]:
        raise NotImplementedError

    def where(self) -> dict[str, Any] | None:
        """Render as a ChromaDB `where` clause, or None when empty."""
        terms = self._terms()
        if not terms:
            return None
        if len(terms) == 1:
            return terms
        return {"$and": [{key: value} for key, value in terms.items()]}

    def matches(self, data: dict[str, Any]) -> bool:
        """Evaluate against a decoded record or metadata dict."""
        return all(data.get(key) == value for key, value in self._terms().items())


@dataclass(frozen=True)
class ConversationFilter(_ExactMatchFilter):
    session_id: str | None = None

    def _terms(self) -> dict[str, str]:
        return {"sessionId": self.session_id} if self.session_id else {}


@dataclass(frozen=True)
class OperationalFilter(_ExactMatchFilter):
    environment: str | None = None
    domain: str | None = None

    def _terms(self) -> dict[str, str]:
        terms = {}
        if self.environment:
            terms["environment"] = self.environment
        if self.domain:
            terms["domain"] = self.domain
        return terms
