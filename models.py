"""
Relay API Models
Provider/task enumerations and request/response schemas using Pydantic.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ProviderTag(str, Enum):
    """Upstream completion providers. The value is the stable lowercase form."""

    OPENAI = "openai"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    CLAUDE = "claude"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def _missing_(cls, value):
        # Case-insensitive construction, so JSON "OPENAI" and "openai" both validate.
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional["ProviderTag"]:
        """Case-insensitive parse. Returns None for unknown or missing input."""
        if text is None:
            return None
        try:
            return cls(text)
        except ValueError:
            return None


class TaskTag(str, Enum):
    """Task hints used to pick a preferred provider."""

    TEXT_GENERATION = "text_generation"
    SUMMARIZATION = "summarization"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    QUESTION_ANSWERING = "question_answering"
    OTHER = "other"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @classmethod
    def parse(cls, text: Optional[str]) -> "TaskTag":
        """Unknown or missing input maps to OTHER."""
        if text is None:
            return cls.OTHER
        try:
            return cls(text)
        except ValueError:
            return cls.OTHER


class _CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class QueryRequest(_CamelModel):
    """Schema for POST /api/query requests."""

    # Optional so that empty/oversized queries are reported by the pipeline as
    # validation_error (400) rather than by FastAPI as 422.
    query: Optional[str] = Field(default=None, description="Prompt to forward upstream")
    model: Optional[ProviderTag] = Field(default=None, description="Preferred provider")
    model_version: Optional[str] = Field(default=None, description="Provider-specific model version")
    task_type: Optional[TaskTag] = Field(default=None, description="Task hint for routing")
    request_id: Optional[str] = Field(default=None, description="Client-supplied request id")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "query": "Summarize the plot of Hamlet in two sentences.",
                "model": "claude",
                "modelVersion": "claude-3-haiku",
                "taskType": "summarization",
            }
        },
    )

    @field_validator("model", mode="before")
    @classmethod
    def _lenient_model(cls, value):
        if value is None or isinstance(value, ProviderTag):
            return value
        return ProviderTag.parse(str(value))

    @field_validator("task_type", mode="before")
    @classmethod
    def _lenient_task_type(cls, value):
        if value is None or isinstance(value, TaskTag):
            return value
        return TaskTag.parse(str(value))


class QueryResponse(_CamelModel):
    """Schema for POST /api/query responses (success path)."""

    response: Optional[str] = None
    model: Optional[ProviderTag] = None
    original_model: Optional[ProviderTag] = None
    response_time_ms: int = 0
    timestamp: Optional[datetime] = None
    cached: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    num_tokens: int = 0  # Deprecated: same as total_tokens
    num_retries: int = 0
    request_id: Optional[str] = None


class ErrorResponse(_CamelModel):
    """Failure body shared by every endpoint."""

    error: str
    error_type: str
    model: Optional[ProviderTag] = None
    request_id: Optional[str] = None
    timestamp: datetime


class StatusResponse(BaseModel):
    """Schema for GET /api/status responses."""

    openai: bool = False
    gemini: bool = False
    mistral: bool = False
    claude: bool = False


class HealthResponse(BaseModel):
    """Schema for GET /api/health responses."""

    status: str
    timestamp: datetime


class DownloadRequest(BaseModel):
    """Schema for POST /api/download requests."""

    response: Optional[str] = None
    format: Optional[str] = "txt"
