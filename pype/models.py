"""Internal data models for pype.

All models use Pydantic v2. Descriptors are what callers build; envelopes are
what every Fitting invocation hands back.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")

DEFAULT_CONTENT_TYPE = "application/json"


# =============================================================================
# Enumerations
# =============================================================================


class Method(str, Enum):
    """HTTP methods a Fitting can issue."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


# Methods whose parameters are serialized into the request body
BODY_METHODS = frozenset({Method.POST, Method.PUT})


class Health(str, Enum):
    """Binary outcome of one invocation."""

    GOOD = "Good"
    BAD = "Bad"


class FailureKind(str, Enum):
    """Why an invocation ended with Bad health."""

    TIMEOUT = "timeout"
    SECURE_CHANNEL_FAILURE = "secure_channel_failure"
    PROTOCOL_ERROR = "protocol_error"
    UNKNOWN_TRANSPORT_FAILURE = "unknown_transport_failure"
    GENERIC_FAILURE = "generic_failure"


# =============================================================================
# Request Descriptor
# =============================================================================


class FittingRequest(BaseModel):
    """One outbound request, as described by the caller.

    Required fields are not enforced here so descriptors can be filled in
    incrementally; Fitting.prepare checks base_path and method before any I/O.
    """

    model_config = ConfigDict(extra="forbid")

    base_path: str = Field(default="", description="API base path, e.g. https://xkcd.com")
    suffix: str = Field(default="", description="Appended verbatim to base_path")
    method: Method | None = Field(default=None, description="HTTP method")
    content_type: str = Field(
        default="", description=f"Content-Type header; {DEFAULT_CONTENT_TYPE} when empty"
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Additional headers, applied in insertion order"
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict, description="Body parameters for POST and PUT"
    )

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @property
    def url(self) -> str:
        """Target address: base path and suffix concatenated verbatim."""
        return f"{self.base_path}{self.suffix}"

    @property
    def effective_content_type(self) -> str:
        return self.content_type or DEFAULT_CONTENT_TYPE


# =============================================================================
# Response Envelope
# =============================================================================


class FittingResponseStatus(BaseModel):
    """Health and UTC timestamps of one invocation.

    request_utc is stamped before transmission starts. response_utc is stamped
    once, as the last step of the pipeline, on success and failure alike.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    health: Health | None = Field(default=None, description="Good or Bad once finalized")
    request_utc: datetime = Field(alias="requestUtcDateTime", description="When the request started")
    response_utc: datetime | None = Field(
        default=None, alias="responseUtcDateTime", description="When the pipeline finished"
    )


class FittingResponse(BaseModel, Generic[T]):
    """The envelope returned by every Fitting invocation.

    On Good health, result holds the decoded payload. On Bad health, result is
    None and failure_kind, diagnostic and exception describe what went wrong.
    """

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    status: FittingResponseStatus = Field(description="Always present and timestamped")
    result: T | None = Field(default=None, description="Decoded payload on success")
    failure_kind: FailureKind | None = Field(
        default=None, alias="failureKind", description="Failure classification"
    )
    diagnostic: str | None = Field(default=None, description="Fixed diagnostic message")
    exception: BaseException | None = Field(
        default=None, exclude=True, description="The exception that caused the failure"
    )

    @property
    def is_good(self) -> bool:
        return self.status.health == Health.GOOD


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class TransportConfig(BaseModel):
    """Settings for the httpx transport."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify server certificates")
    ca_bundle: str | None = Field(default=None, description="Path to a CA bundle for verification")
    follow_redirects: bool = Field(default=True, description="Follow 3xx redirects")


class LoggingConfig(BaseModel):
    """Settings passed to configure_logging."""

    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO", description="Log level name")
    json_output: bool | None = Field(
        default=None, description="JSON lines instead of console output (None: use LOG_FORMAT)"
    )


class RuntimeConfig(BaseModel):
    """Top-level runtime configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    transport: TransportConfig = Field(default_factory=TransportConfig, description="Transport settings")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging settings")
    fittings: dict[str, FittingRequest] = Field(
        default_factory=dict, description="Named request descriptors"
    )
