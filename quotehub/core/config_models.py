"""
Configuration Models and Validation

Pydantic models for the YAML configuration and the provider registry.
"""

import re
from typing import List, Optional, Dict, Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_\-]*$")


def _clean_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or (text.startswith("${") and text.endswith("}")):
        return None
    return text


class RateLimitConfig(BaseModel):
    """Token bucket settings"""
    model_config = ConfigDict(frozen=True)

    requests_per_second: float = Field(default=10.0, gt=0, description="refill rate, tokens per second")
    burst_limit: int = Field(default=50, gt=0, description="bucket capacity")


class RetryConfig(BaseModel):
    """Retry and backoff settings"""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=10, description="retries after the first attempt")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="exponential backoff factor")
    initial_delay: float = Field(default=1000.0, ge=0, description="first backoff delay (ms)")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker settings"""
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1, le=100, description="consecutive failures that open the circuit")
    recovery_timeout: int = Field(default=30000, gt=0, description="time before a half-open trial (ms)")


class ProviderConfig(BaseModel):
    """Identity, connectivity and policy of one external carrier"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="stable slug")
    name: str = Field(default="", description="internal name")
    display_name: str = Field(default="", description="name shown to consumers")
    base_url: str = Field(..., description="API base URL")
    quote_path: str = Field(default="/quotes", description="quote endpoint, relative to base_url")
    health_path: str = Field(default="/health", description="connectivity check endpoint")
    api_key: Optional[str] = Field(default=None, description="credential")
    auth_header: Optional[str] = Field(default=None, description="header carrying the credential, or 'Bearer'")
    is_active: bool = Field(default=True, description="excluded from fan-out when false")
    mock_mode: Optional[bool] = Field(default=None, description="synthesize quotes instead of calling out")
    supported_coverage_types: List[str] = Field(default_factory=list, description="eligibility filter")
    priority: int = Field(default=50, ge=1, le=100, description="lower wins ties")
    rating: Optional[float] = Field(default=None, ge=1, le=5, description="carrier rating")
    adapter: str = Field(default="generic", description="request/response mapping")
    coverage_type_mapping: Dict[str, str] = Field(default_factory=dict, description="canonical type -> product code")
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    timeout: int = Field(default=8000, gt=0, description="total budget per invocation (ms)")
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        """Provider ids are lowercase slugs"""
        if not _SLUG_RE.match(v):
            raise ValueError(f"provider id must be a lowercase slug, got {v!r}")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v):
        """Require an absolute http(s) URL"""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("api_key")
    @classmethod
    def drop_unresolved_key(cls, v):
        """An unresolved ${VAR} placeholder means no credential"""
        return _clean_key(v)

    @field_validator("supported_coverage_types")
    @classmethod
    def normalize_coverage_types(cls, v):
        """Coverage types are compared lowercase"""
        return sorted({str(item).strip().lower() for item in v if str(item).strip()})

    @model_validator(mode="before")
    @classmethod
    def fill_defaults(cls, data):
        """Derive names and mock mode from what was given"""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("name"):
            data["name"] = data.get("id", "")
        if not data.get("display_name"):
            data["display_name"] = data["name"]
        if data.get("mock_mode") is None:
            data["mock_mode"] = _clean_key(data.get("api_key")) is None
        return data

    def supports(self, coverage_type: str) -> bool:
        """Whether this provider quotes the given canonical coverage type"""
        types = self.supported_coverage_types
        return coverage_type.lower() in types or "all" in types

    def public_dict(self) -> Dict[str, Any]:
        """Serialize without the credential"""
        data = self.model_dump(mode="json")
        data["api_key"] = "***" if self.api_key else None
        return data


class AppConfig(BaseModel):
    """Application settings"""
    name: str = Field(default="quotehub", description="application name")
    version: str = Field(default="1.0.0", description="version")
    debug: bool = Field(default=False, description="debug mode")
    log_level: str = Field(default="INFO", description="log level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate the log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got {v}")
        return v


class DatabaseConfig(BaseModel):
    """Database settings"""
    type: str = Field(default="sqlite", description="database type")
    path: str = Field(default="data/quotehub.db", description="database path")
    timeout: int = Field(default=30, ge=1, le=300, description="operation timeout (s)")


class EngineConfig(BaseModel):
    """Fan-out engine settings"""
    max_request_seconds: float = Field(default=10.0, gt=0, le=120, description="overall request deadline (s)")
    stuck_after_seconds: Optional[float] = Field(
        default=None, gt=0, description="pending rows older than this are stuck; default 3x max_request_seconds"
    )
    user_agent: str = Field(default="quotehub/1.0", description="outbound User-Agent")
    health_check_coverage_type: str = Field(default="life", description="coverage type used by health checks")
    health_check_interval_seconds: Optional[float] = Field(
        default=None, gt=0, description="background provider health checks in the API process; off when unset"
    )

    @property
    def stuck_threshold_seconds(self) -> float:
        if self.stuck_after_seconds is not None:
            return float(self.stuck_after_seconds)
        return float(self.max_request_seconds) * 3


class ConfigModel(BaseModel):
    """Full configuration document"""
    app: AppConfig = Field(default_factory=AppConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    providers: Optional[List[ProviderConfig]] = Field(default=None, description="provider registry")

    @field_validator("providers")
    @classmethod
    def validate_unique_ids(cls, v):
        """Provider ids must be unique"""
        if v:
            ids = [p.id for p in v]
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"duplicate provider ids: {duplicates}")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dict"""
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfigModel':
        """Build from a plain dict"""
        return cls(**data)
