"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="hawkops-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    use_database: bool = Field(
        default=False,
        description="Persist game state in PostgreSQL instead of the in-process store"
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/hawkops",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Time Scaling ==========
    timing_config_path: Path = Field(
        default=Path("timing_config.yaml"),
        description="Path to the time-scaling YAML table"
    )
    default_game_duration_minutes: int = Field(
        default=75,
        description="Session duration used when a game does not declare one",
        ge=1
    )

    # ========== Agents ==========
    agent_tick_interval_seconds: int = Field(
        default=15,
        description="Seconds between perceive-decide-act cycles",
        ge=1
    )
    agent_personality: str = Field(
        default="balanced",
        description="Default personality for simulated roles"
    )
    agent_max_cycle_retries: int = Field(
        default=2,
        description="Cycle retries after a concurrent modification",
        ge=0,
        le=10
    )

    # ========== Scheduler ==========
    scheduler_enabled: bool = Field(default=True, description="Run simulation jobs in the background")
    sla_check_interval_seconds: int = Field(
        default=30,
        description="Seconds between SLA breach and escalation passes",
        ge=1
    )
    challenge_check_interval_seconds: int = Field(
        default=60,
        description="Seconds between challenge expiry and spawn passes",
        ge=1
    )

    # ========== Reviews ==========
    review_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single grading call",
        ge=0.1,
        le=600
    )
    stuck_review_after_seconds: int = Field(
        default=300,
        description="Age after which a plan still in ai_reviewing is forced back to revision",
        ge=1
    )
    review_sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between stuck-review sweeps",
        ge=1
    )

    # ========== LLM Settings ==========
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for plan drafting and grading"
    )
    openai_base_url: Optional[str] = Field(
        default=None,
        description="Override for OpenAI-compatible endpoints"
    )
    mock_llm: bool = Field(
        default=False,
        description="Use mock LLM responses for testing (no API calls)"
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model for drafting and grading"
    )
    llm_temperature: float = Field(
        default=0.3,
        description="Default temperature for LLM",
        ge=0.0,
        le=1.0
    )
    llm_max_tokens: int = Field(
        default=1500,
        description="Default max tokens for LLM generation",
        ge=1,
        le=8000
    )

    # ========== Event Fan-out ==========
    event_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving transition and completion events"
    )
    event_webhook_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("agent_personality")
    @classmethod
    def validate_personality(cls, v: str) -> str:
        """Ensure the default personality is a known one."""
        if v not in VALID_PERSONALITIES:
            raise ValueError(f"agent_personality must be one of {VALID_PERSONALITIES}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class Priority(str, Enum):
    """Incident priority tiers, most urgent first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Severity(str, Enum):
    """Incident severity."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IncidentStatus(str, Enum):
    """Incident lifecycle statuses."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class PlanStatus(str, Enum):
    """Implementation plan lifecycle statuses."""
    DRAFT = "draft"
    AI_REVIEWING = "ai_reviewing"
    AI_APPROVED = "ai_approved"
    AI_NEEDS_REVISION = "ai_needs_revision"
    AI_REJECTED = "ai_rejected"
    IMPLEMENTING = "implementing"
    COMPLETED = "completed"


class ChangeType(str, Enum):
    """Change request types."""
    STANDARD = "standard"
    NORMAL = "normal"
    EMERGENCY = "emergency"


class ChangeStatus(str, Enum):
    """Change request lifecycle statuses."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RiskLevel(str, Enum):
    """Risk levels shared by plans and change requests."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewStatus(str, Enum):
    """Post-incident review statuses."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    GRADED = "graded"


class ChallengeStatus(str, Enum):
    """Challenge statuses."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ChallengeWindowType(str, Enum):
    """Challenge window categories."""
    QUICK = "quick"
    STANDARD = "standard"
    LONG = "long"


class EscalationLevel(str, Enum):
    """Escalation levels, derived from the scaled SLA target."""
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"


class WarningLevel(str, Enum):
    """SLA warning colours shown for remaining time."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"
    BREACHED = "breached"


class AgentRole(str, Enum):
    """Roles a simulated team member can play."""
    TECH_OPS = "tech_ops"
    SERVICE_DESK = "service_desk"
    MANAGEMENT = "management"


class Personality(str, Enum):
    """Simulated role temperament."""
    CAUTIOUS = "cautious"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class Workload(str, Enum):
    """Perceived workload buckets."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    OVERLOADED = "overloaded"


# ========== Lists for validation ==========

VALID_PRIORITIES = [p.value for p in Priority]
PRIORITY_ORDER = [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
VALID_RISK_LEVELS = [r.value for r in RiskLevel]
VALID_WINDOW_TYPES = [w.value for w in ChallengeWindowType]
VALID_ESCALATION_LEVELS = [e.value for e in EscalationLevel]
VALID_PERSONALITIES = [p.value for p in Personality]
VALID_ROLES = [r.value for r in AgentRole]

# Default burn rate per open minute, by priority
DEFAULT_COST_PER_MINUTE = {
    Priority.CRITICAL: 200.0,
    Priority.HIGH: 100.0,
    Priority.MEDIUM: 50.0,
    Priority.LOW: 20.0,
}


# Global settings instance
settings = get_settings()
