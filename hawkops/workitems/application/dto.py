"""
Work Item Application DTOs
==========================

Pydantic models for the content-service contract and for creation requests.

Content-service responses are validated here so a malformed draft or grade
never reaches an entity.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["critical", "high", "medium", "low"]
RiskLevelStr = Literal["low", "medium", "high", "critical"]
ChangeTypeStr = Literal["standard", "normal", "emergency"]
PlanDecisionStr = Literal["approve", "needs_revision", "reject"]


# ========== Content Service Contract ==========

class PlanStepDTO(BaseModel):
    """One ordered implementation step."""
    order: int = Field(..., ge=1)
    title: str = Field(default="")
    description: str = Field(default="")
    duration_minutes: Optional[int] = Field(default=None, ge=0)


class PlanDraft(BaseModel):
    """Generated plan body, produced from an incident summary."""
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    root_cause_analysis: str = Field(default="")
    implementation_steps: List[PlanStepDTO] = Field(default_factory=list)
    risk_level: RiskLevelStr = Field(default="medium")
    risk_mitigation: str = Field(default="")
    rollback_plan: str = Field(default="")
    testing_plan: str = Field(default="")
    estimated_effort_hours: Optional[float] = Field(default=None, ge=0)

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk(cls, v):
        return str(v).lower() if v else "medium"


class PlanEvaluation(BaseModel):
    """
    Grading result for one plan revision.

    ``fallback`` is set when the result was produced locally because the
    content service timed out or failed.
    """
    score: int = Field(..., ge=0, le=100)
    decision: PlanDecisionStr
    feedback: str = Field(default="")
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    fallback: bool = False

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v):
        value = str(v or "").lower().strip()
        return value if value in ("approve", "reject") else "needs_revision"

    @classmethod
    def conservative_fallback(cls, reason: str) -> "PlanEvaluation":
        """Local stand-in result: never approves."""
        return cls(
            score=60,
            decision="needs_revision",
            feedback=f"Automatic evaluation unavailable ({reason}). Please review and resubmit.",
            fallback=True,
        )


class ReviewGrade(BaseModel):
    """Grading result for a post-incident review."""
    score: int = Field(..., ge=0, le=100)
    feedback: str = Field(default="")
    fallback: bool = False


# ========== Creation Requests ==========

class IncidentCreateDTO(BaseModel):
    """Request model for raising an incident."""
    team_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(default="")
    priority: PriorityStr = Field(default="medium")
    severity: Optional[PriorityStr] = None
    affected_services: List[str] = Field(default_factory=list)
    requires_pir: bool = True
    cost_per_minute: Optional[float] = Field(default=None, ge=0)


class ChangeCreateDTO(BaseModel):
    """Request model for raising a change request directly."""
    team_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(default="")
    change_type: ChangeTypeStr = Field(default="normal")
    risk_level: RiskLevelStr = Field(default="medium")
    affected_services: List[str] = Field(default_factory=list)
    implementation_plan: Optional[str] = None
    rollback_plan: Optional[str] = None
    test_plan: Optional[str] = None
    tech_review_notes: Optional[str] = None
