"""
Schemas for AI-generated payloads.

Each AI call site declares the shape it expects. Normalized payloads are
validated here and rejected when they do not match.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ModelT = TypeVar("ModelT", bound=BaseModel)


class SchemaMismatch(ValueError):
    """Raised when a normalized payload does not match the expected schema."""

    def __init__(self, message: str, payload: Any):
        super().__init__(message)
        self.payload = payload


class IdeaResult(BaseModel):
    """A generated business idea."""
    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    description: str
    investment: str
    timeframe: str
    rating: int = Field(..., ge=1, le=10)
    category: Optional[str] = None
    risks: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)

    @field_validator("investment", "timeframe", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        # Models often return "investment": 900 instead of "$900"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ProjectAnalysis(BaseModel):
    """Sectioned project evaluation (risk assessment, budget, finances, ...)."""
    model_config = ConfigDict(extra="allow")

    riskAssessment: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ProjectAnalysis":
        if not isinstance(payload, dict) or not payload:
            raise SchemaMismatch("Project analysis must be a non-empty object", payload)
        return validate_payload(payload, cls)

    def sections(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BudgetLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    category: str
    amount: float = 0
    type: str = ""


class DeepAnalysis(BaseModel):
    """Full opportunity analysis of a saved project."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    opportunity: str
    pros: List[str]
    cons: List[str]
    recommendations: List[str]
    budget: Optional[Dict[str, Any]] = None
    billOfMaterials: List[Dict[str, Any]] = Field(default_factory=list)
    timeline: List[Dict[str, Any]] = Field(default_factory=list)
    market: Optional[Dict[str, Any]] = None
    forecast: Optional[Dict[str, Any]] = None
    marketing: Optional[Dict[str, Any]] = None
    legal: Optional[Dict[str, Any]] = None

    def budget_lines(self) -> List[BudgetLine]:
        if not self.budget:
            return []
        return [BudgetLine.model_validate(line) for line in self.budget.get("breakdown", [])]


def validate_payload(payload: Any, model: Type[ModelT]) -> ModelT:
    """Validate a normalized payload against a schema.

    Raises:
        SchemaMismatch: If the payload does not match
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise SchemaMismatch(
            f"AI payload does not match {model.__name__}: {e.error_count()} error(s)",
            payload,
        ) from e


def validate_many(payloads: List[Any], model: Type[ModelT]) -> List[ModelT]:
    """Validate a list of payloads; the whole list is rejected on any mismatch."""
    if not isinstance(payloads, list):
        raise SchemaMismatch(f"Expected a list of {model.__name__}", payloads)
    return [validate_payload(payload, model) for payload in payloads]
