"""
HTTP request and response models for the Policy Decision Point service.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field


class PredicateModel(BaseModel):
    """Attribute predicate."""
    attribute: str = Field(..., validation_alias=AliasChoices("attribute", "name"))
    operator: str
    value: Any = None
    description: Optional[str] = None


class PolicyCreateRequest(BaseModel):
    """Request model for creating policies."""
    policy_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    scope: str = "tenant"
    category: str = "CUSTOM"
    effect: str
    priority: int = Field(100, ge=1, le=1000)
    subject_attributes: List[PredicateModel] = Field(default_factory=list)
    action_attributes: List[PredicateModel] = Field(default_factory=list)
    resource_attributes: List[PredicateModel] = Field(default_factory=list)
    environment_attributes: List[PredicateModel] = Field(default_factory=list)
    is_active: bool = True


class PolicyUpdateRequest(BaseModel):
    """Request model for updating policies. Only the fields sent are changed."""
    expected_version: int = Field(..., ge=1)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    scope: Optional[str] = None
    category: Optional[str] = None
    effect: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=1000)
    subject_attributes: Optional[List[PredicateModel]] = None
    action_attributes: Optional[List[PredicateModel]] = None
    resource_attributes: Optional[List[PredicateModel]] = None
    environment_attributes: Optional[List[PredicateModel]] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"expected_version"})


class PolicyToggleRequest(BaseModel):
    """Request model for toggling policies."""
    expected_version: Optional[int] = Field(None, ge=1)


class EvaluationRequest(BaseModel):
    """Evaluation context. All four groups are required by the engine."""
    subject: Optional[Dict[str, Any]] = None
    action: Optional[Dict[str, Any]] = None
    resource: Optional[Dict[str, Any]] = None
    environment: Optional[Dict[str, Any]] = None


class PolicyResponse(BaseModel):
    """Response model for policies."""
    policy_id: str
    name: str
    description: str
    scope: str
    category: str
    effect: str
    priority: int
    subject_attributes: List[PredicateModel]
    action_attributes: List[PredicateModel]
    resource_attributes: List[PredicateModel]
    environment_attributes: List[PredicateModel]
    is_active: bool
    version: int
    evaluation_count: int
    allow_count: int
    deny_count: int
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PolicyListResponse(BaseModel):
    """Response model for policy lists."""
    policies: List[PolicyResponse]
    total: int
    page: int
    limit: int
    pages: int


class PolicyEvaluationResponse(BaseModel):
    """How one policy fared in an evaluation."""
    policy_id: str
    policy_name: str
    effect: str
    priority: int
    matched: bool
    reason: str
    controlling: bool = False


class DecisionResponse(BaseModel):
    """Response model for evaluations."""
    decision_id: str
    result: str
    controlling_policy_id: Optional[str] = None
    reason: str
    applied_policies: List[PolicyEvaluationResponse]
    evaluation_time_ms: float
    error: Optional[str] = None


class AuditLogResponse(BaseModel):
    """One decision log entry."""
    decision_id: str
    decision: str
    reason: str
    controlling_policy_id: Optional[str] = None
    considered_policies: List[PolicyEvaluationResponse]
    subject_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    evaluation_time_ms: float
    error: Optional[str] = None
    timestamp: datetime
    subject_attributes: Dict[str, Any]
    action_attributes: Dict[str, Any]
    resource_attributes: Dict[str, Any]
    environment_attributes: Dict[str, Any]


class AuditLogListResponse(BaseModel):
    """Response model for decision log listings."""
    logs: List[AuditLogResponse]
    total: int
    page: int
    limit: int
    pages: int
