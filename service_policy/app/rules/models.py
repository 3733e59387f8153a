"""
Policy data models for the Policy Decision Point.

Policies, predicates, contexts, decisions and log entries are immutable
value objects. Mutating a policy means building a new one with
``dataclasses.replace`` so that cache snapshots never change under a reader.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from shared.errors import InvalidContextError, ValidationError


MAX_PATTERN_LENGTH = 256

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_REFERENCE = re.compile(r"^\$\{(subject|action|resource|environment)\.([A-Za-z0-9_.\-]+)\}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEffect(str, Enum):
    """Policy effect, also used as the decision result."""
    ALLOW = "ALLOW"
    DENY = "DENY"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class PolicyScope(str, Enum):
    """Policy scope."""
    PLATFORM = "platform"
    TENANT = "tenant"
    RESOURCE = "resource"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class PredicateOperator(str, Enum):
    """Predicate operators. Closed set; anything else is rejected on input."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    MATCHES_PATTERN = "matches_pattern"

    @classmethod
    def _missing_(cls, value):
        # Accept camelCase spellings such as "notEquals"
        if isinstance(value, str):
            normalized = _CAMEL_BOUNDARY.sub("_", value.strip()).lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class AttributeCategory(str, Enum):
    """The four attribute groups of an evaluation context."""
    SUBJECT = "subject"
    ACTION = "action"
    RESOURCE = "resource"
    ENVIRONMENT = "environment"


_SCALAR_OPERATORS = {
    PredicateOperator.EQUALS,
    PredicateOperator.NOT_EQUALS,
    PredicateOperator.GREATER_THAN,
    PredicateOperator.LESS_THAN,
}
_SET_OPERATORS = {PredicateOperator.IN, PredicateOperator.NOT_IN}


def lookup_attribute(group: Mapping[str, Any], path: str) -> Tuple[bool, Any]:
    """Look up ``path`` in an attribute group.

    Returns ``(found, value)``. A literal key wins over a dotted path, so
    ``"owner.id"`` is first tried as a key and then as ``group["owner"]["id"]``.
    """
    if path in group:
        return True, group[path]

    if "." not in path:
        return False, None

    value: Any = group
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return False, None
    return True, value


@dataclass(frozen=True)
class AttributeReference:
    """Predicate value taken from the evaluation context, e.g. ``${subject.tenant_id}``."""
    category: AttributeCategory
    attribute: str

    @classmethod
    def parse(cls, value: Any) -> Optional["AttributeReference"]:
        if not isinstance(value, str):
            return None
        match = _REFERENCE.match(value.strip())
        if not match:
            return None
        return cls(AttributeCategory(match.group(1)), match.group(2))

    def __str__(self) -> str:
        return f"${{{self.category.value}.{self.attribute}}}"


@dataclass(frozen=True)
class Predicate:
    """One attribute condition: ``attribute <operator> value``."""
    attribute: str
    operator: PredicateOperator
    value: Any = None
    description: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.attribute, str) or not self.attribute.strip():
            raise ValidationError("Predicate attribute name is required")

        try:
            operator = PredicateOperator(self.operator)
        except ValueError:
            raise ValidationError(
                f"Unknown predicate operator '{self.operator}'",
                {"attribute": self.attribute, "operator": str(self.operator)}
            )
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "attribute", self.attribute.strip())
        object.__setattr__(self, "value", self._validate_value(operator, self.value))

    def _validate_value(self, operator: PredicateOperator, value: Any) -> Any:
        details = {"attribute": self.attribute, "operator": operator.value}
        reference = AttributeReference.parse(value)

        if operator == PredicateOperator.EXISTS:
            if value is None:
                return True
            if not isinstance(value, bool):
                raise ValidationError("'exists' expects a boolean value", details)
            return value

        if operator == PredicateOperator.MATCHES_PATTERN:
            if reference is not None:
                raise ValidationError("'matches_pattern' does not accept attribute references", details)
            if not isinstance(value, str) or not value:
                raise ValidationError("'matches_pattern' expects a non-empty pattern string", details)
            if len(value) > MAX_PATTERN_LENGTH:
                raise ValidationError(
                    f"Pattern longer than {MAX_PATTERN_LENGTH} characters",
                    details
                )
            return value

        if reference is not None:
            return value.strip()

        if operator in _SET_OPERATORS:
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise ValidationError(f"'{operator.value}' expects a list value", details)
            if any(isinstance(v, (list, tuple, dict, set)) for v in value):
                raise ValidationError(f"'{operator.value}' expects a list of scalars", details)
            return tuple(value)

        if operator in _SCALAR_OPERATORS:
            if value is None or isinstance(value, (list, tuple, dict, set, frozenset)):
                raise ValidationError(f"'{operator.value}' expects a scalar value", details)
            return value

        raise ValidationError(f"Unsupported operator '{operator.value}'", details)

    @property
    def reference(self) -> Optional[AttributeReference]:
        return AttributeReference.parse(self.value)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Predicate":
        if not isinstance(data, Mapping):
            raise ValidationError("Predicate must be an object")
        attribute = data.get("attribute", data.get("name"))
        if "operator" not in data:
            raise ValidationError("Predicate operator is required", {"attribute": attribute})
        return cls(
            attribute=attribute,
            operator=data["operator"],
            value=data.get("value"),
            description=data.get("description")
        )

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        data = {"attribute": self.attribute, "operator": self.operator.value, "value": value}
        if self.description:
            data["description"] = self.description
        return data


def build_predicates(items: Optional[Sequence[Any]]) -> Tuple[Predicate, ...]:
    """Build a predicate tuple from dicts or Predicate instances."""
    if not items:
        return ()
    return tuple(
        item if isinstance(item, Predicate) else Predicate.from_dict(item)
        for item in items
    )


@dataclass(frozen=True)
class Policy:
    """Access-control policy."""
    policy_id: str
    name: str
    effect: PolicyEffect
    description: str = ""
    scope: PolicyScope = PolicyScope.TENANT
    category: str = "CUSTOM"
    priority: int = 100
    subject_attributes: Tuple[Predicate, ...] = ()
    action_attributes: Tuple[Predicate, ...] = ()
    resource_attributes: Tuple[Predicate, ...] = ()
    environment_attributes: Tuple[Predicate, ...] = ()
    is_active: bool = True
    version: int = 1
    evaluation_count: int = 0
    allow_count: int = 0
    deny_count: int = 0
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not isinstance(self.policy_id, str) or not self.policy_id.strip():
            raise ValidationError("policy_id is required")
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Policy name is required", {"policy_id": self.policy_id})
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValidationError("Policy priority must be an integer", {"policy_id": self.policy_id})

        object.__setattr__(self, "policy_id", self.policy_id.strip().upper())
        try:
            object.__setattr__(self, "effect", PolicyEffect(self.effect))
            object.__setattr__(self, "scope", PolicyScope(self.scope))
        except ValueError as e:
            raise ValidationError(str(e), {"policy_id": self.policy_id})
        object.__setattr__(self, "category", (self.category or "CUSTOM").strip().upper())

        for category in AttributeCategory:
            attr = f"{category.value}_attributes"
            object.__setattr__(self, attr, build_predicates(getattr(self, attr)))

        if min(self.evaluation_count, self.allow_count, self.deny_count) < 0:
            raise ValidationError("Policy counters cannot be negative", {"policy_id": self.policy_id})

    def predicates(self, category: AttributeCategory) -> Tuple[Predicate, ...]:
        return getattr(self, f"{category.value}_attributes")

    @property
    def is_wildcard(self) -> bool:
        return not any(self.predicates(c) for c in AttributeCategory)

    @property
    def sort_key(self) -> Tuple[int, str]:
        """Evaluation order: priority descending, then policy_id ascending."""
        return (-self.priority, self.policy_id)

    def with_changes(self, **changes) -> "Policy":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "name": self.name,
            "description": self.description,
            "scope": self.scope.value,
            "category": self.category,
            "effect": self.effect.value,
            "priority": self.priority,
            "subject_attributes": [p.to_dict() for p in self.subject_attributes],
            "action_attributes": [p.to_dict() for p in self.action_attributes],
            "resource_attributes": [p.to_dict() for p in self.resource_attributes],
            "environment_attributes": [p.to_dict() for p in self.environment_attributes],
            "is_active": self.is_active,
            "version": self.version,
            "evaluation_count": self.evaluation_count,
            "allow_count": self.allow_count,
            "deny_count": self.deny_count,
            "created_by": self.created_by,
            "last_modified_by": self.last_modified_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class EvaluationContext:
    """Four-part input to one evaluation."""
    subject: Mapping[str, Any]
    action: Mapping[str, Any]
    resource: Mapping[str, Any]
    environment: Mapping[str, Any]

    @classmethod
    def from_value(cls, value: Any) -> "EvaluationContext":
        """Build a context from a mapping, raising InvalidContextError if a group is missing."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise InvalidContextError("Context must be an object with subject, action, resource and environment")

        missing = [
            c.value for c in AttributeCategory
            if not isinstance(value.get(c.value), Mapping)
        ]
        if missing:
            raise InvalidContextError(
                "Invalid context. Required: subject, action, resource, environment",
                {"missing": missing}
            )
        return cls(**{c.value: dict(value[c.value]) for c in AttributeCategory})

    def group(self, category: AttributeCategory) -> Mapping[str, Any]:
        return getattr(self, category.value)

    def resolve(self, reference: AttributeReference) -> Tuple[bool, Any]:
        return lookup_attribute(self.group(reference.category), reference.attribute)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {c.value: dict(self.group(c)) for c in AttributeCategory}


@dataclass(frozen=True)
class PolicyEvaluation:
    """How one considered policy fared in an evaluation."""
    policy_id: str
    policy_name: str
    effect: PolicyEffect
    priority: int
    matched: bool
    reason: str
    controlling: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "effect": self.effect.value,
            "priority": self.priority,
            "matched": self.matched,
            "reason": self.reason,
            "controlling": self.controlling,
        }


@dataclass(frozen=True)
class Decision:
    """Result of one evaluation."""
    result: PolicyEffect
    reason: str
    controlling_policy_id: Optional[str] = None
    applied_policies: Tuple[PolicyEvaluation, ...] = ()
    decision_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    evaluation_time_ms: float = 0.0
    error: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.result == PolicyEffect.ALLOW

    @property
    def considered_policy_ids(self) -> List[str]:
        return [p.policy_id for p in self.applied_policies]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "result": self.result.value,
            "controlling_policy_id": self.controlling_policy_id,
            "reason": self.reason,
            "applied_policies": [p.to_dict() for p in self.applied_policies],
            "evaluation_time_ms": self.evaluation_time_ms,
            "error": self.error,
        }


@dataclass(frozen=True)
class DecisionLogEntry:
    """Immutable audit record of one evaluation."""
    decision_id: str
    decision: PolicyEffect
    reason: str
    subject_attributes: Dict[str, Any]
    action_attributes: Dict[str, Any]
    resource_attributes: Dict[str, Any]
    environment_attributes: Dict[str, Any]
    considered_policies: Tuple[PolicyEvaluation, ...] = ()
    controlling_policy_id: Optional[str] = None
    evaluation_time_ms: float = 0.0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_decision(
        cls,
        context: EvaluationContext,
        decision: Decision,
        expires_at: Optional[datetime] = None
    ) -> "DecisionLogEntry":
        return cls(
            decision_id=decision.decision_id,
            decision=decision.result,
            reason=decision.reason,
            subject_attributes=dict(context.subject),
            action_attributes=dict(context.action),
            resource_attributes=dict(context.resource),
            environment_attributes=dict(context.environment),
            considered_policies=decision.applied_policies,
            controlling_policy_id=decision.controlling_policy_id,
            evaluation_time_ms=decision.evaluation_time_ms,
            error=decision.error,
            expires_at=expires_at
        )

    @property
    def subject_id(self) -> Optional[str]:
        value = self.subject_attributes.get("id")
        return None if value is None else str(value)

    @property
    def action_name(self) -> Optional[str]:
        value = self.action_attributes.get("action")
        return None if value is None else str(value)

    @property
    def resource_type(self) -> Optional[str]:
        value = self.resource_attributes.get("resource_type")
        return None if value is None else str(value)

    def to_dict(self, include_attributes: bool = True) -> Dict[str, Any]:
        data = {
            "decision_id": self.decision_id,
            "decision": self.decision.value,
            "reason": self.reason,
            "controlling_policy_id": self.controlling_policy_id,
            "considered_policies": [p.to_dict() for p in self.considered_policies],
            "subject_id": self.subject_id,
            "action": self.action_name,
            "resource_type": self.resource_type,
            "evaluation_time_ms": self.evaluation_time_ms,
            "error": self.error,
            "timestamp": self.timestamp,
        }
        if include_attributes:
            data.update(
                subject_attributes=self.subject_attributes,
                action_attributes=self.action_attributes,
                resource_attributes=self.resource_attributes,
                environment_attributes=self.environment_attributes,
            )
        return data


@dataclass
class PolicyFilter:
    """Policy listing filter."""
    scope: Optional[PolicyScope] = None
    category: Optional[str] = None
    is_active: Optional[bool] = None

    def __post_init__(self):
        if self.scope is not None:
            try:
                self.scope = PolicyScope(self.scope)
            except ValueError as e:
                raise ValidationError(str(e), {"scope": str(self.scope)})

    def matches(self, policy: Policy) -> bool:
        if self.scope is not None and policy.scope != self.scope:
            return False
        if self.category is not None and policy.category != self.category.upper():
            return False
        if self.is_active is not None and policy.is_active != self.is_active:
            return False
        return True


@dataclass
class AuditLogFilter:
    """Decision log listing filter."""
    decision: Optional[PolicyEffect] = None
    policy_id: Optional[str] = None
    subject_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.decision is not None:
            try:
                self.decision = PolicyEffect(self.decision)
            except ValueError as e:
                raise ValidationError(str(e), {"decision": str(self.decision)})
        # Naive datetimes are taken as UTC
        if self.start is not None and self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=timezone.utc)
        if self.end is not None and self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=timezone.utc)

    def matches(self, entry: DecisionLogEntry) -> bool:
        if self.decision is not None and entry.decision != self.decision:
            return False
        if self.policy_id is not None:
            policy_id = self.policy_id.upper()
            if not any(p.policy_id == policy_id for p in entry.considered_policies):
                return False
        if self.subject_id is not None and entry.subject_id != self.subject_id:
            return False
        if self.action is not None and entry.action_name != self.action:
            return False
        if self.resource_type is not None and entry.resource_type != self.resource_type:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        return True


@dataclass(frozen=True)
class Pagination:
    """1-based page request."""
    page: int = 1
    limit: int = 20

    def __post_init__(self):
        if self.page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= self.limit <= 500:
            raise ValidationError("limit must be between 1 and 500")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results."""
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0
