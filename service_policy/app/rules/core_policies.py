"""
Built-in core policy templates.

Core policies are identified by membership in ``CORE_POLICY_IDS``. They can
be deactivated through a toggle but never deleted.
"""

from typing import Any, Dict, Optional

from shared.errors import NotFoundError
from .models import Policy


_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "TENANT_ISOLATION": {
        "name": "Tenant Isolation Policy",
        "description": "Ensures users can only access resources within their tenant",
        "scope": "tenant",
        "category": "TENANT_ISOLATION",
        "effect": "DENY",
        "priority": 1000,
        "resource_attributes": [
            {"attribute": "tenant_id", "operator": "not_equals", "value": "${subject.tenant_id}"},
        ],
    },
    "READ_ONLY_ENFORCEMENT": {
        "name": "Read-Only User Enforcement",
        "description": "Prevents read-only users from performing write operations",
        "scope": "platform",
        "category": "READ_ONLY_ENFORCEMENT",
        "effect": "DENY",
        "priority": 900,
        "subject_attributes": [
            {"attribute": "is_read_only", "operator": "equals", "value": True},
        ],
        "action_attributes": [
            {"attribute": "action", "operator": "in", "value": ["create", "update", "delete", "approve"]},
        ],
    },
    "FINANCIAL_APPROVAL_LIMITS": {
        "name": "Financial Approval Limits",
        "description": "Enforces approval limits for financial operations",
        "scope": "platform",
        "category": "FINANCIAL_LIMITS",
        "effect": "DENY",
        "priority": 800,
        "action_attributes": [
            {"attribute": "action", "operator": "equals", "value": "approve"},
        ],
        "resource_attributes": [
            {"attribute": "amount", "operator": "greater_than", "value": "${subject.approval_limit}"},
        ],
    },
    "BUSINESS_HOURS_PAYOUTS": {
        "name": "Business Hours Payout Restriction",
        "description": "Restricts payout approvals to business hours only",
        "scope": "platform",
        "category": "TIME_BOUND_ACTIONS",
        "effect": "DENY",
        "priority": 700,
        "action_attributes": [
            {"attribute": "action", "operator": "equals", "value": "approve"},
        ],
        "resource_attributes": [
            {"attribute": "resource_type", "operator": "equals", "value": "payout"},
        ],
        "environment_attributes": [
            {"attribute": "business_hours", "operator": "equals", "value": False},
        ],
    },
    "AUTOMATION_SCOPE_PROTECTION": {
        "name": "Automation Scope Protection",
        "description": "Prevents tenant admins from accessing platform automation",
        "scope": "platform",
        "category": "AUTOMATION_SCOPE",
        "effect": "DENY",
        "priority": 600,
        "subject_attributes": [
            {"attribute": "role", "operator": "equals", "value": "TenantAdmin"},
        ],
        "resource_attributes": [
            {"attribute": "automation_scope", "operator": "equals", "value": "PLATFORM"},
        ],
    },
    "NOTIFICATION_TENANT_SAFETY": {
        "name": "Notification Tenant Safety",
        "description": "Ensures notifications are only sent within tenant boundaries",
        "scope": "tenant",
        "category": "NOTIFICATION_SAFETY",
        "effect": "DENY",
        "priority": 500,
        "action_attributes": [
            {"attribute": "action", "operator": "equals", "value": "notify"},
        ],
        "resource_attributes": [
            {"attribute": "event_tenant_id", "operator": "not_equals", "value": "${subject.tenant_id}"},
        ],
    },
}

CORE_POLICY_IDS = frozenset(_TEMPLATES)


def is_core_policy(policy_id: str) -> bool:
    return policy_id.strip().upper() in CORE_POLICY_IDS


def get_core_policy_template(policy_id: str) -> Optional[Dict[str, Any]]:
    """Get a copy of the template for a core policy, or None."""
    template = _TEMPLATES.get(policy_id.strip().upper())
    if template is None:
        return None
    return {"policy_id": policy_id.strip().upper(), **template}


def build_core_policy(policy_id: str, actor_id: str) -> Policy:
    """Instantiate a core policy from its template."""
    template = get_core_policy_template(policy_id)
    if template is None:
        raise NotFoundError(policy_id, f"No core policy template for '{policy_id}'")
    return Policy(created_by=actor_id, last_modified_by=actor_id, **template)
