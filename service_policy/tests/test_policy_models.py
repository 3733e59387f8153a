"""
Unit tests for Policy Decision Point data models.
"""

import pytest
from datetime import datetime, timezone

from shared.errors import InvalidContextError, ValidationError
from service_policy.app.rules.models import (
    AttributeCategory, AttributeReference, AuditLogFilter, DecisionLogEntry,
    Decision, EvaluationContext, Page, Pagination, Policy, PolicyEffect,
    PolicyFilter, PolicyScope, Predicate, PredicateOperator, lookup_attribute
)


class TestPredicate:
    """Test cases for Predicate validation."""

    def test_camel_case_operator_accepted(self):
        """Test camelCase operator spellings are normalized."""
        predicate = Predicate.from_dict({"attribute": "tenant_id", "operator": "notEquals", "value": "T1"})

        assert predicate.operator == PredicateOperator.NOT_EQUALS

    def test_unknown_operator_rejected(self):
        """Test unknown operators are rejected when the predicate is built."""
        with pytest.raises(ValidationError) as exc_info:
            Predicate(attribute="role", operator="regex", value=".*")

        assert exc_info.value.details["operator"] == "regex"

    def test_name_key_accepted_for_attribute(self):
        """Test the 'name' key is accepted as the attribute name."""
        predicate = Predicate.from_dict({"name": "role", "operator": "equals", "value": "admin"})

        assert predicate.attribute == "role"

    def test_in_requires_list(self):
        """Test 'in' rejects scalar values."""
        with pytest.raises(ValidationError):
            Predicate(attribute="action", operator="in", value="read")

    def test_in_list_stored_as_tuple(self):
        """Test list values are frozen into tuples."""
        predicate = Predicate(attribute="action", operator="in", value=["read", "write"])

        assert predicate.value == ("read", "write")
        assert predicate.to_dict()["value"] == ["read", "write"]

    def test_in_rejects_nested_lists(self):
        """Test 'in' only accepts scalar members."""
        with pytest.raises(ValidationError):
            Predicate(attribute="action", operator="in", value=[["read"]])

    def test_scalar_operator_rejects_list(self):
        """Test comparison operators reject list values."""
        with pytest.raises(ValidationError):
            Predicate(attribute="amount", operator="greater_than", value=[1, 2])

    def test_scalar_operator_rejects_none(self):
        """Test comparison operators require a value."""
        with pytest.raises(ValidationError):
            Predicate(attribute="role", operator="equals")

    def test_exists_defaults_to_true(self):
        """Test 'exists' expects presence by default."""
        predicate = Predicate(attribute="mfa", operator="exists")

        assert predicate.value is True

    def test_exists_requires_boolean(self):
        """Test 'exists' rejects non-boolean values."""
        with pytest.raises(ValidationError):
            Predicate(attribute="mfa", operator="exists", value="yes")

    def test_pattern_length_limit(self):
        """Test patterns longer than 256 characters are rejected."""
        Predicate(attribute="path", operator="matches_pattern", value="a" * 256)

        with pytest.raises(ValidationError):
            Predicate(attribute="path", operator="matches_pattern", value="a" * 257)

    def test_pattern_rejects_reference(self):
        """Test patterns cannot be taken from the context."""
        with pytest.raises(ValidationError):
            Predicate(attribute="path", operator="matches_pattern", value="${subject.pattern}")

    def test_reference_allowed_for_comparisons(self):
        """Test attribute references are accepted for comparison operators."""
        predicate = Predicate(attribute="tenant_id", operator="not_equals", value="${subject.tenant_id}")

        assert predicate.reference == AttributeReference(AttributeCategory.SUBJECT, "tenant_id")

    def test_missing_operator_rejected(self):
        """Test a predicate without an operator is rejected."""
        with pytest.raises(ValidationError):
            Predicate.from_dict({"attribute": "role", "value": "admin"})


class TestAttributeReference:
    """Test cases for attribute references."""

    def test_parse_reference(self):
        """Test parsing a reference."""
        reference = AttributeReference.parse("${resource.owner.id}")

        assert reference.category == AttributeCategory.RESOURCE
        assert reference.attribute == "owner.id"
        assert str(reference) == "${resource.owner.id}"

    def test_plain_values_are_not_references(self):
        """Test plain strings and other types are not references."""
        assert AttributeReference.parse("subject.tenant_id") is None
        assert AttributeReference.parse("${unknown.tenant_id}") is None
        assert AttributeReference.parse(42) is None


class TestLookupAttribute:
    """Test cases for attribute lookup."""

    def test_literal_key(self):
        """Test literal keys are found."""
        assert lookup_attribute({"a.b": 1}, "a.b") == (True, 1)

    def test_dotted_path(self):
        """Test dotted paths walk nested mappings."""
        assert lookup_attribute({"owner": {"id": "u1"}}, "owner.id") == (True, "u1")

    def test_missing(self):
        """Test missing attributes."""
        assert lookup_attribute({"owner": {}}, "owner.id") == (False, None)
        assert lookup_attribute({}, "role") == (False, None)


class TestPolicy:
    """Test cases for Policy."""

    def test_normalization(self):
        """Test policy_id, category, effect and scope are normalized."""
        policy = Policy(
            policy_id="  custom_allow ",
            name="Custom",
            effect="allow",
            scope="PLATFORM",
            category="custom",
            subject_attributes=[{"attribute": "role", "operator": "equals", "value": "admin"}]
        )

        assert policy.policy_id == "CUSTOM_ALLOW"
        assert policy.effect == PolicyEffect.ALLOW
        assert policy.scope == PolicyScope.PLATFORM
        assert policy.category == "CUSTOM"
        assert isinstance(policy.subject_attributes[0], Predicate)

    def test_wildcard(self):
        """Test a policy without predicates is a wildcard."""
        assert Policy(policy_id="P", name="P", effect="ALLOW").is_wildcard

    def test_invalid_effect(self):
        """Test invalid effects are rejected."""
        with pytest.raises(ValidationError):
            Policy(policy_id="P", name="P", effect="MAYBE")

    def test_empty_policy_id(self):
        """Test empty policy ids are rejected."""
        with pytest.raises(ValidationError):
            Policy(policy_id="  ", name="P", effect="ALLOW")

    def test_negative_counters_rejected(self):
        """Test counters cannot be negative."""
        with pytest.raises(ValidationError):
            Policy(policy_id="P", name="P", effect="ALLOW", evaluation_count=-1)

    def test_sort_key(self):
        """Test evaluation order is priority descending then policy_id."""
        policies = [
            Policy(policy_id="B", name="B", effect="ALLOW", priority=10),
            Policy(policy_id="A", name="A", effect="ALLOW", priority=10),
            Policy(policy_id="C", name="C", effect="ALLOW", priority=50),
        ]

        ordered = sorted(policies, key=lambda p: p.sort_key)

        assert [p.policy_id for p in ordered] == ["C", "A", "B"]

    def test_with_changes_returns_new_object(self):
        """Test policies are immutable."""
        policy = Policy(policy_id="P", name="P", effect="ALLOW")
        changed = policy.with_changes(priority=5)

        assert policy.priority == 100
        assert changed.priority == 5


class TestEvaluationContext:
    """Test cases for EvaluationContext."""

    def test_missing_groups(self):
        """Test a missing group raises InvalidContextError."""
        with pytest.raises(InvalidContextError) as exc_info:
            EvaluationContext.from_value({"subject": {}, "action": {}})

        assert exc_info.value.details["missing"] == ["resource", "environment"]

    def test_non_mapping(self):
        """Test non-mapping input is rejected."""
        with pytest.raises(InvalidContextError):
            EvaluationContext.from_value(["subject"])


class TestFiltersAndPages:
    """Test cases for filters and pagination."""

    def test_pagination_bounds(self):
        """Test pagination validation."""
        assert Pagination(page=3, limit=10).offset == 20

        with pytest.raises(ValidationError):
            Pagination(page=0)
        with pytest.raises(ValidationError):
            Pagination(limit=501)

    def test_page_count(self):
        """Test page count rounding."""
        assert Page(items=[], total=0, page=1, limit=20).pages == 0
        assert Page(items=[], total=41, page=1, limit=20).pages == 3

    def test_policy_filter_invalid_scope(self):
        """Test invalid scopes are rejected."""
        with pytest.raises(ValidationError):
            PolicyFilter(scope="galaxy")

    def test_audit_filter_naive_datetimes(self):
        """Test naive datetimes are taken as UTC."""
        log_filter = AuditLogFilter(decision="deny", start=datetime(2024, 1, 1))

        assert log_filter.decision == PolicyEffect.DENY
        assert log_filter.start.tzinfo == timezone.utc

    def test_audit_filter_matches_considered_policy(self):
        """Test filtering decision logs by considered policy."""
        context = EvaluationContext.from_value({
            "subject": {"id": "u1"},
            "action": {"action": "read"},
            "resource": {"resource_type": "report"},
            "environment": {},
        })
        entry = DecisionLogEntry.from_decision(
            context,
            Decision(result=PolicyEffect.DENY, reason="no applicable policy")
        )

        assert AuditLogFilter(subject_id="u1", action="read", resource_type="report").matches(entry)
        assert not AuditLogFilter(policy_id="TENANT_ISOLATION").matches(entry)
        assert not AuditLogFilter(decision="ALLOW").matches(entry)
