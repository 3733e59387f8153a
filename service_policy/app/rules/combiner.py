"""
Deny-overrides decision combiner.

Policies are ordered by priority (descending) and then policy_id
(ascending). The first applicable DENY wins; otherwise the first applicable
ALLOW wins; otherwise the decision is DENY with ``NO_APPLICABLE_POLICY``.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from .matcher import match_policy
from .models import Decision, EvaluationContext, Policy, PolicyEffect, PolicyEvaluation


NO_APPLICABLE_POLICY = "no applicable policy"


def order_policies(policies: Iterable[Policy]) -> List[Policy]:
    """Sort policies into evaluation order."""
    return sorted(policies, key=lambda p: p.sort_key)


def combine(applicable: Iterable[Policy]) -> Tuple[PolicyEffect, Optional[Policy], str]:
    """Combine applicable policies into ``(result, controlling_policy, reason)``."""
    ordered = order_policies(applicable)

    for policy in ordered:
        if policy.effect == PolicyEffect.DENY:
            return PolicyEffect.DENY, policy, f"Denied by policy '{policy.name}' ({policy.policy_id})"

    for policy in ordered:
        if policy.effect == PolicyEffect.ALLOW:
            return PolicyEffect.ALLOW, policy, f"Allowed by policy '{policy.name}' ({policy.policy_id})"

    return PolicyEffect.DENY, None, NO_APPLICABLE_POLICY


def decide(candidates: Sequence[Policy], context: EvaluationContext) -> Decision:
    """Match ``candidates`` against ``context`` and combine the result.

    Matching stops at the first applicable DENY; candidates after it are
    recorded as considered but not evaluated.
    """
    ordered = order_policies(candidates)
    applicable: List[Policy] = []
    results = []
    denied_by: Optional[Policy] = None

    for policy in ordered:
        if denied_by is not None:
            results.append((policy, False, f"Not evaluated: decision determined by {denied_by.policy_id}"))
            continue

        match = match_policy(policy, context)
        results.append((policy, match.matched, match.reason))
        if match.matched:
            applicable.append(policy)
            if policy.effect == PolicyEffect.DENY:
                denied_by = policy

    result, controlling, reason = combine(applicable)
    controlling_id = controlling.policy_id if controlling else None

    evaluations = tuple(
        PolicyEvaluation(
            policy_id=policy.policy_id,
            policy_name=policy.name,
            effect=policy.effect,
            priority=policy.priority,
            matched=matched,
            reason=match_reason,
            controlling=policy.policy_id == controlling_id
        )
        for policy, matched, match_reason in results
    )

    return Decision(
        result=result,
        reason=reason,
        controlling_policy_id=controlling_id,
        applied_policies=evaluations
    )
