"""
Enforcement helper for callers of the decision point.
"""

from typing import Any, Mapping, Union

from shared.errors import AccessLayerException, AuthorizationError, InvalidContextError
from shared.logging import get_logger
from .engine import PolicyEngine
from .rules.models import Decision, EvaluationContext


logger = get_logger("policy.enforcement")


async def require_allow(
    engine: PolicyEngine,
    context: Union[EvaluationContext, Mapping[str, Any]]
) -> Decision:
    """Evaluate ``context`` and return the decision only if it is ALLOW.

    Raises AuthorizationError on DENY and on any failure, including an
    invalid context.
    """
    try:
        decision = await engine.evaluate(context)
    except InvalidContextError as e:
        raise AuthorizationError("Access denied: invalid context", {"error": e.message, **e.details})
    except AccessLayerException as e:
        logger.error("Policy evaluation raised", code=e.code, error=e.message)
        raise AuthorizationError("Access denied: policy evaluation failed", {"error": e.code})
    except Exception as e:
        logger.error("Policy evaluation raised", error=str(e))
        raise AuthorizationError("Access denied: policy evaluation failed")

    if not decision.allowed:
        logger.info(
            "Access denied",
            decision_id=decision.decision_id,
            controlling_policy_id=decision.controlling_policy_id,
            reason=decision.reason
        )
        raise AuthorizationError(
            f"Access denied: {decision.reason}",
            {
                "decision_id": decision.decision_id,
                "controlling_policy_id": decision.controlling_policy_id,
            }
        )

    return decision
