"""
Policy rules package.

Defines the policy model and the pure evaluation functions used by the
Policy Decision Point:

- models: Policy, Predicate, EvaluationContext, Decision and log entries.
- matcher: Attribute matching (full conjunction, wildcard categories).
- combiner: Deny-overrides combination with a fail-closed default.
- core_policies: Built-in templates for the protected core policies.

Nothing in this package performs I/O; the same ``(context, policies)``
always yields the same decision.
"""
