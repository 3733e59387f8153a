"""
Policy Decision Point package for attribute-based access control.

This package decides ALLOW or DENY for a requested action from the
attributes of the subject, action, resource and environment. It provides:

- app.main: API surface for evaluation, policy administration and audit.
- app.rules: Policy model, attribute matcher and deny-overrides combiner.
- app.cache: Immutable policy snapshots swapped atomically on change.
- app.persistence: In-memory and PostgreSQL stores for policies and logs.
- app.audit: Background decision logging and usage statistics.

Guidelines:
- Evaluation is lock-free over the current snapshot.
- Any internal failure on the decision path resolves to DENY.
- Keep evaluation deterministic and observable (metrics + logs).
"""
