"""
Policy evaluation and resolution.

Provides structured condition evaluation, multi-level policy resolution,
and persistence of policy definitions.
"""

from insiderguard.policies.evaluator import (
    ConditionEvaluator,
    ConditionTreeResolver,
    EvaluationContext,
)
from insiderguard.policies.resolver import (
    InMemoryPolicySource,
    PolicyResolver,
    PolicySource,
    rank_policies,
    select_applicable,
)

__all__ = [
    "ConditionEvaluator",
    "ConditionTreeResolver",
    "EvaluationContext",
    "InMemoryPolicySource",
    "PolicyResolver",
    "PolicySource",
    "rank_policies",
    "select_applicable",
]
