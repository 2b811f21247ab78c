"""Action policy evaluation for erpflow.

Decides whether a state-changing action on a document is currently
permitted, from priority-ordered policies and their guards.
"""

from .decision import Decision, DenialReason, FallbackDecision, GuardFailure, GuardFailureReason
from .definitions import ActionPolicy, Actor, EvaluationInput, StateConstraints, SubjectFilter
from .engine import ActionPolicyEngine
from .fallback import FallbackAdapter
from .guards import GuardEvaluator, GuardType
from .stores import GuardSources

__all__ = [
    "ActionPolicy",
    "ActionPolicyEngine",
    "Actor",
    "Decision",
    "DenialReason",
    "EvaluationInput",
    "FallbackAdapter",
    "FallbackDecision",
    "GuardEvaluator",
    "GuardFailure",
    "GuardFailureReason",
    "GuardSources",
    "GuardType",
    "StateConstraints",
    "SubjectFilter",
]
