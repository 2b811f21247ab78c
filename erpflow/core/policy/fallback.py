"""Fallback adaptation of policy decisions.

Routes that predate explicit policy configuration call
``evaluate_with_fallback``; it keeps their permissive behavior when no
policy is configured and lets elevated users override incomplete
chat acknowledgements with a written justification. Every other denial
is returned unchanged.
"""

import logging
from typing import TYPE_CHECKING, Optional

from erpflow.core.config import Settings, get_settings
from erpflow.core.rbac import is_elevated

from .decision import Decision, DenialReason, FallbackDecision
from .definitions import EvaluationInput

if TYPE_CHECKING:
    from .engine import ActionPolicyEngine

logger = logging.getLogger(__name__)

# Guard types an elevated actor may override with a justification.
OVERRIDABLE_GUARD_TYPES = frozenset({"chat_ack_completed"})


class FallbackAdapter:
    """Wraps an ``ActionPolicyEngine`` with legacy and override handling."""

    def __init__(self, engine: "ActionPolicyEngine", *, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or get_settings()

    def evaluate(self, inp: EvaluationInput) -> FallbackDecision:
        """
        Evaluate an action and adapt the result.

        Args:
            inp: Evaluation input passed through to the engine

        Returns:
            FallbackDecision; ``policy_applied`` is False only when no
            policy was configured for the action
        """
        return self.adapt(self.engine.evaluate(inp), inp)

    def adapt(self, decision: Decision, inp: EvaluationInput) -> FallbackDecision:
        """Adapt an already computed decision for ``inp``."""
        if decision.allowed:
            return FallbackDecision.from_decision(decision, policy_applied=True)

        if decision.reason == DenialReason.NO_MATCHING_POLICY:
            return FallbackDecision.from_decision(
                decision,
                allowed=True,
                reason=None,
                policy_applied=False,
            )

        if self._is_overridable(decision, inp):
            if not inp.normalized_reason:
                return FallbackDecision.from_decision(
                    decision,
                    reason=DenialReason.REASON_REQUIRED,
                    require_reason=True,
                    policy_applied=True,
                )
            logger.info(
                "Guard override granted for %s/%s by %s (policy %s)",
                inp.flow_type, inp.normalized_action_key,
                inp.actor.user_id, decision.matched_policy_id,
            )
            return FallbackDecision.from_decision(
                decision,
                allowed=True,
                reason=None,
                require_reason=True,
                guard_override=True,
                policy_applied=True,
            )

        return FallbackDecision.from_decision(decision, policy_applied=True)

    def _is_overridable(self, decision: Decision, inp: EvaluationInput) -> bool:
        if decision.reason != DenialReason.GUARD_FAILED:
            return False
        if not decision.guard_failures:
            return False
        if not all(f.type in OVERRIDABLE_GUARD_TYPES for f in decision.guard_failures):
            return False
        return is_elevated(inp.actor, self.settings)
