"""Action policy evaluation engine for erpflow.

Decides whether a state-changing action on a document is currently
permitted, given the enabled policies for its ``(flow_type, action_key)``.

Policies are scanned in (priority desc, created_at desc) order:

- a policy whose state constraints or subjects do not match is skipped;
- the first matching policy whose guards pass decides the outcome
  (allowed, or ``reason_required`` when it demands a justification
  that was not given; there is no fallthrough in that case);
- a matching policy whose guards fail is remembered (first one only)
  and the scan continues with lower-priority policies.

If the scan ends without a decision the result is ``guard_failed`` for
the first blocked policy, or ``no_matching_policy`` when nothing matched.
"""

import logging
from typing import Callable, List, Optional, Union
from datetime import datetime
from dataclasses import dataclass, field

from erpflow.core.config import Settings, get_settings

from .decision import Decision, DenialReason, FallbackDecision, GuardFailure
from .definitions import ActionPolicy, EvaluationInput
from .fallback import FallbackAdapter
from .guards import GuardContext, GuardEvaluator
from .stores import GuardSources, PolicyStore

logger = logging.getLogger(__name__)


@dataclass
class _ScanState:
    """Accumulator for the policy scan: first matched-but-blocked policy."""
    blocked_policy_id: Optional[str] = None
    blocked_failures: List[GuardFailure] = field(default_factory=list)

    def remember(self, policy_id: str, failures: List[GuardFailure]) -> "_ScanState":
        if self.blocked_policy_id is not None:
            return self
        return _ScanState(blocked_policy_id=policy_id, blocked_failures=list(failures))

    def finish(self) -> Decision:
        if self.blocked_policy_id is not None:
            return Decision.deny(
                DenialReason.GUARD_FAILED,
                policy_id=self.blocked_policy_id,
                guard_failures=self.blocked_failures,
            )
        return Decision.deny(DenialReason.NO_MATCHING_POLICY)


class ActionPolicyEngine:
    """
    Evaluates actions against configured action policies.

    The engine is stateless between calls: every evaluation reads the
    policies and guard state afresh and returns a ``Decision``. It never
    raises for business reasons.
    """

    def __init__(
        self,
        policies: PolicyStore,
        sources: GuardSources,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the policy engine.

        Args:
            policies: Store listing enabled policies
            sources: State providers used by guards
            settings: Application settings
            clock: Evaluation time source (UTC now by default)
        """
        self.policies = policies
        self.settings = settings or get_settings()
        self.guards = GuardEvaluator(sources, settings=self.settings, clock=clock)

    def evaluate(self, inp: EvaluationInput) -> Decision:
        """
        Evaluate an action against the enabled policies.

        Args:
            inp: Flow type, action key, actor, state, reason and target

        Returns:
            Decision describing whether the action is allowed
        """
        action_key = inp.normalized_action_key
        candidates = self.policies.list_enabled(inp.flow_type, action_key)
        ctx = self.guards.build_context(
            inp.flow_type,
            state=inp.state,
            target_table=inp.target_table,
            target_id=inp.target_id,
        )
        reason_text = inp.normalized_reason

        scan = _ScanState()
        for policy in candidates:
            outcome = self._step(scan, policy, inp, ctx, reason_text)
            if isinstance(outcome, Decision):
                return outcome
            scan = outcome

        decision = scan.finish()
        logger.debug(
            "No policy allowed %s/%s: %s",
            inp.flow_type, action_key, decision.reason.value,
        )
        return decision

    def evaluate_with_fallback(self, inp: EvaluationInput) -> FallbackDecision:
        """Evaluate and adapt the result for callers without explicit policies."""
        return FallbackAdapter(self, settings=self.settings).evaluate(inp)

    def _step(
        self,
        scan: _ScanState,
        policy: ActionPolicy,
        inp: EvaluationInput,
        ctx: GuardContext,
        reason_text: str,
    ) -> Union[Decision, _ScanState]:
        """Fold one policy into the scan; returns a terminal Decision or the next state."""
        if not policy.is_enabled:
            return scan
        if not policy.state_constraints.matches(inp.state):
            logger.debug("Policy %s skipped: state constraints", policy.id)
            return scan
        if not policy.subjects.matches(inp.actor):
            logger.debug("Policy %s skipped: subjects", policy.id)
            return scan

        failures = self.guards.evaluate(policy.guards, ctx)
        if failures:
            logger.debug(
                "Policy %s blocked by guards: %s",
                policy.id, ", ".join(f"{f.type}:{f.reason}" for f in failures),
            )
            return scan.remember(policy.id, failures)

        if policy.require_reason and not reason_text:
            return Decision.deny(
                DenialReason.REASON_REQUIRED,
                policy_id=policy.id,
                require_reason=True,
            )
        return Decision.allow(policy.id, require_reason=policy.require_reason)
