"""Guard checks for action policies.

A guard is a named precondition evaluated against live system state.
All guards of a policy must pass (AND); each guard is checked
independently so that the failure list names every blocking guard.

Guard list entries are either a bare type name or an object::

    guards:
      - approval_open
      - type: editable_days
        days: 7

Supported guard types:
  approval_open        no pending approval instance for the target
  project_closed       none of the state's projects is closed
  period_lock          no active lock covers the state's period/project pairs
  editable_days        every work date lies inside the trailing edit window
  chat_ack_completed   every linked acknowledgement request is complete

Bad configuration never raises: it becomes a failure, so a broken policy
blocks instead of silently allowing.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from itertools import product
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field

from erpflow.core.config import Settings, get_settings

from .decision import GuardFailure, GuardFailureReason
from .definitions import normalize_string, normalize_string_list
from .stores import GuardSources, PeriodLockRecord

logger = logging.getLogger(__name__)

PERIOD_KEY_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class GuardType(str, Enum):
    """Closed set of guard kinds the evaluator knows how to check."""

    APPROVAL_OPEN = "approval_open"
    PROJECT_CLOSED = "project_closed"
    PERIOD_LOCK = "period_lock"
    EDITABLE_DAYS = "editable_days"
    CHAT_ACK_COMPLETED = "chat_ack_completed"


@dataclass
class GuardSpec:
    """
    One parsed guard entry.

    ``kind`` is None when ``name`` is not a known guard type; such specs
    always fail.
    """
    name: str
    kind: Optional[GuardType]
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GuardContext:
    """Per-evaluation inputs shared by all guards of a policy."""
    flow_type: str
    state: Dict[str, Any]
    target_table: str
    target_id: str
    now: datetime

    @property
    def has_target(self) -> bool:
        return bool(self.target_table and self.target_id)


def parse_guards(raw: Any) -> Tuple[List[GuardSpec], List[GuardFailure]]:
    """
    Parse an authored guard list.

    Args:
        raw: Guard list as stored on the policy (None means no guards)

    Returns:
        Tuple of (parsed specs, schema failures)
    """
    if raw is None:
        return [], []
    if not isinstance(raw, list):
        return [], [GuardFailure(type="guards", reason=GuardFailureReason.INVALID_SCHEMA.value)]

    specs: List[GuardSpec] = []
    failures: List[GuardFailure] = []
    for item in raw:
        if isinstance(item, str):
            name, options = normalize_string(item), {}
        elif isinstance(item, dict):
            name = normalize_string(item.get("type"))
            options = {k: v for k, v in item.items() if k != "type"}
        else:
            failures.append(GuardFailure(type="guard", reason=GuardFailureReason.INVALID_ITEM.value))
            continue

        if not name:
            failures.append(GuardFailure(type="guard", reason=GuardFailureReason.TYPE_REQUIRED.value))
            continue

        try:
            kind: Optional[GuardType] = GuardType(name)
        except ValueError:
            kind = None
        specs.append(GuardSpec(name=name, kind=kind, options=options))

    return specs, failures


# ---------------------------------------------------------------------------
# State extraction
# ---------------------------------------------------------------------------


def _first_present(state: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in state and state[key] is not None:
            return state[key]
    return None


def _unique(values: List[str]) -> List[str]:
    seen: Set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def extract_project_ids(state: Dict[str, Any]) -> List[str]:
    """Project ids from ``projectId`` and ``projectIds``, first-seen order."""
    ids = []
    single = normalize_string(_first_present(state, "projectId", "project_id"))
    if single:
        ids.append(single)
    ids.extend(normalize_string_list(_first_present(state, "projectIds", "project_ids")))
    return _unique(ids)


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = normalize_string(value)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def extract_work_dates(state: Dict[str, Any]) -> List[date]:
    """Work dates from ``workDate`` and ``workDates``; unparseable values are dropped."""
    raw: List[Any] = []
    single = _first_present(state, "workDate", "work_date")
    if single is not None:
        raw.append(single)
    many = _first_present(state, "workDates", "work_dates")
    if isinstance(many, (list, tuple)):
        raw.extend(many)
    dates = [d for d in (_parse_date(v) for v in raw) if d is not None]
    return sorted(set(dates))


def to_period_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def extract_period_keys(state: Dict[str, Any]) -> List[str]:
    """Period keys (YYYY-MM) given directly or implied by work dates."""
    keys = []
    single = normalize_string(_first_present(state, "periodKey", "period_key"))
    if single:
        keys.append(single)
    keys.extend(normalize_string_list(_first_present(state, "periodKeys", "period_keys")))
    keys = [k for k in keys if PERIOD_KEY_PATTERN.match(k)]
    keys.extend(to_period_key(d) for d in extract_work_dates(state))
    return _unique(keys)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


GuardHandler = Callable[[GuardSpec, GuardContext], Optional[GuardFailure]]


class GuardEvaluator:
    """
    Evaluates a policy's guard list against the state providers.

    Dispatch is an exhaustive map over ``GuardType``; specs with an
    unrecognized name fail with ``unknown_guard_type``.
    """

    def __init__(
        self,
        sources: GuardSources,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the guard evaluator.

        Args:
            sources: Read interfaces for approvals, projects, locks, settings and acks
            settings: Application settings (defaults to ``get_settings()``)
            clock: Returns the evaluation time; defaults to UTC now
        """
        self.sources = sources
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[GuardType, GuardHandler] = {
            GuardType.APPROVAL_OPEN: self._check_approval_open,
            GuardType.PROJECT_CLOSED: self._check_project_closed,
            GuardType.PERIOD_LOCK: self._check_period_lock,
            GuardType.EDITABLE_DAYS: self._check_editable_days,
            GuardType.CHAT_ACK_COMPLETED: self._check_chat_ack_completed,
        }
        missing = set(GuardType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No guard handler for: {sorted(m.value for m in missing)}")

    def build_context(
        self,
        flow_type: str,
        state: Any = None,
        target_table: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> GuardContext:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return GuardContext(
            flow_type=flow_type,
            state=state if isinstance(state, dict) else {},
            target_table=normalize_string(target_table),
            target_id=normalize_string(target_id),
            now=now,
        )

    def evaluate(self, guards: Any, ctx: GuardContext) -> List[GuardFailure]:
        """
        Evaluate every guard in the list.

        Args:
            guards: Authored guard list
            ctx: Evaluation context

        Returns:
            Failures in declaration order; empty when all guards pass
        """
        specs, failures = parse_guards(guards)
        for spec in specs:
            failure = self.check(spec, ctx)
            if failure is not None:
                failures.append(failure)
        return failures

    def check(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        """Run a single guard; returns its failure or None."""
        if spec.kind is None:
            return GuardFailure(type=spec.name, reason=GuardFailureReason.UNKNOWN_GUARD_TYPE.value)
        failure = self._handlers[spec.kind](spec, ctx)
        if failure is not None:
            logger.debug("Guard %s failed: %s", spec.name, failure.reason)
        return failure

    # -- approval_open -----------------------------------------------------

    def _check_approval_open(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        guard_type = GuardType.APPROVAL_OPEN.value
        if not ctx.has_target:
            return GuardFailure(type=guard_type, reason=GuardFailureReason.TARGET_REQUIRED.value)

        open_approval = self.sources.approvals.find_open(ctx.flow_type, ctx.target_table, ctx.target_id)
        if open_approval is None:
            return None
        return GuardFailure(
            type=guard_type,
            reason=GuardFailureReason.APPROVAL_IN_PROGRESS.value,
            details={"approvalInstanceId": open_approval.id, "status": open_approval.status},
        )

    # -- project_closed ----------------------------------------------------

    def _check_project_closed(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        guard_type = GuardType.PROJECT_CLOSED.value
        project_ids = extract_project_ids(ctx.state)
        if not project_ids:
            return GuardFailure(type=guard_type, reason=GuardFailureReason.PROJECT_REQUIRED.value)

        closed = set(self.sources.projects.find_closed_among(project_ids))
        if not closed:
            return None
        return GuardFailure(
            type=guard_type,
            reason=GuardFailureReason.PROJECT_IS_CLOSED.value,
            details={"projectIds": [p for p in project_ids if p in closed]},
        )

    # -- period_lock -------------------------------------------------------

    def _check_period_lock(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        guard_type = GuardType.PERIOD_LOCK.value
        period_keys = extract_period_keys(ctx.state)
        if not period_keys:
            return GuardFailure(type=guard_type, reason=GuardFailureReason.PERIOD_REQUIRED.value)

        project_ids = extract_project_ids(ctx.state)
        pairs: List[Tuple[str, Optional[str]]] = list(product(period_keys, project_ids or [None]))

        if len(pairs) == 1:
            period_key, project_id = pairs[0]
            lock = self.sources.period_locks.find_lock(period_key, project_id)
            locks: List[PeriodLockRecord] = [lock] if lock is not None else []
        else:
            locks = self.sources.period_locks.find_active(period_keys, project_ids)

        # Index once so each pair is a dictionary lookup.
        by_period: Dict[str, List[PeriodLockRecord]] = {}
        for lock in locks:
            by_period.setdefault(lock.period_key, []).append(lock)

        hits = []
        for period_key, project_id in pairs:
            for lock in by_period.get(period_key, []):
                if lock.covers(period_key, project_id):
                    hits.append({
                        "periodKey": period_key,
                        "projectId": project_id,
                        "lockId": lock.id,
                        "scope": lock.scope,
                    })
                    break

        if not hits:
            return None
        return GuardFailure(
            type=guard_type,
            reason=GuardFailureReason.PERIOD_LOCKED.value,
            details={"locks": hits},
        )

    # -- editable_days -----------------------------------------------------

    def _editable_days(self, spec: GuardSpec) -> int:
        configured = spec.options.get("days")
        if isinstance(configured, int) and not isinstance(configured, bool):
            return max(configured, 0)
        stored = self.sources.worklog_settings.get_editable_days()
        if isinstance(stored, int) and not isinstance(stored, bool):
            return max(stored, 0)
        return self.settings.default_editable_days

    def _check_editable_days(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        guard_type = GuardType.EDITABLE_DAYS.value
        work_dates = extract_work_dates(ctx.state)
        if not work_dates:
            return GuardFailure(type=guard_type, reason=GuardFailureReason.WORK_DATE_REQUIRED.value)

        editable_days = self._editable_days(spec)
        min_date = ctx.now.astimezone(timezone.utc).date() - timedelta(days=editable_days)
        expired = [d for d in work_dates if d < min_date]
        if not expired:
            return None
        return GuardFailure(
            type=guard_type,
            reason=GuardFailureReason.EDIT_WINDOW_EXPIRED.value,
            details={
                "editableDays": editable_days,
                "minDate": min_date.isoformat(),
                "workDates": [d.isoformat() for d in expired],
            },
        )

    # -- chat_ack_completed ------------------------------------------------

    def _check_chat_ack_completed(self, spec: GuardSpec, ctx: GuardContext) -> Optional[GuardFailure]:
        guard_type = GuardType.CHAT_ACK_COMPLETED.value
        if not ctx.has_target:
            return GuardFailure(type=guard_type, reason=GuardFailureReason.TARGET_REQUIRED.value)
        if ctx.target_table not in self.settings.ack_target_tables_list:
            return GuardFailure(
                type=guard_type,
                reason=GuardFailureReason.UNSUPPORTED_TARGET.value,
                details={"targetTable": ctx.target_table},
            )

        links = self.sources.ack_links.find_by_target(ctx.target_table, ctx.target_id)
        request_ids = _unique([link.ack_request_id for link in links if link.ack_request_id])
        if not request_ids:
            return None

        requests = {r.id: r for r in self.sources.ack_requests.find_by_ids(request_ids)}
        active_ids = [rid for rid in request_ids if rid in requests and requests[rid].is_active]

        acked: Dict[str, Set[str]] = {}
        if active_ids:
            for ack in self.sources.acks.find_by_request(active_ids):
                acked.setdefault(ack.ack_request_id, set()).add(ack.user_id)

        now = ctx.now
        problems = []
        for request_id in request_ids:
            request = requests.get(request_id)
            if request is None:
                problems.append({"ackRequestId": request_id, "status": GuardFailureReason.MISSING_LINK.value})
                continue
            if not request.is_active:
                continue

            required = _unique(normalize_string_list(request.required_user_ids))
            missing = [u for u in required if u not in acked.get(request_id, set())]
            if not missing:
                continue

            due_at = request.due_at
            if due_at is not None and due_at.tzinfo is None:
                due_at = due_at.replace(tzinfo=timezone.utc)
            is_expired = due_at is not None and due_at <= now
            problems.append({
                "ackRequestId": request_id,
                "status": (GuardFailureReason.EXPIRED if is_expired else GuardFailureReason.INCOMPLETE).value,
                "requiredCount": len(required),
                "ackedCount": len(required) - len(missing),
                "missingUserIds": missing,
                "dueAt": due_at.isoformat() if due_at else None,
            })

        if not problems:
            return None
        return GuardFailure(
            type=guard_type,
            reason=problems[0]["status"],
            details={"requests": problems},
        )
