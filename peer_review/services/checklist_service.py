"""
Fieldwork Checklist Service — item lifecycle, override ledger and phase gate.

Design decisions:
    - Every mutation locks the owning ``reviews`` row (SELECT … FOR UPDATE)
      before reading evidence, so the rule is re-checked at the moment of
      commit and concurrent toggles/overrides on one review are serialised.
    - Rule outcomes are recomputed on every read from a fresh
      ``EvaluationContext``; ``is_completed`` is only the user's action.
    - Overrides write to the append-only ``checklist_override_events``
      ledger; the item row mirrors the latest state.
    - Expected rule failures on toggle come back as ``(None, failure)``;
      authorization and transition problems raise.

Gate semantics:
    Fieldwork may complete only when every item is completed or overridden.
    The rule result of an unticked item is reported with its blocker but
    never opens the gate on its own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from peer_review.core.exceptions import (
    ConflictError,
    InvalidOverrideError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import write_audit
from peer_review.models.cap import CorrectiveActionPlan
from peer_review.models.checklist import CHECKLIST_PHASES, ChecklistItem, ChecklistOverrideEvent
from peer_review.models.evidence import Document, Finding
from peer_review.models.roster import (
    ADMIN_ROLES,
    CHECKLIST_EDIT_ROLES,
    FIELDWORK_COMPLETION_ROLES,
    Review,
)
from peer_review.services.checklist_rules import (
    ApprovalRequiredRule,
    DocumentSnapshot,
    EvaluationContext,
    FindingSnapshot,
    ItemState,
    evaluate_rule,
    parse_rule,
    rule_to_dict,
)
from peer_review.services.checklist_template import CHECKLIST_TEMPLATE

logger = logging.getLogger(__name__)

MIN_OVERRIDE_JUSTIFICATION = 10

# Review phases from which fieldwork may be closed
FIELDWORK_PHASES = frozenset({"PREPARATION", "ON_SITE"})
FIELDWORK_TARGET_PHASE = "REPORTING"
FIELDWORK_TARGET_STATUS = "REPORT_DRAFTING"


# ── Lookups ──────────────────────────────────────────────────────────────────


def _get_review(session, review_id: int, *, lock: bool = False) -> Review:
    q = session.query(Review).filter(Review.id == review_id)
    if lock:
        q = q.with_for_update()
    review = q.one_or_none()
    if review is None:
        raise NotFoundError("Review", review_id)
    return review


def _get_item(session, review_id: int, item_code: str, *, lock: bool = False) -> ChecklistItem:
    q = session.query(ChecklistItem).filter_by(review_id=review_id, item_code=item_code)
    if lock:
        q = q.with_for_update()
    item = q.one_or_none()
    if item is None:
        raise NotFoundError("ChecklistItem", f"{review_id}/{item_code}")
    return item


def _load_items(session, review_id: int) -> list[ChecklistItem]:
    return (
        session.query(ChecklistItem)
        .filter_by(review_id=review_id)
        .order_by(ChecklistItem.sort_order, ChecklistItem.id)
        .all()
    )


def _actor_name(actor) -> str:
    return actor.full_name or actor.email


# ── Evaluation snapshot ──────────────────────────────────────────────────────


def build_context(session, review: Review, items: list[ChecklistItem]) -> EvaluationContext:
    """Capture the evidentiary state the rule engine needs, in four queries."""
    documents = tuple(
        DocumentSnapshot(
            id=d.id, category=d.category, status=d.status,
            file_name=d.file_name, finding_id=d.finding_id,
        )
        for d in session.query(Document)
        .filter(Document.review_id == review.id, Document.is_deleted.is_(False))
        .order_by(Document.id)
        .all()
    )

    findings = session.query(Finding).filter(Finding.review_id == review.id).order_by(Finding.id).all()
    finding_ids = [f.id for f in findings]
    evidence_counts, cap_statuses = {}, {}
    if finding_ids:
        evidence_counts = dict(
            session.query(Document.finding_id, func.count(Document.id))
            .filter(Document.finding_id.in_(finding_ids), Document.is_deleted.is_(False))
            .group_by(Document.finding_id)
            .all()
        )
        cap_statuses = dict(
            session.query(CorrectiveActionPlan.finding_id, CorrectiveActionPlan.status)
            .filter(CorrectiveActionPlan.finding_id.in_(finding_ids))
            .all()
        )

    return EvaluationContext(
        review_phase=review.phase,
        documents=documents,
        findings=tuple(
            FindingSnapshot(
                id=f.id, status=f.status, cap_required=f.cap_required,
                cap_status=cap_statuses.get(f.id),
                evidence_count=evidence_counts.get(f.id, 0),
                reference_number=f.reference_number,
            )
            for f in findings
        ),
        items={
            i.item_code: ItemState(
                code=i.item_code, label=i.label,
                is_completed=i.is_completed, is_overridden=i.is_overridden,
            )
            for i in items
        },
    )


def _evaluate(item: ChecklistItem, context: EvaluationContext):
    return evaluate_rule(parse_rule(item.validation_rule), context)


def _is_blocker(item: ChecklistItem) -> bool:
    return not item.is_satisfied


def _blocker_reason(validation: dict) -> str:
    if not validation["is_valid"] and validation["reason"]:
        return validation["reason"]
    return "Item not completed"


def _item_view(item: ChecklistItem, result) -> dict:
    data = item.to_dict()
    data["validation"] = result.to_dict()
    data["is_satisfied"] = item.is_satisfied
    data["is_blocking"] = _is_blocker(item)
    return data


# ── Initialize / read ────────────────────────────────────────────────────────


def initialize_checklist(session, review_id: int, actor=None) -> tuple[list[dict], bool]:
    """Instantiate the fourteen template items for a review.

    Idempotent: when items already exist they are returned unchanged.
    Returns ``(items, created)``.
    """
    review = _get_review(session, review_id)
    existing = _load_items(session, review.id)
    if existing:
        context = build_context(session, review, existing)
        return [_item_view(i, _evaluate(i, context)) for i in existing], False

    for definition in CHECKLIST_TEMPLATE:
        session.add(ChecklistItem(
            review_id=review.id,
            item_code=definition.code,
            phase=definition.phase,
            sort_order=definition.sort_order,
            label=definition.label,
            guidance=definition.guidance,
            validation_rule=rule_to_dict(definition.rule),
        ))
    try:
        session.flush()
    except IntegrityError:
        # A concurrent request initialised the same review first.
        session.rollback()
        items = _load_items(session, review_id)
        review = _get_review(session, review_id)
        context = build_context(session, review, items)
        return [_item_view(i, _evaluate(i, context)) for i in items], False

    write_audit(
        entity_type="review", entity_id=review.id, action="checklist.initialized",
        actor=actor, review_id=review.id, diff={"items": len(CHECKLIST_TEMPLATE)},
        session=session,
    )
    session.commit()
    logger.info(
        "Checklist initialized review=%s items=%d", review.id, len(CHECKLIST_TEMPLATE),
        extra={"review_id": review.id, "event_type": "checklist.initialized"},
    )
    items = _load_items(session, review.id)
    context = build_context(session, review, items)
    return [_item_view(i, _evaluate(i, context)) for i in items], True


def get_checklist(session, review_id: int) -> dict:
    """Items with freshly evaluated rules plus the completion summary.

    Initialises the checklist on first access.
    """
    review = _get_review(session, review_id)
    if not _load_items(session, review.id):
        initialize_checklist(session, review.id)
    items = _load_items(session, review.id)
    context = build_context(session, review, items)
    views = [_item_view(i, _evaluate(i, context)) for i in items]
    return {
        "review_id": review.id,
        "review_phase": review.phase,
        "items": views,
        "completion": _summarise(items, views),
    }


def _summarise(items: list[ChecklistItem], views: list[dict]) -> dict:
    by_phase = {phase: {"total": 0, "completed": 0} for phase in CHECKLIST_PHASES}
    blockers = []
    for item, view in zip(items, views):
        bucket = by_phase.setdefault(item.phase, {"total": 0, "completed": 0})
        bucket["total"] += 1
        if item.is_satisfied:
            bucket["completed"] += 1
        if view["is_blocking"]:
            blockers.append({
                "item_code": item.item_code,
                "label": item.label,
                "phase": item.phase,
                "reason": _blocker_reason(view["validation"]),
            })
    total = len(items)
    completed = sum(1 for i in items if i.is_satisfied)
    return {
        "initialized": total > 0,
        "total_items": total,
        "completed_items": completed,
        "progress": round(completed * 100 / total) if total else 0,
        "by_phase": by_phase,
        "can_complete_fieldwork": total > 0 and not blockers,
        "blockers": blockers,
    }


def get_completion_status(session, review_id: int) -> dict:
    """Recompute every item and aggregate per-phase and overall progress.

    Pure read; never initialises or writes.
    """
    review = _get_review(session, review_id)
    items = _load_items(session, review.id)
    context = build_context(session, review, items)
    views = [_item_view(i, _evaluate(i, context)) for i in items]
    status = _summarise(items, views)
    status["review_id"] = review.id
    status["review_phase"] = review.phase
    return status


# ── Toggle ───────────────────────────────────────────────────────────────────


def _failure(message: str, status: int, result) -> dict:
    return {"error": message, "status": status, "validation": result.to_dict()}


def toggle_item(session, review_id: int, item_code: str, actor, *,
                is_completed: bool | None = None,
                now: datetime | None = None) -> tuple[dict | None, dict | None]:
    """Tick or untick a checklist item.

    ``is_completed`` None flips the current state.  Toggling an overridden
    item clears the override; the item then stays completed only if its
    rule passes.

    Returns:
        ``(item_view, None)`` on success,
        ``(None, {"error", "status", "validation"})`` when the rule refuses
        completion.

    Raises:
        NotFoundError, PermissionDeniedError.
    """
    now = now or datetime.now(timezone.utc)
    if actor is None or actor.role not in CHECKLIST_EDIT_ROLES:
        raise PermissionDeniedError(
            "Only review team roles may update checklist items",
            required_roles=list(CHECKLIST_EDIT_ROLES),
        )

    review = _get_review(session, review_id, lock=True)
    item = _get_item(session, review.id, item_code, lock=True)
    rule = parse_rule(item.validation_rule)

    if item.is_overridden:
        if actor.role not in ADMIN_ROLES:
            raise PermissionDeniedError(
                "Only administrators and coordinators can clear an override",
                required_roles=list(ADMIN_ROLES),
            )
        _clear_override(session, item, actor, now, via="toggle")
        items = _load_items(session, review.id)
        result = evaluate_rule(rule, build_context(session, review, items))
        keep = result.is_valid and is_completed is not False
        _set_completion(item, actor if keep else None, now)
        write_audit(
            entity_type="checklist_item", entity_id=item.id,
            action="checklist.completed" if keep else "checklist.uncompleted",
            actor=actor, review_id=review.id,
            diff={"item_code": item.item_code, "override_cleared": True, "is_valid": result.is_valid},
            session=session,
        )
        session.commit()
        logger.info(
            "Checklist override cleared by toggle review=%s item=%s completed=%s",
            review.id, item.item_code, keep,
            extra={"review_id": review.id, "item_code": item.item_code,
                   "actor_id": actor.id, "event_type": "checklist.toggle"},
        )
        view = _item_view(item, result)
        view["override_cleared"] = True
        return view, None

    target = (not item.is_completed) if is_completed is None else is_completed
    items = _load_items(session, review.id)
    result = evaluate_rule(rule, build_context(session, review, items))

    if target == item.is_completed:
        session.rollback()
        return _item_view(item, result), None

    if target:
        if not result.is_valid:
            session.rollback()
            return None, _failure(result.reason or "Cannot complete this item yet", 422, result)
        if isinstance(rule, ApprovalRequiredRule) and actor.role not in rule.approver_roles:
            raise PermissionDeniedError(
                f"Only {' or '.join(rule.approver_roles)} can approve this item",
                required_roles=list(rule.approver_roles),
            )
        _set_completion(item, actor, now)
        action = "checklist.completed"
    else:
        _set_completion(item, None, now)
        action = "checklist.uncompleted"

    write_audit(
        entity_type="checklist_item", entity_id=item.id, action=action,
        actor=actor, review_id=review.id,
        diff={"item_code": item.item_code, "is_completed": {"old": not target, "new": target}},
        session=session,
    )
    session.commit()
    logger.info(
        "Checklist item %s review=%s item=%s by user=%s",
        "completed" if target else "uncompleted", review.id, item.item_code, actor.id,
        extra={"review_id": review.id, "item_code": item.item_code,
               "actor_id": actor.id, "event_type": action},
    )
    return _item_view(item, result), None


def _set_completion(item: ChecklistItem, actor, now: datetime) -> None:
    item.is_completed = actor is not None
    item.completed_by_id = actor.id if actor is not None else None
    item.completed_at = now if actor is not None else None


# ── Override ledger ──────────────────────────────────────────────────────────


def _require_override_role(actor, action: str) -> None:
    if actor is None or actor.role not in ADMIN_ROLES:
        raise PermissionDeniedError(
            f"Only administrators and coordinators can {action} checklist overrides",
            required_roles=list(ADMIN_ROLES),
        )


def _clear_override(session, item: ChecklistItem, actor, now: datetime, *, via: str) -> None:
    session.add(ChecklistOverrideEvent(
        item_id=item.id,
        review_id=item.review_id,
        action="override_removed",
        justification=f"Cleared via {via}",
        actor_id=actor.id,
        actor_name_snapshot=_actor_name(actor),
        occurred_at=now,
    ))
    item.is_overridden = False
    item.override_reason = None
    item.overridden_by_id = None
    item.overridden_at = None
    write_audit(
        entity_type="checklist_item", entity_id=item.id, action="checklist.override_removed",
        actor=actor, review_id=item.review_id, diff={"item_code": item.item_code, "via": via},
        session=session,
    )


def override_item(session, review_id: int, item_code: str, actor, justification: str, *,
                  min_justification: int = MIN_OVERRIDE_JUSTIFICATION,
                  now: datetime | None = None) -> dict:
    """Mark an item satisfied for gating regardless of its rule outcome.

    The rule is still evaluated and returned so the failure stays visible.

    Raises:
        PermissionDeniedError: actor is not a coordinator/administrator.
        InvalidOverrideError: justification shorter than the minimum.
        ConflictError: the item is already overridden.
    """
    now = now or datetime.now(timezone.utc)
    _require_override_role(actor, "issue")
    justification = (justification or "").strip()
    if len(justification) < min_justification:
        raise InvalidOverrideError(
            f"Override reason must be at least {min_justification} characters",
            details={"min_length": min_justification, "length": len(justification)},
        )

    review = _get_review(session, review_id, lock=True)
    item = _get_item(session, review.id, item_code, lock=True)
    if item.is_overridden:
        raise ConflictError("ChecklistOverride", "item_code", item.item_code)

    session.add(ChecklistOverrideEvent(
        item_id=item.id,
        review_id=review.id,
        action="overridden",
        justification=justification,
        actor_id=actor.id,
        actor_name_snapshot=_actor_name(actor),
        occurred_at=now,
    ))
    item.is_overridden = True
    item.override_reason = justification
    item.overridden_by_id = actor.id
    item.overridden_at = now
    write_audit(
        entity_type="checklist_item", entity_id=item.id, action="checklist.overridden",
        actor=actor, review_id=review.id,
        diff={"item_code": item.item_code, "justification": justification},
        session=session,
    )
    session.commit()
    logger.info(
        "Checklist item overridden review=%s item=%s by user=%s",
        review.id, item.item_code, actor.id,
        extra={"review_id": review.id, "item_code": item.item_code,
               "actor_id": actor.id, "event_type": "checklist.overridden"},
    )
    items = _load_items(session, review.id)
    return _item_view(item, _evaluate(item, build_context(session, review, items)))


def remove_override(session, review_id: int, item_code: str, actor, *,
                    now: datetime | None = None) -> dict:
    """Revert an override; ordinary validation applies again."""
    now = now or datetime.now(timezone.utc)
    _require_override_role(actor, "remove")
    review = _get_review(session, review_id, lock=True)
    item = _get_item(session, review.id, item_code, lock=True)
    if not item.is_overridden:
        raise ValidationError(f"Checklist item {item.item_code} is not overridden")

    _clear_override(session, item, actor, now, via="remove_override")
    session.commit()
    logger.info(
        "Checklist override removed review=%s item=%s by user=%s",
        review.id, item.item_code, actor.id,
        extra={"review_id": review.id, "item_code": item.item_code,
               "actor_id": actor.id, "event_type": "checklist.override_removed"},
    )
    items = _load_items(session, review.id)
    return _item_view(item, _evaluate(item, build_context(session, review, items)))


def list_override_events(session, review_id: int, item_code: str | None = None) -> list[dict]:
    _get_review(session, review_id)
    q = session.query(ChecklistOverrideEvent).filter(ChecklistOverrideEvent.review_id == review_id)
    if item_code is not None:
        item = _get_item(session, review_id, item_code)
        q = q.filter(ChecklistOverrideEvent.item_id == item.id)
    return [e.to_dict() for e in q.order_by(ChecklistOverrideEvent.occurred_at, ChecklistOverrideEvent.id).all()]


# ── Phase gate ───────────────────────────────────────────────────────────────


def complete_fieldwork(session, review_id: int, actor) -> dict:
    """Move the review to REPORTING once the checklist gate is clear.

    The review row is locked before the gate is evaluated and stays locked
    until the phase change commits.

    Raises:
        PermissionDeniedError: actor lacks a fieldwork completion role.
        InvalidTransitionError: wrong phase, checklist missing, or blockers remain.
    """
    if actor is None or actor.role not in FIELDWORK_COMPLETION_ROLES:
        raise PermissionDeniedError(
            "Only lead reviewers and coordinators can complete fieldwork",
            required_roles=list(FIELDWORK_COMPLETION_ROLES),
        )

    review = _get_review(session, review_id, lock=True)
    if review.phase not in FIELDWORK_PHASES:
        session.rollback()
        raise InvalidTransitionError("Review", review.phase, FIELDWORK_TARGET_PHASE)

    items = (
        session.query(ChecklistItem)
        .filter_by(review_id=review.id)
        .order_by(ChecklistItem.sort_order)
        .with_for_update()
        .all()
    )
    context = build_context(session, review, items)
    views = [_item_view(i, _evaluate(i, context)) for i in items]
    summary = _summarise(items, views)
    if not summary["can_complete_fieldwork"]:
        session.rollback()
        labels = ", ".join(b["label"] for b in summary["blockers"]) or "checklist not initialized"
        raise InvalidTransitionError(
            "Review", review.phase, FIELDWORK_TARGET_PHASE,
            message=f"Cannot complete fieldwork. Incomplete items: {labels}",
            details={"blockers": summary["blockers"]},
        )

    old_phase, old_status = review.phase, review.status
    review.phase = FIELDWORK_TARGET_PHASE
    review.status = FIELDWORK_TARGET_STATUS
    write_audit(
        entity_type="review", entity_id=review.id, action="review.fieldwork_completed",
        actor=actor, review_id=review.id,
        diff={
            "phase": {"old": old_phase, "new": review.phase},
            "status": {"old": old_status, "new": review.status},
            "overridden_items": [i.item_code for i in items if i.is_overridden],
        },
        session=session,
    )
    session.commit()
    logger.info(
        "Fieldwork completed review=%s by user=%s", review.id, actor.id,
        extra={"review_id": review.id, "actor_id": actor.id,
               "event_type": "review.fieldwork_completed"},
    )
    return {"review": review.to_dict()}
