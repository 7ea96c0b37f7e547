"""
Checklist Rule Engine — validation rules for fieldwork checklist items.

Each checklist item carries at most one rule.  Rules are a closed set of
frozen dataclasses; ``parse_rule`` turns the stored JSON into one of them
and rejects unknown kinds up front, so evaluation never meets a rule it
cannot handle.

``evaluate_rule`` is a pure function of an ``EvaluationContext`` snapshot
(documents, findings, sibling item states, review phase).  It never touches
the database.  A failed evaluation is returned as a ``ValidationResult``,
not raised.

Usage:
    rule = parse_rule({"type": "DOCUMENT_EXISTS", "category": "EVIDENCE", "min_count": 1})
    result = evaluate_rule(rule, context)
    # -> ValidationResult(rule_kind="DOCUMENT_EXISTS", is_valid=False, reason=..., required=1, current=0)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Union

from peer_review.core.exceptions import ValidationError
from peer_review.models.evidence import (
    DOCUMENT_CATEGORIES,
    DOCUMENT_STATUSES,
    FINDING_STATUSES,
    REVIEWED_DOCUMENT_STATUSES,
)
from peer_review.models.roster import REVIEW_PHASES, USER_ROLES


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class RuleKind(str, Enum):
    DOCUMENT_EXISTS = "DOCUMENT_EXISTS"
    DOCUMENTS_REVIEWED = "DOCUMENTS_REVIEWED"
    FINDINGS_EXIST = "FINDINGS_EXIST"
    FINDINGS_HAVE_EVIDENCE = "FINDINGS_HAVE_EVIDENCE"
    PREREQUISITE_ITEMS = "PREREQUISITE_ITEMS"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    MANUAL_OR_DOCUMENT = "MANUAL_OR_DOCUMENT"
    AUTO_CHECK = "AUTO_CHECK"
    PHASE_CHECK = "PHASE_CHECK"
    DOCUMENT_OR_COMMENTS = "DOCUMENT_OR_COMMENTS"


class AutoCondition(str, Enum):
    FINDINGS_COUNT_GT_0 = "FINDINGS_COUNT_GT_0"
    ALL_CAPS_SUBMITTED = "ALL_CAPS_SUBMITTED"
    REPORT_GENERATED = "REPORT_GENERATED"


# ═════════════════════════════════════════════════════════════════════════════
# Rule variants
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DocumentExistsRule:
    category: str
    min_count: int = 1
    required_statuses: tuple[str, ...] = ()
    kind = RuleKind.DOCUMENT_EXISTS


@dataclass(frozen=True)
class DocumentsReviewedRule:
    category: str
    all_must_be_reviewed: bool = True
    kind = RuleKind.DOCUMENTS_REVIEWED


@dataclass(frozen=True)
class FindingsExistRule:
    min_count: int = 1
    status_filter: tuple[str, ...] = ()
    kind = RuleKind.FINDINGS_EXIST


@dataclass(frozen=True)
class FindingsHaveEvidenceRule:
    all_findings_must_have_evidence: bool = True
    kind = RuleKind.FINDINGS_HAVE_EVIDENCE


@dataclass(frozen=True)
class PrerequisiteItemsRule:
    required_items: tuple[str, ...]
    kind = RuleKind.PREREQUISITE_ITEMS


@dataclass(frozen=True)
class ApprovalRequiredRule:
    approver_roles: tuple[str, ...]
    kind = RuleKind.APPROVAL_REQUIRED


@dataclass(frozen=True)
class ManualOrDocumentRule:
    category: str | None = None
    allow_manual: bool = False
    kind = RuleKind.MANUAL_OR_DOCUMENT


@dataclass(frozen=True)
class AutoCheckRule:
    condition: AutoCondition
    kind = RuleKind.AUTO_CHECK


@dataclass(frozen=True)
class PhaseCheckRule:
    required_phase: str
    allow_manual: bool = False
    kind = RuleKind.PHASE_CHECK


@dataclass(frozen=True)
class DocumentOrCommentsRule:
    category: str
    or_finding_comments: bool = False
    kind = RuleKind.DOCUMENT_OR_COMMENTS


ValidationRule = Union[
    DocumentExistsRule, DocumentsReviewedRule, FindingsExistRule,
    FindingsHaveEvidenceRule, PrerequisiteItemsRule, ApprovalRequiredRule,
    ManualOrDocumentRule, AutoCheckRule, PhaseCheckRule, DocumentOrCommentsRule,
]


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation snapshot + result
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DocumentSnapshot:
    id: int
    category: str
    status: str
    file_name: str = ""
    finding_id: int | None = None


@dataclass(frozen=True)
class FindingSnapshot:
    id: int
    status: str
    cap_required: bool = False
    cap_status: str | None = None
    evidence_count: int = 0
    reference_number: str = ""


@dataclass(frozen=True)
class ItemState:
    code: str
    label: str
    is_completed: bool
    is_overridden: bool

    @property
    def is_satisfied(self) -> bool:
        return self.is_completed or self.is_overridden


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a rule may look at, captured once per read."""
    review_phase: str
    documents: tuple[DocumentSnapshot, ...] = ()
    findings: tuple[FindingSnapshot, ...] = ()
    items: Mapping[str, ItemState] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Outcome of evaluating one rule.  Returned as data, never raised."""
    rule_kind: str | None
    is_valid: bool
    reason: str | None = None
    required: int | None = None
    current: int | None = None
    missing: list[str] = field(default_factory=list)

    @property
    def can_complete(self) -> bool:
        return self.is_valid

    def to_dict(self) -> dict:
        data = {
            "rule_kind": self.rule_kind,
            "is_valid": self.is_valid,
            "can_complete": self.can_complete,
            "reason": self.reason,
        }
        if self.required is not None:
            data["details"] = {
                "required": self.required,
                "current": self.current,
                "missing": list(self.missing),
            }
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════

def _reject(message: str, data) -> None:
    raise ValidationError(f"Invalid checklist rule: {message}", details={"rule": data})


def _check_members(values, allowed, label, data) -> tuple[str, ...]:
    values = tuple(values or ())
    unknown = [v for v in values if v not in allowed]
    if unknown:
        _reject(f"unknown {label} {unknown}", data)
    return values


def _check_category(value, data, *, optional=False):
    if value is None and optional:
        return None
    if value not in DOCUMENT_CATEGORIES:
        _reject(f"unknown document category {value!r}", data)
    return value


def _check_count(value, data) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        _reject(f"min_count must be a non-negative integer, got {value!r}", data)
    return value


def parse_rule(data: Mapping | None) -> ValidationRule | None:
    """Build a rule from its stored JSON form.

    ``None`` means a plain manual item that is always completable.
    Unknown kinds, unknown enum members and malformed parameters raise
    ``ValidationError``.
    """
    if data is None:
        return None
    if not isinstance(data, Mapping):
        _reject("rule must be an object", data)
    try:
        kind = RuleKind(data.get("type"))
    except ValueError:
        _reject(f"unknown rule type {data.get('type')!r}", data)

    if kind is RuleKind.DOCUMENT_EXISTS:
        return DocumentExistsRule(
            category=_check_category(data.get("category"), data),
            min_count=_check_count(data.get("min_count", 1), data),
            required_statuses=_check_members(data.get("required_statuses"), DOCUMENT_STATUSES, "statuses", data),
        )
    if kind is RuleKind.DOCUMENTS_REVIEWED:
        return DocumentsReviewedRule(
            category=_check_category(data.get("category"), data),
            all_must_be_reviewed=bool(data.get("all_must_be_reviewed", True)),
        )
    if kind is RuleKind.FINDINGS_EXIST:
        return FindingsExistRule(
            min_count=_check_count(data.get("min_count", 1), data),
            status_filter=_check_members(data.get("status_filter"), FINDING_STATUSES, "finding statuses", data),
        )
    if kind is RuleKind.FINDINGS_HAVE_EVIDENCE:
        return FindingsHaveEvidenceRule(
            all_findings_must_have_evidence=bool(data.get("all_findings_must_have_evidence", True)),
        )
    if kind is RuleKind.PREREQUISITE_ITEMS:
        required = tuple(data.get("required_items") or ())
        if not required:
            _reject("required_items cannot be empty", data)
        return PrerequisiteItemsRule(required_items=required)
    if kind is RuleKind.APPROVAL_REQUIRED:
        roles = _check_members(data.get("approver_roles"), USER_ROLES, "roles", data)
        if not roles:
            _reject("approver_roles cannot be empty", data)
        return ApprovalRequiredRule(approver_roles=roles)
    if kind is RuleKind.MANUAL_OR_DOCUMENT:
        return ManualOrDocumentRule(
            category=_check_category(data.get("category"), data, optional=True),
            allow_manual=bool(data.get("allow_manual", False)),
        )
    if kind is RuleKind.AUTO_CHECK:
        try:
            condition = AutoCondition(data.get("condition"))
        except ValueError:
            _reject(f"unknown auto-check condition {data.get('condition')!r}", data)
        return AutoCheckRule(condition=condition)
    if kind is RuleKind.PHASE_CHECK:
        phase = data.get("required_phase")
        if phase not in REVIEW_PHASES:
            _reject(f"unknown review phase {phase!r}", data)
        return PhaseCheckRule(required_phase=phase, allow_manual=bool(data.get("allow_manual", False)))
    # RuleKind.DOCUMENT_OR_COMMENTS
    return DocumentOrCommentsRule(
        category=_check_category(data.get("category"), data),
        or_finding_comments=bool(data.get("or_finding_comments", False)),
    )


def rule_to_dict(rule: ValidationRule | None) -> dict | None:
    """Inverse of ``parse_rule``; the stored JSON form."""
    if rule is None:
        return None
    data = {"type": rule.kind.value}
    for key, value in asdict(rule).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        data[key] = value
    return data


# ═════════════════════════════════════════════════════════════════════════════
# Evaluators
# ═════════════════════════════════════════════════════════════════════════════

def _live_documents(ctx: EvaluationContext, category: str | None = None):
    return [d for d in ctx.documents if category is None or d.category == category]


def _eval_document_exists(rule: DocumentExistsRule, ctx: EvaluationContext) -> ValidationResult:
    docs = _live_documents(ctx, rule.category)
    if rule.required_statuses:
        docs = [d for d in docs if d.status in rule.required_statuses]
    count = len(docs)
    ok = count >= rule.min_count
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"Requires at least {rule.min_count} {rule.category} document(s)",
        required=rule.min_count,
        current=count,
    )


def _eval_documents_reviewed(rule: DocumentsReviewedRule, ctx: EvaluationContext) -> ValidationResult:
    docs = _live_documents(ctx, rule.category)
    if not docs:
        return ValidationResult(
            rule_kind=rule.kind.value, is_valid=False,
            reason=f"No {rule.category} documents found to review",
            required=1, current=0,
        )
    pending = [d for d in docs if d.status not in REVIEWED_DOCUMENT_STATUSES]
    reviewed = len(docs) - len(pending)
    if rule.all_must_be_reviewed:
        ok = not pending
        required = len(docs)
    else:
        ok = reviewed > 0
        required = 1
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"{len(pending)} document(s) still need review",
        required=required,
        current=reviewed,
        missing=[d.file_name or str(d.id) for d in pending] if not ok else [],
    )


def _eval_findings_exist(rule: FindingsExistRule, ctx: EvaluationContext) -> ValidationResult:
    findings = ctx.findings
    if rule.status_filter:
        findings = [f for f in findings if f.status in rule.status_filter]
    count = len(findings)
    ok = count >= rule.min_count
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"Requires at least {rule.min_count} finding(s) to be recorded",
        required=rule.min_count,
        current=count,
    )


def _eval_findings_have_evidence(rule: FindingsHaveEvidenceRule, ctx: EvaluationContext) -> ValidationResult:
    if not ctx.findings:
        return ValidationResult(rule_kind=rule.kind.value, is_valid=True, reason="No findings to validate")
    without = [f for f in ctx.findings if f.evidence_count == 0]
    with_evidence = len(ctx.findings) - len(without)
    if rule.all_findings_must_have_evidence:
        ok = not without
        reason = None if ok else f"{len(without)} finding(s) missing evidence"
        required = len(ctx.findings)
    else:
        ok = with_evidence > 0
        reason = None if ok else "At least one finding needs evidence"
        required = 1
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=reason,
        required=required,
        current=with_evidence,
        missing=[f.reference_number or str(f.id) for f in without] if not ok else [],
    )


def _eval_prerequisite_items(rule: PrerequisiteItemsRule, ctx: EvaluationContext) -> ValidationResult:
    blocking = []
    for code in rule.required_items:
        state = ctx.items.get(code)
        if state is None or not state.is_satisfied:
            blocking.append(code)
    ok = not blocking
    labels = [ctx.items[c].label if c in ctx.items else c for c in blocking]
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"Complete prerequisite items first: {', '.join(labels)}",
        required=len(rule.required_items),
        current=len(rule.required_items) - len(blocking),
        missing=blocking,
    )


def _eval_approval_required(rule: ApprovalRequiredRule, ctx: EvaluationContext) -> ValidationResult:
    # Role enforcement happens when the item is toggled.
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=True,
        reason=f"Requires approval from: {' or '.join(rule.approver_roles)}",
    )


def _eval_manual_or_document(rule: ManualOrDocumentRule, ctx: EvaluationContext) -> ValidationResult:
    if rule.allow_manual or rule.category is None:
        return ValidationResult(rule_kind=rule.kind.value, is_valid=True)
    count = len(_live_documents(ctx, rule.category))
    ok = count > 0
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"Upload {rule.category} document or confirm manually",
        required=1,
        current=count,
    )


def _eval_auto_check(rule: AutoCheckRule, ctx: EvaluationContext) -> ValidationResult:
    if rule.condition is AutoCondition.FINDINGS_COUNT_GT_0:
        count = len(ctx.findings)
        ok = count > 0
        return ValidationResult(
            rule_kind=rule.kind.value, is_valid=ok,
            reason=None if ok else "Enter at least one finding",
            required=1, current=count,
        )
    if rule.condition is AutoCondition.ALL_CAPS_SUBMITTED:
        needing = [f for f in ctx.findings if f.cap_required]
        pending = [f for f in needing if f.cap_status in (None, "DRAFT")]
        ok = not pending
        return ValidationResult(
            rule_kind=rule.kind.value, is_valid=ok,
            reason=None if ok else f"{len(pending)} CAP(s) pending submission",
            required=len(needing), current=len(needing) - len(pending),
            missing=[f.reference_number or str(f.id) for f in pending],
        )
    # AutoCondition.REPORT_GENERATED
    count = len(_live_documents(ctx, "FINAL_REPORT"))
    ok = count > 0
    return ValidationResult(
        rule_kind=rule.kind.value, is_valid=ok,
        reason=None if ok else "Generate review report first",
        required=1, current=count,
    )


def _eval_phase_check(rule: PhaseCheckRule, ctx: EvaluationContext) -> ValidationResult:
    ok = rule.allow_manual or ctx.review_phase == rule.required_phase
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=ok,
        reason=None if ok else f"Review must be in {rule.required_phase} phase",
    )


def _eval_document_or_comments(rule: DocumentOrCommentsRule, ctx: EvaluationContext) -> ValidationResult:
    if _live_documents(ctx, rule.category):
        return ValidationResult(rule_kind=rule.kind.value, is_valid=True)
    if rule.or_finding_comments and ctx.findings:
        return ValidationResult(rule_kind=rule.kind.value, is_valid=True)
    return ValidationResult(
        rule_kind=rule.kind.value,
        is_valid=False,
        reason=f"Upload {rule.category} document or receive host feedback",
    )


_EVALUATORS = {
    DocumentExistsRule: _eval_document_exists,
    DocumentsReviewedRule: _eval_documents_reviewed,
    FindingsExistRule: _eval_findings_exist,
    FindingsHaveEvidenceRule: _eval_findings_have_evidence,
    PrerequisiteItemsRule: _eval_prerequisite_items,
    ApprovalRequiredRule: _eval_approval_required,
    ManualOrDocumentRule: _eval_manual_or_document,
    AutoCheckRule: _eval_auto_check,
    PhaseCheckRule: _eval_phase_check,
    DocumentOrCommentsRule: _eval_document_or_comments,
}


def evaluate_rule(rule: ValidationRule | None, context: EvaluationContext) -> ValidationResult:
    """Evaluate *rule* against *context*.  ``None`` (manual item) always passes."""
    if rule is None:
        return ValidationResult(rule_kind=None, is_valid=True)
    return _EVALUATORS[type(rule)](rule, context)
