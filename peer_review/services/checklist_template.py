"""
Fieldwork checklist template — the fourteen items instantiated per review.

The template is validated once at import: item codes are unique, every
PREREQUISITE_ITEMS reference names an item on this template, and the
prerequisite graph has no cycles.  A broken template fails at import rather
than on some later evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass

from peer_review.services.checklist_rules import (
    PrerequisiteItemsRule,
    ValidationRule,
    parse_rule,
)


@dataclass(frozen=True)
class ChecklistItemDefinition:
    code: str
    phase: str
    sort_order: int
    label: str
    guidance: str
    rule: ValidationRule | None


def _item(code, phase, sort_order, label, guidance, rule):
    return ChecklistItemDefinition(code, phase, sort_order, label, guidance, parse_rule(rule))


_DOC_PRESENT = ["UPLOADED", "REVIEWED", "APPROVED"]

CHECKLIST_TEMPLATE: tuple[ChecklistItemDefinition, ...] = (
    # PRE-VISIT
    _item("PRE_DOC_REQUEST_SENT", "PRE_VISIT", 1,
          "Document request sent to host organization",
          "Upload the pre-visit document request sent to the host.",
          {"type": "DOCUMENT_EXISTS", "category": "PRE_VISIT_REQUEST", "min_count": 1,
           "required_statuses": _DOC_PRESENT}),
    _item("PRE_DOCS_RECEIVED", "PRE_VISIT", 2,
          "Pre-visit documents received and reviewed",
          "At least one host submission must be reviewed or approved.",
          {"type": "DOCUMENT_EXISTS", "category": "HOST_SUBMISSION", "min_count": 1,
           "required_statuses": ["REVIEWED", "APPROVED"]}),
    _item("PRE_COORDINATION_MEETING", "PRE_VISIT", 3,
          "Pre-visit coordination meeting held with team",
          "Attach meeting notes or confirm manually.",
          {"type": "MANUAL_OR_DOCUMENT", "category": "INTERVIEW_NOTES", "allow_manual": True}),
    _item("PRE_PLAN_APPROVED", "PRE_VISIT", 4,
          "Review plan approved by team",
          "Recorded by the lead reviewer or the programme coordinator.",
          {"type": "APPROVAL_REQUIRED", "approver_roles": ["LEAD_REVIEWER", "PROGRAMME_COORDINATOR"]}),

    # ON-SITE
    _item("SITE_OPENING_MEETING", "ON_SITE", 5,
          "Opening meeting conducted with host",
          "Confirm the opening meeting took place.",
          {"type": "MANUAL_OR_DOCUMENT", "allow_manual": True}),
    _item("SITE_INTERVIEWS", "ON_SITE", 6,
          "Staff interviews completed",
          "Upload interview notes.",
          {"type": "DOCUMENT_EXISTS", "category": "INTERVIEW_NOTES", "min_count": 1,
           "required_statuses": _DOC_PRESENT}),
    _item("SITE_FACILITIES", "ON_SITE", 7,
          "Facilities inspection completed",
          "Upload inspection evidence.",
          {"type": "DOCUMENT_EXISTS", "category": "EVIDENCE", "min_count": 1,
           "required_statuses": _DOC_PRESENT}),
    _item("SITE_DOC_REVIEW", "ON_SITE", 8,
          "Document review completed",
          "Every host submission must reach at least REVIEWED.",
          {"type": "DOCUMENTS_REVIEWED", "category": "HOST_SUBMISSION", "all_must_be_reviewed": True}),
    _item("SITE_FINDINGS_DISCUSSED", "ON_SITE", 9,
          "Preliminary findings discussed with host",
          "Record at least one finding.",
          {"type": "FINDINGS_EXIST", "min_count": 1,
           "status_filter": ["OPEN", "CAP_REQUIRED", "CAP_SUBMITTED", "CAP_ACCEPTED"]}),
    _item("SITE_CLOSING_MEETING", "ON_SITE", 10,
          "Closing meeting conducted",
          "All other on-site activities must be complete first.",
          {"type": "PREREQUISITE_ITEMS", "required_items": [
              "SITE_OPENING_MEETING", "SITE_INTERVIEWS", "SITE_FACILITIES",
              "SITE_DOC_REVIEW", "SITE_FINDINGS_DISCUSSED",
          ]}),

    # POST-VISIT
    _item("POST_FINDINGS_ENTERED", "POST_VISIT", 11,
          "All findings entered in system",
          "Checked automatically from the finding register.",
          {"type": "AUTO_CHECK", "condition": "FINDINGS_COUNT_GT_0"}),
    _item("POST_EVIDENCE_UPLOADED", "POST_VISIT", 12,
          "Supporting evidence uploaded",
          "Every finding needs at least one evidence document.",
          {"type": "FINDINGS_HAVE_EVIDENCE", "all_findings_must_have_evidence": True}),
    _item("POST_DRAFT_REPORT", "POST_VISIT", 13,
          "Draft report prepared",
          "Upload the draft report.",
          {"type": "DOCUMENT_EXISTS", "category": "DRAFT_REPORT", "min_count": 1,
           "required_statuses": _DOC_PRESENT}),
    _item("POST_HOST_FEEDBACK", "POST_VISIT", 14,
          "Host feedback received on draft findings",
          "Attach host correspondence or confirm manually.",
          {"type": "MANUAL_OR_DOCUMENT", "category": "CORRESPONDENCE", "allow_manual": True}),
)


class TemplateError(ValueError):
    """Raised when a checklist template is structurally invalid."""


def prerequisite_graph(definitions) -> dict[str, tuple[str, ...]]:
    """Map item code → codes it depends on."""
    return {
        d.code: (d.rule.required_items if isinstance(d.rule, PrerequisiteItemsRule) else ())
        for d in definitions
    }


def validate_template(definitions) -> None:
    """Check code uniqueness, dangling references and cycles.

    Uses iterative DFS with white/grey/black colouring over the
    prerequisite graph.  Raises TemplateError on the first problem found.
    """
    codes = [d.code for d in definitions]
    duplicates = sorted({c for c in codes if codes.count(c) > 1})
    if duplicates:
        raise TemplateError(f"Duplicate checklist item codes: {duplicates}")

    graph = prerequisite_graph(definitions)
    for code, deps in graph.items():
        dangling = [d for d in deps if d not in graph]
        if dangling:
            raise TemplateError(f"{code} references unknown prerequisite(s): {dangling}")
        if code in deps:
            raise TemplateError(f"{code} lists itself as a prerequisite")

    WHITE, GREY, BLACK = 0, 1, 2
    colour = {code: WHITE for code in graph}
    for root in graph:
        if colour[root] != WHITE:
            continue
        stack = [(root, iter(graph[root]))]
        colour[root] = GREY
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                colour[node] = BLACK
                stack.pop()
                continue
            if colour[child] == GREY:
                path = [n for n, _ in stack] + [child]
                raise TemplateError(f"Prerequisite cycle: {' -> '.join(path)}")
            if colour[child] == WHITE:
                colour[child] = GREY
                stack.append((child, iter(graph[child])))


validate_template(CHECKLIST_TEMPLATE)

TEMPLATE_BY_CODE = {d.code: d for d in CHECKLIST_TEMPLATE}
