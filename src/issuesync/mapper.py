"""Record → document mapping. Pure, total, no I/O.

Values are carried over as they are; a value that does not fit the issue
collection is rejected when the document is written, not here.
"""

from __future__ import annotations

from typing import Any

from issuesync.issue_index import IssueDocument
from issuesync.records import IssueRecord


def rule_reference(repository: str, rule_key: str) -> str:
    return f"{repository}:{rule_key}"


def _copy_attributes(value: Any) -> Any:
    return dict(value) if isinstance(value, dict) else value


def to_document(record: IssueRecord) -> IssueDocument:
    """Project *record* into its search document, field for field."""
    return IssueDocument(
        key=record.key,
        rule_key=rule_reference(record.rule_repository, record.rule_key),
        component_key=record.component_key,
        root_component_key=record.root_component_key,
        status=record.status,
        resolution=record.resolution,
        severity=record.severity,
        assignee=record.assignee,
        author_login=record.author_login,
        reporter=record.reporter,
        message=record.message,
        line=record.line,
        effort_to_fix=record.effort_to_fix,
        created_at=record.created_at,
        updated_at=record.updated_at,
        closed_at=record.closed_at,
        action_plan_key=record.action_plan_key,
        attributes=_copy_attributes(record.attributes),
    )
