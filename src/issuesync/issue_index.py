"""Issue documents and the index that stores and queries them.

Issue documents are children of project documents (see
``permission_index``): each one is routed to its project through
``root_component_key``, which is what lets authorization filters join issues
against the permission grants of their project.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from issuesync.docstore import BulkResult, CollectionSchema, DocumentStore, WriteOp
from issuesync.filters import Filter, and_
from issuesync.permission_index import PROJECT_COLLECTION, define_permission_collections

logger = logging.getLogger(__name__)

ISSUE_COLLECTION = CollectionSchema(
    name="issue",
    fields={
        "key": "keyword",
        "rule_key": "keyword",
        "component_key": "keyword",
        "root_component_key": "keyword",
        "status": "keyword",
        "resolution": "keyword",
        "severity": "keyword",
        "assignee": "keyword",
        "author_login": "keyword",
        "reporter": "keyword",
        "message": "text",
        "line": "integer",
        "effort_to_fix": "float",
        "created_at": "date",
        "updated_at": "date",
        "closed_at": "date",
        "action_plan_key": "keyword",
        "attributes": "object",
    },
    parent=PROJECT_COLLECTION.name,
    routing_field="root_component_key",
)


@dataclass
class IssueDocument:
    key: str
    rule_key: str
    component_key: str
    root_component_key: str
    status: str = "OPEN"
    resolution: str | None = None
    severity: str | None = None
    assignee: str | None = None
    author_login: str | None = None
    reporter: str | None = None
    message: str | None = None
    line: int | None = None
    effort_to_fix: float | None = None
    created_at: str = ""
    updated_at: str = ""
    closed_at: str | None = None
    action_plan_key: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueDocument:
        return cls(**data)


class IssueIndex:
    """Stores issue documents and answers filtered queries over them.

    No internal retries: ``TransientBackendError`` and ``QueryError`` from the
    document store propagate to the caller.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        # Queries join grants even before any grant exists.
        define_permission_collections(self.store)
        self.store.define_collection(ISSUE_COLLECTION)

    def upsert(self, doc: IssueDocument) -> None:
        self.store.upsert(ISSUE_COLLECTION.name, doc.key, doc.to_dict())

    def bulk_upsert(self, docs: Iterable[IssueDocument]) -> BulkResult:
        """Replace documents by key in one round trip; invalid ones are skipped and reported."""
        result = self.store.bulk_write(WriteOp(ISSUE_COLLECTION.name, d.key, d.to_dict()) for d in docs)
        logger.debug("Indexed %d issues (%d skipped)", len(result.committed), len(result.failures))
        return result

    def get_by_key(self, key: str) -> IssueDocument | None:
        data = self.store.get(ISSUE_COLLECTION.name, key)
        return IssueDocument.from_dict(data) if data is not None else None

    def count_all(self) -> int:
        return self.store.count(ISSUE_COLLECTION.name)

    def query(self, base_filter: Filter, auth_filter: Filter, max_results: int) -> list[IssueDocument]:
        """Documents matching both *base_filter* and *auth_filter*, at most *max_results*."""
        rows = self.store.query(ISSUE_COLLECTION.name, and_(base_filter, auth_filter), limit=max_results)
        return [IssueDocument.from_dict(r) for r in rows]

    def clear(self) -> int:
        return self.store.clear(ISSUE_COLLECTION.name)
