"""Project and permission-grant documents.

Projects are parent documents keyed by project key. Grants are children of
their project and name exactly one user or one group. Grants are insert-only:
each ``add_grant`` appends a new child, there is no revoke.

This index is write-only; grants are read back only through the
authorization filter joined into ``IssueIndex.query``.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import Iterator
from typing import Any

from issuesync.docstore import BulkResult, CollectionSchema, DocumentStore, WriteOp
from issuesync.validation import require_identifier, validate_grant_target

logger = logging.getLogger(__name__)

READ_PERMISSION = "read"
DEFAULT_FLUSH_THRESHOLD = 100

PROJECT_COLLECTION = CollectionSchema(
    name="issue_project",
    fields={"key": "keyword"},
)

PERMISSION_COLLECTION = CollectionSchema(
    name="issue_permission",
    fields={
        "permission": "keyword",
        "project": "keyword",
        "user": "keyword",
        "group": "keyword",
    },
    parent=PROJECT_COLLECTION.name,
    routing_field="project",
)


def define_permission_collections(store: DocumentStore) -> None:
    """Register the project and grant collections that authorization filters join against."""
    store.define_collection(PROJECT_COLLECTION)
    store.define_collection(PERMISSION_COLLECTION)


def _project_op(key: str) -> WriteOp:
    key = require_identifier(key, "project key")
    return WriteOp(PROJECT_COLLECTION.name, key, {"key": key}, merge=True)


def _grant_ops(project_key: str, user: str | None, group: str | None, permission: str) -> list[WriteOp]:
    """Validate a grant and return the writes for it: the project merge, then the grant child."""
    user, group = validate_grant_target(user, group)
    project_op = _project_op(project_key)
    doc: dict[str, Any] = {
        "permission": require_identifier(permission, "permission"),
        "project": project_op.key,
    }
    if user is not None:
        doc["user"] = user
    if group is not None:
        doc["group"] = group
    grant_op = WriteOp(PERMISSION_COLLECTION.name, uuid.uuid4().hex, doc, parent_key=project_op.key)
    return [project_op, grant_op]


class PermissionBulk:
    """Buffers project and grant writes and flushes them as one transaction.

    Once ``threshold`` operations are pending the buffer is flushed
    automatically. A flush is the commit boundary: if it raises, nothing from
    that batch is visible and the pending buffer is dropped, so the caller
    must resubmit the whole batch.
    """

    def __init__(self, store: DocumentStore, threshold: int = DEFAULT_FLUSH_THRESHOLD) -> None:
        if threshold < 1:
            msg = f"Flush threshold must be >= 1, got {threshold}"
            raise ValueError(msg)
        self.store = store
        self.threshold = threshold
        self._pending: list[WriteOp] = []
        self.flushes = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def upsert_project(self, key: str) -> None:
        self._add([_project_op(key)])

    def add_grant(
        self,
        project_key: str,
        user: str | None = None,
        group: str | None = None,
        *,
        permission: str = READ_PERMISSION,
    ) -> None:
        self._add(_grant_ops(project_key, user, group, permission))

    def _add(self, ops: list[WriteOp]) -> None:
        self._pending.extend(ops)
        if len(self._pending) >= self.threshold:
            self.flush()

    def flush(self) -> BulkResult:
        ops, self._pending = self._pending, []
        if not ops:
            return BulkResult()
        result = self.store.bulk_write(ops)
        self.flushes += 1
        logger.debug("Flushed %d permission operations", len(ops))
        return result


class PermissionIndex:
    """Stores project parents and their permission-grant children."""

    def __init__(self, store: DocumentStore, *, flush_threshold: int = DEFAULT_FLUSH_THRESHOLD) -> None:
        self.store = store
        self.flush_threshold = flush_threshold
        define_permission_collections(self.store)

    def upsert_project(self, key: str) -> None:
        """Create the project document, or merge into the existing one."""
        op = _project_op(key)
        self.store.upsert(op.collection, op.key, op.doc, merge=True)

    def add_grant(
        self,
        project_key: str,
        user: str | None = None,
        group: str | None = None,
        *,
        permission: str = READ_PERMISSION,
    ) -> str:
        """Append a grant under *project_key* and return its document key.

        Exactly one of *user* / *group* must be given (``ValidationError``
        otherwise). The project document is created if it does not exist yet.
        """
        ops = _grant_ops(project_key, user, group, permission)
        self.store.bulk_write(ops)
        logger.info(
            "Granted %s on %s to %s",
            permission,
            ops[0].key,
            f"user:{user}" if user is not None else f"group:{group}",
        )
        return ops[1].key

    @contextlib.contextmanager
    def bulk(self, threshold: int | None = None) -> Iterator[PermissionBulk]:
        """Buffer grant writes; remaining operations flush when the block exits cleanly."""
        batch = PermissionBulk(self.store, self.flush_threshold if threshold is None else threshold)
        try:
            yield batch
        except BaseException:
            if batch.pending:
                logger.warning("Discarding %d unflushed permission operations", batch.pending)
            raise
        batch.flush()

    def count_projects(self) -> int:
        return self.store.count(PROJECT_COLLECTION.name)

    def count_grants(self) -> int:
        return self.store.count(PERMISSION_COLLECTION.name)
