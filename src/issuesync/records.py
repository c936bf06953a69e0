"""Canonical record store: rules, components, and issue records.

The record store is the write-optimized source of truth. The search
projection in ``index.db`` is derived from it by the sync coordinator and
never written back.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from issuesync.db_base import EPOCH_ISO, SQLiteBackend, _bump_iso, _normalize_iso, _now_iso
from issuesync.db_schema import RECORDS_SCHEMA_SQL, RECORDS_SCHEMA_VERSION


@dataclass
class Rule:
    id: int
    repository: str
    rule_key: str
    name: str = ""


@dataclass
class Component:
    id: int
    key: str
    project_id: int

    @property
    def is_project(self) -> bool:
        return self.id == self.project_id


@dataclass
class IssueRecord:
    key: str
    rule_repository: str
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
    # A JSON object for well-formed rows; anything else is carried as stored.
    attributes: Any = field(default_factory=dict)


# Columns an update_issue() caller may change. Keys, rule and component are immutable.
_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "resolution",
        "severity",
        "assignee",
        "author_login",
        "reporter",
        "message",
        "line",
        "effort_to_fix",
        "closed_at",
        "action_plan_key",
        "attributes",
    }
)

_SELECT_ISSUES = (
    "SELECT i.*, r.repository AS rule_repository, r.rule_key AS rule_key, "
    "c.key AS component_key, p.key AS root_component_key "
    "FROM issues i "
    "JOIN rules r ON i.rule_id = r.id "
    "JOIN components c ON i.component_id = c.id "
    "JOIN components p ON i.root_component_id = p.id"
)


def _decode_attributes(raw: str | None) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _build_record(row: sqlite3.Row) -> IssueRecord:
    return IssueRecord(
        key=row["kee"],
        rule_repository=row["rule_repository"],
        rule_key=row["rule_key"],
        component_key=row["component_key"],
        root_component_key=row["root_component_key"],
        status=row["status"],
        resolution=row["resolution"],
        severity=row["severity"],
        assignee=row["assignee"],
        author_login=row["author_login"],
        reporter=row["reporter"],
        message=row["message"],
        line=row["line"],
        effort_to_fix=row["effort_to_fix"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        closed_at=row["closed_at"],
        action_plan_key=row["action_plan_key"],
        attributes=_decode_attributes(row["attributes"]),
    )


class RecordStore(SQLiteBackend):
    """Direct SQLite access to canonical issue records."""

    SCHEMA_SQL = RECORDS_SCHEMA_SQL
    SCHEMA_VERSION = RECORDS_SCHEMA_VERSION

    # -- Rules & components --------------------------------------------------

    def insert_rule(self, repository: str, rule_key: str, *, name: str = "") -> Rule:
        if not repository or not rule_key:
            msg = "Rule repository and key cannot be empty"
            raise ValueError(msg)
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO rules (repository, rule_key, name) VALUES (?, ?, ?)",
                (repository, rule_key, name),
            )
            rule_id = cur.lastrowid
        assert rule_id is not None
        return Rule(id=rule_id, repository=repository, rule_key=rule_key, name=name)

    def get_rule(self, repository: str, rule_key: str) -> Rule | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM rules WHERE repository = ? AND rule_key = ?",
                (repository, rule_key),
            ).fetchone()
        if row is None:
            return None
        return Rule(id=row["id"], repository=row["repository"], rule_key=row["rule_key"], name=row["name"])

    def insert_component(self, key: str, *, project_key: str | None = None) -> Component:
        """Insert a component. Without *project_key* the component is its own project."""
        if not key or not key.strip():
            msg = "Component key cannot be empty"
            raise ValueError(msg)
        with self._transaction() as conn:
            project_id: int | None = None
            if project_key is not None:
                row = conn.execute("SELECT id FROM components WHERE key = ?", (project_key,)).fetchone()
                if row is None:
                    msg = f"Project not found: {project_key}"
                    raise KeyError(msg)
                project_id = row["id"]
            cur = conn.execute("INSERT INTO components (key, project_id) VALUES (?, ?)", (key, project_id))
            component_id = cur.lastrowid
            assert component_id is not None
            if project_id is None:
                project_id = component_id
                conn.execute("UPDATE components SET project_id = ? WHERE id = ?", (project_id, component_id))
        return Component(id=component_id, key=key, project_id=project_id)

    def get_component(self, key: str) -> Component | None:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM components WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return Component(id=row["id"], key=row["key"], project_id=row["project_id"])

    # -- Issues --------------------------------------------------------------

    def insert_issue(
        self,
        rule: Rule,
        component: Component,
        *,
        key: str | None = None,
        status: str = "OPEN",
        resolution: str | None = None,
        severity: str | None = None,
        assignee: str | None = None,
        author_login: str | None = None,
        reporter: str | None = None,
        message: str | None = None,
        line: int | None = None,
        effort_to_fix: float | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
        closed_at: str | None = None,
        action_plan_key: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> IssueRecord:
        key = key or str(uuid.uuid4())
        now = _now_iso()
        created = _normalize_iso(created_at) if created_at else now
        updated = _normalize_iso(updated_at) if updated_at else now
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO issues (kee, rule_id, component_id, root_component_id, status, resolution, "
                "severity, assignee, author_login, reporter, message, line, effort_to_fix, "
                "created_at, updated_at, closed_at, action_plan_key, attributes) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    key,
                    rule.id,
                    component.id,
                    component.project_id,
                    status,
                    resolution,
                    severity,
                    assignee,
                    author_login,
                    reporter,
                    message,
                    line,
                    effort_to_fix,
                    created,
                    updated,
                    _normalize_iso(closed_at) if closed_at else None,
                    action_plan_key,
                    json.dumps(attributes or {}),
                ),
            )
        record = self.get_by_key(key)
        assert record is not None
        return record

    def update_issue(self, key: str, **changes: Any) -> IssueRecord:
        """Apply *changes* to an issue and advance its update timestamp.

        The new ``updated_at`` is strictly greater than the previous one even
        when the clock has not moved, so incremental sync always sees it.
        """
        unknown = sorted(set(changes) - _MUTABLE_FIELDS)
        if unknown:
            msg = f"Cannot update issue fields: {', '.join(unknown)}"
            raise ValueError(msg)
        current = self.get_by_key(key)
        if current is None:
            msg = f"Issue not found: {key}"
            raise KeyError(msg)

        now = _now_iso()
        updated = now if now > current.updated_at else _bump_iso(current.updated_at)
        updates: list[str] = []
        params: list[Any] = []
        for name, value in sorted(changes.items()):
            if name == "attributes":
                value = json.dumps(value or {})
            elif name == "closed_at" and value:
                value = _normalize_iso(value)
            updates.append(f"{name} = ?")
            params.append(value)
        updates.append("updated_at = ?")
        params.append(updated)

        with self._transaction() as conn:
            conn.execute(f"UPDATE issues SET {', '.join(updates)} WHERE kee = ?", [*params, key])
        record = self.get_by_key(key)
        assert record is not None
        return record

    def get_by_key(self, key: str) -> IssueRecord | None:
        with self._reading() as conn:
            row = conn.execute(f"{_SELECT_ISSUES} WHERE i.kee = ?", (key,)).fetchone()
        return _build_record(row) if row is not None else None

    def find_updated_after(
        self,
        timestamp: str,
        *,
        after_key: str | None = None,
        limit: int | None = None,
    ) -> list[IssueRecord]:
        """Records updated strictly after *timestamp*, ascending by (updated_at, key).

        To continue past a page, reissue with ``timestamp`` set to the last
        record's ``updated_at`` and ``after_key`` to its key.
        """
        bound = _normalize_iso(timestamp)
        if after_key is None:
            where = "i.updated_at > ?"
            params: list[Any] = [bound]
        else:
            where = "(i.updated_at > ? OR (i.updated_at = ? AND i.kee > ?))"
            params = [bound, bound, after_key]
        sql = f"{_SELECT_ISSUES} WHERE {where} ORDER BY i.updated_at, i.kee"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_build_record(r) for r in rows]

    def find_all(self, *, after_key: str | None = None, limit: int | None = None) -> list[IssueRecord]:
        """Every record, ascending by key. Page with *after_key*."""
        params: list[Any] = []
        sql = _SELECT_ISSUES
        if after_key is not None:
            sql += " WHERE i.kee > ?"
            params.append(after_key)
        sql += " ORDER BY i.kee"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_build_record(r) for r in rows]

    def count(self) -> int:
        with self._reading() as conn:
            result: int = conn.execute("SELECT COUNT(*) FROM issues").fetchone()[0]
        return result

    def count_updated_after(self, timestamp: str | None) -> int:
        """Number of records a sync from *timestamp* would pick up (all when None)."""
        bound = _normalize_iso(timestamp) if timestamp else EPOCH_ISO
        with self._reading() as conn:
            result: int = conn.execute("SELECT COUNT(*) FROM issues WHERE updated_at > ?", (bound,)).fetchone()[0]
        return result
