"""Document store: schema-checked JSON collections with parent/child linkage.

Collections are declared once as ``CollectionSchema`` values and persisted in
the ``collections`` table. Every document row carries an optional
``parent_key``; for a child collection it is mandatory, taken either from the
caller or from the collection's ``routing_field``. Queries take a filter tree
from ``issuesync.filters`` and compile it to SQL over ``json_extract``.

Write errors surface as ``SchemaError`` (bad document) or
``TransientBackendError`` (locked / unreachable database). Read errors surface
as ``QueryError``.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from issuesync.db_base import SQLiteBackend, _now_iso
from issuesync.db_schema import INDEX_SCHEMA_SQL, INDEX_SCHEMA_VERSION
from issuesync.errors import QueryError, SchemaError
from issuesync.filters import Bool, Exists, Filter, HasChild, HasParent, MatchAll, MatchNone, Range, Term, Terms

logger = logging.getLogger(__name__)

FieldType = Literal["keyword", "text", "integer", "float", "date", "boolean", "object"]

VALID_FIELD_TYPES: frozenset[str] = frozenset({"keyword", "text", "integer", "float", "date", "boolean", "object"})

# Pseudo-fields addressable in filters without being declared in the schema.
KEY_FIELD = "_key"
PARENT_FIELD = "_parent"

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Declarative collection configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CollectionSchema:
    """Declarative definition of one document collection."""

    name: str
    fields: Mapping[str, FieldType]
    parent: str | None = None
    routing_field: str | None = None

    def __post_init__(self) -> None:
        if not self.name or not _FIELD_NAME_RE.match(self.name):
            msg = f"Invalid collection name: {self.name!r}"
            raise ValueError(msg)
        for name, ftype in self.fields.items():
            if not _FIELD_NAME_RE.match(name) or name.startswith("_"):
                msg = f"Invalid field name {name!r} in collection {self.name}"
                raise ValueError(msg)
            if ftype not in VALID_FIELD_TYPES:
                msg = f"Unknown field type {ftype!r} for {self.name}.{name}"
                raise ValueError(msg)
        if self.routing_field is not None:
            if self.parent is None:
                msg = f"Collection {self.name} has a routing field but no parent"
                raise ValueError(msg)
            if self.routing_field not in self.fields:
                msg = f"Routing field {self.routing_field!r} is not a field of {self.name}"
                raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fields": dict(self.fields),
            "parent": self.parent,
            "routing_field": self.routing_field,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CollectionSchema:
        return cls(
            name=data["name"],
            fields=dict(data["fields"]),
            parent=data.get("parent"),
            routing_field=data.get("routing_field"),
        )


@dataclass(frozen=True)
class WriteOp:
    """One buffered document write."""

    collection: str
    key: str
    doc: Mapping[str, Any]
    parent_key: str | None = None
    merge: bool = False


@dataclass(frozen=True)
class BulkFailure:
    collection: str
    key: str
    reason: str


@dataclass
class BulkResult:
    committed: list[str] = field(default_factory=list)
    failures: list[BulkFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _check_value(ftype: str, value: Any) -> bool:
    if value is None:
        return True
    if ftype in ("keyword", "text"):
        return isinstance(value, str)
    if ftype == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if ftype == "float":
        return isinstance(value, int | float) and not isinstance(value, bool)
    if ftype == "boolean":
        return isinstance(value, bool)
    if ftype == "object":
        return isinstance(value, dict)
    if ftype == "date":
        if not isinstance(value, str):
            return False
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return False
        return True
    return False


# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------


class _FilterCompiler:
    """Compiles a filter tree to a SQL boolean expression plus bound params."""

    def __init__(self, schemas: Mapping[str, CollectionSchema]) -> None:
        self._schemas = schemas
        self._aliases = itertools.count(1)
        self.params: list[Any] = []

    def _column(self, schema: CollectionSchema, alias: str, name: str) -> str:
        if name == KEY_FIELD:
            return f"{alias}.doc_key"
        if name == PARENT_FIELD:
            return f"{alias}.parent_key"
        if name not in schema.fields:
            msg = f"Unknown field {name!r} for collection {schema.name}"
            raise QueryError(msg)
        return f"json_extract({alias}.body, '$.{name}')"

    def compile(self, flt: Filter, schema: CollectionSchema, alias: str) -> str:
        if isinstance(flt, MatchAll):
            return "1"
        if isinstance(flt, MatchNone):
            return "0"
        if isinstance(flt, Term):
            column = self._column(schema, alias, flt.field)
            if flt.value is None:
                return f"{column} IS NULL"
            self.params.append(flt.value)
            return f"{column} = ?"
        if isinstance(flt, Terms):
            column = self._column(schema, alias, flt.field)
            if not flt.values:
                return "0"
            self.params.extend(flt.values)
            return f"{column} IN ({','.join('?' * len(flt.values))})"
        if isinstance(flt, Range):
            column = self._column(schema, alias, flt.field)
            clauses = []
            for op, bound in ((">", flt.gt), (">=", flt.gte), ("<", flt.lt), ("<=", flt.lte)):
                if bound is not None:
                    clauses.append(f"{column} {op} ?")
                    self.params.append(bound)
            if not clauses:
                msg = f"Range filter on {flt.field!r} has no bounds"
                raise QueryError(msg)
            return "(" + " AND ".join(clauses) + ")"
        if isinstance(flt, Exists):
            return f"{self._column(schema, alias, flt.field)} IS NOT NULL"
        if isinstance(flt, Bool):
            parts = [self.compile(f, schema, alias) for f in flt.must]
            if flt.should:
                parts.append("(" + " OR ".join(self.compile(f, schema, alias) for f in flt.should) + ")")
            parts.extend(f"NOT ({self.compile(f, schema, alias)})" for f in flt.must_not)
            if not parts:
                return "1"
            return "(" + " AND ".join(parts) + ")"
        if isinstance(flt, HasChild):
            child = self._lookup(flt.collection)
            if child.parent != schema.name:
                msg = f"{flt.collection} is not a child collection of {schema.name}"
                raise QueryError(msg)
            sub = f"c{next(self._aliases)}"
            self.params.append(child.name)
            inner = self.compile(flt.filter, child, sub)
            return (
                f"EXISTS (SELECT 1 FROM documents {sub} WHERE {sub}.collection = ? "
                f"AND {sub}.parent_key = {alias}.doc_key AND {inner})"
            )
        if isinstance(flt, HasParent):
            parent = self._lookup(flt.collection)
            if schema.parent != parent.name:
                msg = f"{flt.collection} is not the parent collection of {schema.name}"
                raise QueryError(msg)
            sub = f"p{next(self._aliases)}"
            self.params.append(parent.name)
            inner = self.compile(flt.filter, parent, sub)
            return f"{alias}.parent_key IN (SELECT {sub}.doc_key FROM documents {sub} WHERE {sub}.collection = ? AND {inner})"
        msg = f"Unsupported filter: {flt!r}"
        raise QueryError(msg)

    def _lookup(self, name: str) -> CollectionSchema:
        schema = self._schemas.get(name)
        if schema is None:
            msg = f"Unknown collection: {name}"
            raise QueryError(msg)
        return schema


# ---------------------------------------------------------------------------
# DocumentStore
# ---------------------------------------------------------------------------


class DocumentStore(SQLiteBackend):
    """SQLite-backed document collections. Write/read safe across threads."""

    SCHEMA_SQL = INDEX_SCHEMA_SQL
    SCHEMA_VERSION = INDEX_SCHEMA_VERSION

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._schemas: dict[str, CollectionSchema] = {}

    def initialize(self) -> None:
        super().initialize()
        with self._reading() as conn:
            rows = conn.execute("SELECT definition FROM collections").fetchall()
        self._schemas = {s.name: s for s in (CollectionSchema.from_dict(json.loads(r["definition"])) for r in rows)}

    # -- Collections ---------------------------------------------------------

    def define_collection(self, schema: CollectionSchema) -> None:
        """Register *schema*. Idempotent for an identical definition."""
        existing = self._schemas.get(schema.name)
        if existing is not None:
            if existing.to_dict() != schema.to_dict():
                msg = f"Collection {schema.name} is already defined with a different schema"
                raise ValueError(msg)
            return
        if schema.parent is not None and schema.parent not in self._schemas:
            msg = f"Parent collection {schema.parent} of {schema.name} must be defined first"
            raise ValueError(msg)
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO collections (name, definition, created_at) VALUES (?, ?, ?)",
                (schema.name, json.dumps(schema.to_dict(), sort_keys=True), _now_iso()),
            )
        self._schemas[schema.name] = schema
        logger.info("Defined collection %s", schema.name)

    def get_schema(self, name: str) -> CollectionSchema:
        try:
            return self._schemas[name]
        except KeyError:
            msg = f"Unknown collection: {name}"
            raise KeyError(msg) from None

    def list_collections(self) -> list[str]:
        return sorted(self._schemas)

    # -- Writes --------------------------------------------------------------

    def _prepare(self, op: WriteOp) -> tuple[str, str, str | None, str, bool]:
        """Validate *op* against its schema and return the row to write."""
        schema = self.get_schema(op.collection)
        if not isinstance(op.key, str) or not op.key:
            raise SchemaError(f"Document key must be a non-empty string in {schema.name}", key=str(op.key))
        if not isinstance(op.doc, Mapping):
            raise SchemaError(f"Document {op.key} in {schema.name} must be an object", key=op.key)
        unknown = sorted(set(op.doc) - set(schema.fields))
        if unknown:
            raise SchemaError(f"Unknown fields for {schema.name}: {', '.join(unknown)}", key=op.key)
        for name, value in op.doc.items():
            ftype = schema.fields[name]
            if not _check_value(ftype, value):
                raise SchemaError(
                    f"Field {schema.name}.{name} expects {ftype}, got {type(value).__name__}",
                    key=op.key,
                )

        parent_key = op.parent_key
        if schema.parent is None:
            if parent_key is not None:
                raise SchemaError(f"Collection {schema.name} has no parent; got parent key {parent_key!r}", key=op.key)
        else:
            if parent_key is None and schema.routing_field is not None:
                parent_key = op.doc.get(schema.routing_field)
            if not parent_key:
                raise SchemaError(f"Document {op.key} in child collection {schema.name} needs a parent key", key=op.key)

        return schema.name, op.key, parent_key, json.dumps(dict(op.doc), sort_keys=True), op.merge

    def _write_rows(self, rows: list[tuple[str, str, str | None, str, bool]]) -> None:
        now = _now_iso()
        with self._transaction() as conn:
            for collection, key, parent_key, body, merge in rows:
                body_sql = "json_patch(documents.body, excluded.body)" if merge else "excluded.body"
                conn.execute(
                    "INSERT INTO documents (collection, doc_key, parent_key, body, indexed_at) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(collection, doc_key) DO UPDATE SET "
                    f"parent_key = excluded.parent_key, body = {body_sql}, indexed_at = excluded.indexed_at",
                    (collection, key, parent_key, body, now),
                )

    def upsert(
        self,
        collection: str,
        key: str,
        doc: Mapping[str, Any],
        parent_key: str | None = None,
        *,
        merge: bool = False,
    ) -> None:
        """Replace (or with *merge*, patch) the document at *key*. Raises SchemaError."""
        row = self._prepare(WriteOp(collection, key, doc, parent_key, merge))
        self._write_rows([row])

    def bulk_write(self, ops: Iterable[WriteOp]) -> BulkResult:
        """Write *ops* in one transaction.

        Documents that fail schema validation are skipped and reported; the
        rest commit together. A backend failure rolls back everything and
        raises ``TransientBackendError``.
        """
        result = BulkResult()
        rows = []
        for op in ops:
            try:
                rows.append(self._prepare(op))
            except SchemaError as exc:
                result.failures.append(BulkFailure(op.collection, str(op.key), str(exc)))
                logger.warning("Skipping invalid document %s/%s: %s", op.collection, op.key, exc)
        if rows:
            self._write_rows(rows)
        result.committed = [row[1] for row in rows]
        return result

    def bulk_upsert(
        self,
        collection: str,
        items: Iterable[tuple[str, Mapping[str, Any]] | tuple[str, Mapping[str, Any], str | None]],
    ) -> BulkResult:
        """Bulk replace-by-key within one collection. Items are ``(key, doc[, parent_key])``."""
        ops = []
        for item in items:
            parent_key = item[2] if len(item) > 2 else None  # type: ignore[misc]
            ops.append(WriteOp(collection, item[0], item[1], parent_key))
        return self.bulk_write(ops)

    def clear(self, collection: str) -> int:
        """Delete every document of *collection*; returns the number removed."""
        self.get_schema(collection)
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))
        return cur.rowcount

    # -- Reads ---------------------------------------------------------------

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        self.get_schema(collection)
        with self._reading(QueryError) as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_key = ?",
                (collection, key),
            ).fetchone()
        if row is None:
            return None
        result: dict[str, Any] = json.loads(row["body"])
        return result

    def get_parent_key(self, collection: str, key: str) -> str | None:
        with self._reading(QueryError) as conn:
            row = conn.execute(
                "SELECT parent_key FROM documents WHERE collection = ? AND doc_key = ?",
                (collection, key),
            ).fetchone()
        return row["parent_key"] if row is not None else None

    def query(self, collection: str, flt: Filter, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Documents of *collection* matching *flt*, ordered by key."""
        schema = self._schemas.get(collection)
        if schema is None:
            msg = f"Unknown collection: {collection}"
            raise QueryError(msg)
        if limit is not None and limit < 0:
            msg = f"limit must be >= 0, got {limit}"
            raise QueryError(msg)
        compiler = _FilterCompiler(self._schemas)
        where = compiler.compile(flt, schema, "d0")
        sql = f"SELECT d0.body FROM documents d0 WHERE d0.collection = ? AND {where} ORDER BY d0.doc_key"
        params: list[Any] = [collection, *compiler.params]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._reading(QueryError) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [json.loads(r["body"]) for r in rows]

    def count(self, collection: str) -> int:
        self.get_schema(collection)
        with self._reading(QueryError) as conn:
            result: int = conn.execute("SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)).fetchone()[0]
        return result

    # -- Meta ----------------------------------------------------------------

    def get_meta(self, name: str) -> str | None:
        with self._reading() as conn:
            row = conn.execute("SELECT value FROM store_meta WHERE name = ?", (name,)).fetchone()
        return row["value"] if row is not None else None

    def set_meta(self, name: str, value: str, *, keep_max: bool = False) -> str:
        """Store *value* under *name*. With *keep_max* the stored value never decreases.

        Returns the value stored after the write.
        """
        update = "max(store_meta.value, excluded.value)" if keep_max else "excluded.value"
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO store_meta (name, value) VALUES (?, ?) ON CONFLICT(name) DO UPDATE SET value = {update}",
                (name, value),
            )
            row = conn.execute("SELECT value FROM store_meta WHERE name = ?", (name,)).fetchone()
        stored: str = row["value"]
        return stored
