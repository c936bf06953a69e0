"""Database schema definitions for the record store and the document index.

Both databases are stamped via ``PRAGMA user_version``; bump the matching
version constant whenever a schema here changes.
"""

from __future__ import annotations

RECORDS_SCHEMA_VERSION = 1
INDEX_SCHEMA_VERSION = 1

RECORDS_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS rules (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    repository  TEXT NOT NULL,
    rule_key    TEXT NOT NULL,
    name        TEXT DEFAULT '',
    UNIQUE (repository, rule_key)
);

CREATE TABLE IF NOT EXISTS components (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    key         TEXT NOT NULL UNIQUE,
    project_id  INTEGER REFERENCES components(id)
);

CREATE INDEX IF NOT EXISTS idx_components_project ON components(project_id);

CREATE TABLE IF NOT EXISTS issues (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    kee                TEXT NOT NULL UNIQUE,
    rule_id            INTEGER NOT NULL REFERENCES rules(id),
    component_id       INTEGER NOT NULL REFERENCES components(id),
    root_component_id  INTEGER NOT NULL REFERENCES components(id),
    status             TEXT NOT NULL DEFAULT 'OPEN',
    resolution         TEXT,
    severity           TEXT,
    assignee           TEXT,
    author_login       TEXT,
    reporter           TEXT,
    message            TEXT,
    line               INTEGER,
    effort_to_fix      REAL,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    closed_at          TEXT,
    action_plan_key    TEXT,
    attributes         TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_issues_updated ON issues(updated_at, kee);
CREATE INDEX IF NOT EXISTS idx_issues_root_component ON issues(root_component_id);
"""

INDEX_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS collections (
    name           TEXT PRIMARY KEY,
    definition     TEXT NOT NULL,
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT NOT NULL REFERENCES collections(name),
    doc_key     TEXT NOT NULL,
    parent_key  TEXT,
    body        TEXT NOT NULL,
    indexed_at  TEXT NOT NULL,
    PRIMARY KEY (collection, doc_key)
);

CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(collection, parent_key);

CREATE TABLE IF NOT EXISTS store_meta (
    name   TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
"""
