"""Operator HTTP API for issuesync.

Thin controls over one ``IssueSync`` instance: health, sync status, full
resync, and permission-scoped issue search. A module-level ``_service`` is
set at startup (or by test fixtures) and injected via ``Depends(_get_service)``.

Usage:
    issuesync serve                  # Serves on localhost:8378
    issuesync serve --port 9000      # Custom port
    issuesync serve --no-scheduler   # Do not run background sync
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi.responses import JSONResponse
    from starlette.requests import Request

from issuesync.core import DEFAULT_MAX_RESULTS, IssueSync
from issuesync.errors import QueryError, TransientBackendError, ValidationError
from issuesync.filters import terms_filter

DEFAULT_PORT = 8378
MAX_SEARCH_RESULTS = 1000

# Document fields a search request may filter on by equality.
SEARCH_FILTER_FIELDS = frozenset(
    {"status", "resolution", "severity", "assignee", "reporter", "rule_key", "component_key", "root_component_key"}
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state, set by main() or test fixtures
# ---------------------------------------------------------------------------

_service: IssueSync | None = None


def _get_service() -> IssueSync:
    if _service is None:
        from fastapi import HTTPException

        raise HTTPException(status_code=503, detail="Service not initialized")
    return _service


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    from fastapi.responses import JSONResponse

    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse and validate a JSON object body, returning 400 on failure."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", "VALIDATION_ERROR", 400)
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", "VALIDATION_ERROR", 400)
    return body


def _parse_search(body: dict[str, Any]) -> tuple[str | None, list[str], dict[str, str], int] | JSONResponse:
    """Validate a search body into (user, groups, criteria, limit)."""
    user = body.get("user")
    if user is not None and not isinstance(user, str):
        return _error_response("user must be a string", "VALIDATION_ERROR", 400)
    groups = body.get("groups", [])
    if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
        return _error_response("groups must be a list of strings", "VALIDATION_ERROR", 400)
    criteria = body.get("filter", {})
    if not isinstance(criteria, dict):
        return _error_response("filter must be an object", "VALIDATION_ERROR", 400)
    unknown = sorted(set(criteria) - SEARCH_FILTER_FIELDS)
    if unknown:
        return _error_response(
            f"Unknown filter fields: {', '.join(unknown)}",
            "VALIDATION_ERROR",
            400,
            {"allowed": sorted(SEARCH_FILTER_FIELDS)},
        )
    if not all(isinstance(v, str) for v in criteria.values()):
        return _error_response("filter values must be strings", "VALIDATION_ERROR", 400)
    limit = body.get("limit", DEFAULT_MAX_RESULTS)
    if not isinstance(limit, int) or isinstance(limit, bool) or not (1 <= limit <= MAX_SEARCH_RESULTS):
        return _error_response(f"limit must be an integer between 1 and {MAX_SEARCH_RESULTS}", "VALIDATION_ERROR", 400)
    return user, groups, criteria, limit


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app() -> Any:
    """Create the FastAPI application.

    NOTE: Handlers are async and do their short SQLite reads and writes on
    the event loop thread. A full resync runs in a worker thread so searches
    keep being served while it pages; the stores lock internally.
    """
    from fastapi import Depends, FastAPI
    from fastapi.responses import JSONResponse
    from starlette.requests import Request

    # Expose Request/JSONResponse in module globals so PEP 563 deferred annotations resolve
    globals()["Request"] = Request
    globals()["JSONResponse"] = JSONResponse

    app = FastAPI(title="issuesync", docs_url=None, redoc_url=None)

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/api/sync/status")
    async def api_sync_status(service: IssueSync = Depends(_get_service)) -> JSONResponse:
        return JSONResponse(service.get_sync_status())

    @app.post("/api/sync/resync")
    async def api_resync(service: IssueSync = Depends(_get_service)) -> JSONResponse:
        """Run a full bootstrap sync now. Returns 409 if a run is already active."""
        # A bootstrap pages through every record; keep it off the event loop.
        result = await asyncio.to_thread(service.trigger_full_resync)
        if result.outcome == "skipped":
            return _error_response("A sync run is already in progress", "SYNC_BUSY", 409)
        if result.outcome == "failed":
            return _error_response(result.error or "Sync failed", "SYNC_FAILED", 503, {"run": result.to_dict()})
        return JSONResponse(result.to_dict())

    @app.post("/api/issues/search")
    async def api_search(request: Request, service: IssueSync = Depends(_get_service)) -> JSONResponse:
        body = await _parse_json_body(request)
        if not isinstance(body, dict):
            return body
        parsed = _parse_search(body)
        if not isinstance(parsed, tuple):
            return parsed
        user, groups, criteria, limit = parsed
        try:
            docs = service.search(user, groups, terms_filter(**criteria), max_results=limit)
        except QueryError as e:
            return _error_response(str(e), "QUERY_ERROR", 400)
        except TransientBackendError as e:
            return _error_response(str(e), "BACKEND_UNAVAILABLE", 503)
        return JSONResponse({"results": [d.to_dict() for d in docs], "total": len(docs), "limit": limit})

    @app.get("/api/issues/{key}")
    async def api_get_issue(key: str, service: IssueSync = Depends(_get_service)) -> JSONResponse:
        try:
            doc = service.get_issue(key)
        except QueryError as e:
            return _error_response(str(e), "QUERY_ERROR", 400)
        if doc is None:
            return _error_response(f"Issue not found: {key}", "ISSUE_NOT_FOUND", 404)
        return JSONResponse(doc.to_dict())

    @app.post("/api/projects/{project_key}/grants")
    async def api_add_grant(
        project_key: str,
        request: Request,
        service: IssueSync = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if not isinstance(body, dict):
            return body
        try:
            grant_key = service.add_grant(project_key, user=body.get("user"), group=body.get("group"))
        except ValidationError as e:
            return _error_response(str(e), "VALIDATION_ERROR", 400)
        except TransientBackendError as e:
            return _error_response(str(e), "BACKEND_UNAVAILABLE", 503)
        return JSONResponse({"grant": grant_key, "project": project_key}, status_code=201)

    return app


def main(service: IssueSync, port: int = DEFAULT_PORT, *, scheduler: bool = True) -> None:
    """Serve the operator API, optionally running the sync scheduler alongside."""
    import uvicorn

    global _service
    _service = service
    if scheduler:
        service.start_scheduler()
    app = create_app()
    try:
        uvicorn.run(app, host="127.0.0.1", port=port, log_level="warning")
    finally:
        service.stop_scheduler()
        _service = None
