"""Fixtures for operator HTTP API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

import issuesync.dashboard as dash_module
from issuesync.core import IssueSync
from issuesync.dashboard import create_app
from tests._factory import make_issue


@pytest.fixture
def seeded_service(service: IssueSync) -> IssueSync:
    """ABC-1 in P1 (group "user"), ABC-2 in P2 (user "julien"); synced."""
    make_issue(service.records, "ABC-1", project="P1", severity="MAJOR", assignee="alice")
    make_issue(service.records, "ABC-2", project="P2", severity="MINOR")
    service.add_grant("P1", group="user")
    service.add_grant("P2", user="julien")
    service.sync()
    return service


@pytest.fixture
async def client(seeded_service: IssueSync) -> AsyncIterator[AsyncClient]:
    """Test client backed by the seeded deployment."""
    dash_module._service = seeded_service
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    dash_module._service = None
