"""Tests for permission-scoped issue queries."""

from __future__ import annotations

import pytest

from issuesync.authorization import AuthorizationFilterBuilder
from issuesync.docstore import DocumentStore
from issuesync.filters import HasChild, HasParent, MatchAll, MatchNone, Term
from issuesync.issue_index import IssueIndex
from issuesync.permission_index import PERMISSION_COLLECTION, PermissionIndex
from tests._factory import make_doc

auth = AuthorizationFilterBuilder()


def _hits(index: IssueIndex, user: str | None = None, groups: tuple[str, ...] = ()) -> list[str]:
    return [d.key for d in index.query(MatchAll(), auth.build(user, groups), 1000)]


class TestFilterShape:
    def test_empty_identity_is_match_none(self) -> None:
        assert auth.build(None, ()) == MatchNone()
        assert auth.build("", ["", ""]) == MatchNone()

    def test_joins_through_project(self) -> None:
        flt = auth.build("julien", ["user"])
        assert isinstance(flt, HasParent)
        assert flt.collection == "issue_project"
        assert isinstance(flt.filter, HasChild)
        assert flt.filter.collection == PERMISSION_COLLECTION.name

    def test_duplicate_groups_collapse(self) -> None:
        assert auth.grant_filter(None, ["user", "user"]) == auth.grant_filter(None, ["user"])

    def test_single_group(self) -> None:
        flt = auth.grant_filter(None, ["user"])
        assert Term("group", "user") in flt.must  # type: ignore[union-attr]
        assert Term("permission", "read") in flt.must  # type: ignore[union-attr]

    def test_names_are_stripped(self) -> None:
        assert auth.grant_filter(" julien ", [" user", "user "]) == auth.grant_filter("julien", ["user"])

    def test_blank_names_are_ignored(self) -> None:
        assert auth.grant_filter("  ", ["   ", "\t"]) == MatchNone()
        assert auth.grant_filter(None, ["  ", "user"]) == auth.grant_filter(None, ["user"])


class TestDefaultDeny:
    def test_anonymous_sees_nothing(self, three_projects: IssueIndex) -> None:
        assert _hits(three_projects) == []

    def test_empty_identity_matches_no_grants(
        self, three_projects: IssueIndex, permission_index: PermissionIndex, doc_store: DocumentStore
    ) -> None:
        permission_index.add_grant("P1", user="julien")
        assert doc_store.query(PERMISSION_COLLECTION.name, auth.grant_filter(None, [])) == []
        assert doc_store.query(PERMISSION_COLLECTION.name, auth.grant_filter("", [""])) == []

    def test_project_without_grants_is_invisible(self, issue_index: IssueIndex) -> None:
        issue_index.upsert(make_doc("K1", "ORPHAN"))
        assert _hits(issue_index, "julien", ("user", "anyone")) == []

    def test_issue_index_alone_answers_auth_queries(self, doc_store: DocumentStore) -> None:
        index = IssueIndex(doc_store)
        index.upsert(make_doc("K1", "P1"))
        assert _hits(index, None, ("user",)) == []
        assert doc_store.count(PERMISSION_COLLECTION.name) == 0

    def test_other_permission_does_not_grant_read(
        self, issue_index: IssueIndex, permission_index: PermissionIndex
    ) -> None:
        permission_index.add_grant("P1", group="user", permission="admin")
        issue_index.upsert(make_doc("K1", "P1"))
        assert _hits(issue_index, None, ("user",)) == []
        flt = auth.build(None, ["user"], permission="admin")
        assert [d.key for d in issue_index.query(MatchAll(), flt, 10)] == ["K1"]


class TestGroupScenario:
    @pytest.mark.parametrize(
        ("groups", "expected"),
        [
            (("user", "reviewer"), ["ISSUE1", "ISSUE2", "ISSUE3"]),
            (("user",), ["ISSUE1", "ISSUE3"]),
            (("reviewer",), ["ISSUE2", "ISSUE3"]),
            (("unknown",), []),
        ],
    )
    def test_visibility_by_group(self, three_projects: IssueIndex, groups: tuple[str, ...], expected: list[str]) -> None:
        assert _hits(three_projects, None, groups) == expected

    def test_padded_group_names_match_stored_grants(self, three_projects: IssueIndex) -> None:
        assert _hits(three_projects, None, (" user ",)) == ["ISSUE1", "ISSUE3"]

    def test_grant_after_indexing_is_visible_immediately(
        self, three_projects: IssueIndex, permission_index: PermissionIndex
    ) -> None:
        assert _hits(three_projects, None, ("auditor",)) == []
        permission_index.add_grant("P2", group="auditor")
        assert _hits(three_projects, None, ("auditor",)) == ["ISSUE2"]


class TestUserScenario:
    def test_user_grant_is_per_user(self, issue_index: IssueIndex, permission_index: PermissionIndex) -> None:
        permission_index.add_grant("P1", user="julien")
        issue_index.upsert(make_doc("ISSUE1", "P1"))
        assert _hits(issue_index, "julien") == ["ISSUE1"]
        assert _hits(issue_index, "simon") == []

    def test_user_or_group(self, issue_index: IssueIndex, permission_index: PermissionIndex) -> None:
        permission_index.add_grant("P1", user="julien")
        permission_index.add_grant("P2", group="reviewer")
        issue_index.bulk_upsert([make_doc("ISSUE1", "P1"), make_doc("ISSUE2", "P2")])
        assert _hits(issue_index, "julien", ("reviewer",)) == ["ISSUE1", "ISSUE2"]
        assert _hits(issue_index, "simon", ("reviewer",)) == ["ISSUE2"]

    def test_base_filter_still_applies(self, three_projects: IssueIndex) -> None:
        docs = three_projects.query(Term("key", "ISSUE3"), auth.build(None, ["user"]), 10)
        assert [d.key for d in docs] == ["ISSUE3"]


class TestManyProjects:
    @pytest.fixture
    def fifty_issues(self, issue_index: IssueIndex, permission_index: PermissionIndex) -> IssueIndex:
        """10 projects x 5 components, readable by "anyone", "user" on even projects, and user-0..user-4."""
        docs = []
        with permission_index.bulk(threshold=25) as batch:
            for p in range(10):
                project = f"PROJECT{p}"
                batch.add_grant(project, group="anyone")
                if p % 2 == 0:
                    batch.add_grant(project, group="user")
                for u in range(5):
                    batch.add_grant(project, user=f"user-{u}")
                docs.extend(make_doc(f"{project}-ISSUE{c}", project, component_key=f"{project}:c{c}") for c in range(5))
        issue_index.bulk_upsert(docs)
        return issue_index

    def test_anyone(self, fifty_issues: IssueIndex) -> None:
        assert len(_hits(fifty_issues, None, ("anyone",))) == 50

    def test_even_projects(self, fifty_issues: IssueIndex) -> None:
        hits = _hits(fifty_issues, None, ("user",))
        assert len(hits) == 25
        assert {h.split("-")[0] for h in hits} == {f"PROJECT{p}" for p in range(0, 10, 2)}

    def test_single_user(self, fifty_issues: IssueIndex) -> None:
        assert len(_hits(fifty_issues, "user-1")) == 50

    def test_unknown_user(self, fifty_issues: IssueIndex) -> None:
        assert _hits(fifty_issues, "user-9") == []
