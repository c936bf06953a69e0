"""Query-time authorization filters.

An issue is visible to an identity iff its project has at least one
permission grant whose ``permission`` matches and whose ``user`` is the acting
user or whose ``group`` is one of the user's groups. The grant predicate is
evaluated on the permission children and lifted to the issue through the
project parent, so grants are never copied onto issue documents.

There is no implicit access: an anonymous identity with no groups sees
nothing, and a universal group such as "anyone" only applies when the caller
lists it.
"""

from __future__ import annotations

from collections.abc import Iterable

from issuesync.filters import Filter, HasChild, HasParent, MatchNone, Term, and_, or_
from issuesync.permission_index import PERMISSION_COLLECTION, PROJECT_COLLECTION, READ_PERMISSION


class AuthorizationFilterBuilder:
    def __init__(
        self,
        *,
        project_collection: str = PROJECT_COLLECTION.name,
        permission_collection: str = PERMISSION_COLLECTION.name,
    ) -> None:
        self.project_collection = project_collection
        self.permission_collection = permission_collection

    def grant_filter(self, user: str | None, groups: Iterable[str], *, permission: str = READ_PERMISSION) -> Filter:
        """Predicate over permission documents the identity qualifies for.

        Names are stripped the same way grant targets are when they are stored;
        blank names are ignored.
        """
        identities: list[Filter] = []
        user = (user or "").strip()
        if user:
            identities.append(Term("user", user))
        seen: set[str] = set()
        for group in groups:
            group = group.strip()
            if group and group not in seen:
                seen.add(group)
                identities.append(Term("group", group))
        if not identities:
            return MatchNone()
        return and_(Term("permission", permission), or_(identities))

    def build(self, user: str | None, groups: Iterable[str], *, permission: str = READ_PERMISSION) -> Filter:
        """Filter over issue documents visible to *user* with *groups*."""
        grants = self.grant_filter(user, groups, permission=permission)
        if isinstance(grants, MatchNone):
            return grants
        return HasParent(self.project_collection, HasChild(self.permission_collection, grants))
