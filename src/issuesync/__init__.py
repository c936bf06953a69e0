"""issuesync: permission-aware search projection of issue records, kept in sync with the record store."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("issuesync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from issuesync.core import IssueSync
from issuesync.issue_index import IssueDocument
from issuesync.records import IssueRecord

__all__ = ["IssueDocument", "IssueRecord", "IssueSync", "__version__"]
