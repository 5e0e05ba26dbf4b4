"""Aggregation of fetched activity into per-contributor metrics and rankings.

Contributor keys are lowercased everywhere, so ``MemiMint`` and ``memimint``
are the same person. Aliases and the blacklist are applied after lowercasing.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional
from github_metrics.domain.models import ContributorMetrics, RankedUser


logger = logging.getLogger(__name__)

UNKNOWN_USER = "unknown"

DEFAULT_BLACKLISTED_USERS = frozenset({
    "ghost",
    "unknown",
    "dependabot[bot]",
    "snyk-bot",
    "copilot-pull-request-reviewer",
})

REVIEW_POINTS = 1.0
THREAD_POINTS = 0.1
CHANGES_REQUESTED = "CHANGES_REQUESTED"


def label_category(label_name: str) -> str:
    """Bucket a label into ``bug``, ``enhancement`` or ``other``."""
    name = label_name.lower()
    if "bug" in name:
        return "bug"
    if "enhancement" in name or "feature" in name:
        return "enhancement"
    return "other"


class MetricsAggregator:
    """Accumulates contributor metrics from commits, PRs, reviews and issues."""

    def __init__(
        self,
        aliases: Optional[Mapping[str, str]] = None,
        blacklist: Iterable[str] = DEFAULT_BLACKLISTED_USERS
    ):
        """Initialize the aggregator.

        Args:
            aliases: Maps a git author name or login to the canonical login
            blacklist: Logins excluded from every metric
        """
        self._aliases = {k.lower(): v.lower() for k, v in (aliases or {}).items()}
        self._blacklist = {user.lower() for user in blacklist}

    def normalize(self, user: Optional[str]) -> Optional[str]:
        """Canonical key for a user, or None when the user is excluded."""
        key = (user or UNKNOWN_USER).strip().lower() or UNKNOWN_USER
        key = self._aliases.get(key, key)
        if key in self._blacklist:
            return None
        return key

    @staticmethod
    def commit_author(commit: Dict[str, Any]) -> str:
        """First linked GitHub login, else the git author name."""
        nodes = (commit.get("authors") or {}).get("nodes") or []
        if nodes:
            user = nodes[0].get("user") if nodes[0] else None
            if user and user.get("login"):
                return user["login"]
        author = commit.get("author") or {}
        return author.get("name") or UNKNOWN_USER

    @staticmethod
    def _record(metrics: Dict[str, ContributorMetrics], user: str) -> ContributorMetrics:
        if user not in metrics:
            metrics[user] = ContributorMetrics()
        return metrics[user]

    def add_commits(self, metrics: Dict[str, ContributorMetrics], commits: Iterable[Dict[str, Any]]) -> None:
        for commit in commits:
            if not commit:
                continue
            user = self.normalize(self.commit_author(commit))
            if user is None:
                continue
            record = self._record(metrics, user)
            record.commits += (commit.get("additions") or 0) + (commit.get("deletions") or 0)

    def add_pull_request(self, metrics: Dict[str, ContributorMetrics], pull_request: Dict[str, Any]) -> None:
        user = self.normalize((pull_request.get("user") or {}).get("login"))
        if user is not None:
            self._record(metrics, user).pull_requests += 1

    def add_reviews(self, metrics: Dict[str, ContributorMetrics], payload: Dict[str, List[Dict[str, Any]]]) -> None:
        """Credit reviews, rejections and review threads of one pull request.

        A ``CHANGES_REQUESTED`` review counts as a rejection for the reviewer
        who requested the changes.
        """
        for review in payload.get("reviews", []):
            reviewer = self.normalize((review.get("author") or {}).get("login"))
            if reviewer is None:
                continue
            record = self._record(metrics, reviewer)
            record.reviews += 1
            record.score += REVIEW_POINTS
            if review.get("state") == CHANGES_REQUESTED:
                record.rejections += 1

        for thread in payload.get("reviewThreads", []):
            comments = ((thread or {}).get("comments") or {}).get("nodes") or []
            first_author = (comments[0].get("author") or {}).get("login") if comments else None
            user = self.normalize(first_author)
            if user is not None:
                self._record(metrics, user).score += THREAD_POINTS

    def add_closed_issue(self, metrics: Dict[str, ContributorMetrics], issue: Dict[str, Any]) -> None:
        assignees = [a.get("login") for a in issue.get("assignees") or [] if a]
        if not assignees and issue.get("assignee"):
            assignees = [issue["assignee"].get("login")]
        for login in {self.normalize(login) for login in assignees}:
            if login is not None:
                self._record(metrics, login).closed_issues += 1

    def add_issue_events(self, metrics: Dict[str, ContributorMetrics], events: Iterable[Dict[str, Any]]) -> None:
        for event in events:
            if event.get("event") != "labeled" or not event.get("label"):
                continue
            user = self.normalize((event.get("actor") or {}).get("login"))
            if user is None:
                continue
            record = self._record(metrics, user)
            category = label_category(event["label"].get("name", ""))
            if category == "bug":
                record.bug_labels += 1
            elif category == "enhancement":
                record.enhancement_labels += 1
            else:
                record.other_labels += 1


def rank_users(metrics: Dict[str, ContributorMetrics]) -> List[RankedUser]:
    """Rank contributors by the sum of their positions in three orderings.

    Contributors are ordered by code changes, merged PRs and review score
    (descending, ties broken by name); the 0-based positions are summed and
    the lowest total ranks first.
    """
    orderings = [
        sorted(metrics, key=lambda user: (-metrics[user].commits, user)),
        sorted(metrics, key=lambda user: (-metrics[user].pull_requests, user)),
        sorted(metrics, key=lambda user: (-metrics[user].score, user)),
    ]
    totals: Dict[str, int] = {user: 0 for user in metrics}
    for ordering in orderings:
        for index, user in enumerate(ordering):
            totals[user] += index
    return [
        RankedUser(user=user, total_index=total)
        for user, total in sorted(totals.items(), key=lambda item: (item[1], item[0]))
    ]
