"""GitHub GraphQL and REST API client returning pages of activity records.

Retry and rate-limit waiting live in the orchestrator; this client only
translates upstream responses into pages and classifies failures into
QuotaExceeded, TransientNetworkError and PermanentQueryError.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
import aiohttp
from gql import gql, Client
from gql.transport.aiohttp import AIOHTTPTransport
from gql.transport.exceptions import (
    TransportProtocolError,
    TransportQueryError,
    TransportServerError
)
from github_metrics.domain.errors import (
    PermanentQueryError,
    QuotaExceeded,
    TransientNetworkError
)
from github_metrics.domain.github_interface import IGitHubClient
from github_metrics.domain.models import Dataset, FetchUnit, Page, Quota


logger = logging.getLogger(__name__)

GITHUB_GRAPHQL_API = "https://api.github.com/graphql"
GITHUB_REST_API = "https://api.github.com"
PER_PAGE = 100
SEARCH_RESULT_CEILING = 1000
RETRYABLE_STATUSES = {403, 429, 502, 503, 504}

REPOSITORIES_QUERY = gql("""
    query($repoOwner: String!, $cursor: String) {
        repositoryOwner(login: $repoOwner) {
            repositories(first: 100, after: $cursor) {
                nodes {
                    name
                }
                pageInfo {
                    hasNextPage
                    endCursor
                }
            }
        }
        rateLimit {
            remaining
            resetAt
        }
    }
""")

COMMITS_QUERY = gql("""
    query($repoOwner: String!, $repository: String!, $since: GitTimestamp,
          $until: GitTimestamp, $cursor: String) {
        repository(owner: $repoOwner, name: $repository) {
            defaultBranchRef {
                target {
                    ... on Commit {
                        history(first: 100, since: $since, until: $until, after: $cursor) {
                            nodes {
                                oid
                                committedDate
                                additions
                                deletions
                                changedFiles
                                message
                                authors(first: 1) {
                                    nodes {
                                        user {
                                            login
                                        }
                                    }
                                }
                                author {
                                    name
                                    email
                                }
                            }
                            pageInfo {
                                hasNextPage
                                endCursor
                            }
                        }
                    }
                }
            }
        }
        rateLimit {
            remaining
            resetAt
        }
    }
""")

REVIEWS_QUERY = gql("""
    query($owner: String!, $repo: String!, $pullNumber: Int!, $cursor: String) {
        repository(owner: $owner, name: $repo) {
            pullRequest(number: $pullNumber) {
                reviews(first: 100, after: $cursor) {
                    nodes {
                        author {
                            login
                        }
                        body
                        createdAt
                        state
                        commit {
                            oid
                        }
                    }
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                }
                reviewThreads(first: 100) {
                    nodes {
                        id
                        isResolved
                        comments(first: 100) {
                            nodes {
                                author {
                                    login
                                }
                                body
                                createdAt
                            }
                        }
                    }
                }
            }
        }
        rateLimit {
            remaining
            resetAt
        }
    }
""")


def _parse_github_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def quota_from_headers(headers: Mapping[str, str], default_resource: str) -> Optional[Quota]:
    """Read ``x-ratelimit-*`` response headers into a Quota, if present."""
    remaining = headers.get("x-ratelimit-remaining")
    if remaining is None:
        return None
    reset = headers.get("x-ratelimit-reset")
    reset_at = datetime.fromtimestamp(int(reset), timezone.utc) if reset else None
    return Quota(
        resource=headers.get("x-ratelimit-resource", default_resource),
        remaining=int(remaining),
        reset_at=reset_at
    )


def classify_status(status: int, headers: Mapping[str, str], message: str) -> Exception:
    """Map an unsuccessful HTTP status to the error taxonomy.

    403/429 responses carrying an exhausted quota or a Retry-After header are
    rate-limit signals; other 403/429 and gateway errors are transient.
    """
    if status in (403, 429):
        if headers.get("x-ratelimit-remaining") == "0" and headers.get("x-ratelimit-reset"):
            reset_at = datetime.fromtimestamp(int(headers["x-ratelimit-reset"]), timezone.utc)
            return QuotaExceeded(f"Rate limit exhausted ({status})", reset_at=reset_at)
        retry_after = headers.get("retry-after")
        if retry_after and retry_after.isdigit():
            reset_at = datetime.now(timezone.utc) + timedelta(seconds=int(retry_after))
            return QuotaExceeded(f"Secondary rate limit ({status})", reset_at=reset_at)
    if status in RETRYABLE_STATUSES:
        return TransientNetworkError(f"HTTP {status}: {message}", status=status)
    return PermanentQueryError(f"HTTP {status}: {message}", status=status)


class GitHubClient(IGitHubClient):
    """GitHub API client combining GraphQL (gql) and REST (aiohttp).

    Implements the IGitHubClient port, providing an anti-corruption layer
    between the cache/orchestration logic and GitHub's API.
    """

    def __init__(self, access_token: str, request_timeout: float = 60):
        """Initialize GitHub client.

        Args:
            access_token: GitHub personal access token
            request_timeout: Seconds before a single request times out
        """
        self._access_token = access_token
        self._request_timeout = request_timeout
        self._transport: Optional[AIOHTTPTransport] = None
        self._client: Optional[Client] = None
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/vnd.github+json",
        }

    async def _init_client(self) -> None:
        """Initialize the GraphQL client and REST session (lazy initialization)."""
        if self._client is None:
            self._transport = AIOHTTPTransport(
                url=GITHUB_GRAPHQL_API,
                headers=self._headers,
                timeout=int(self._request_timeout)
            )
            self._client = Client(
                transport=self._transport,
                fetch_schema_from_transport=False,
                execute_timeout=self._request_timeout
            )
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )

    async def fetch_page(self, unit: FetchUnit, cursor: Optional[str] = None) -> Page:
        await self._init_client()
        if unit.dataset is Dataset.REPOSITORIES:
            return await self._fetch_repositories(unit, cursor)
        if unit.dataset is Dataset.COMMITS:
            return await self._fetch_commits(unit, cursor)
        if unit.dataset is Dataset.PR_REVIEWS:
            return await self._fetch_reviews(unit, cursor)
        if unit.dataset is Dataset.PULL_REQUESTS:
            return await self._search(unit, cursor, "type:pr is:merged created")
        if unit.dataset is Dataset.ISSUES:
            return await self._search(unit, cursor, "type:issue is:closed closed")
        if unit.dataset is Dataset.ISSUE_EVENTS:
            return await self._fetch_issue_events(unit, cursor)
        raise PermanentQueryError(f"Unsupported dataset: {unit.dataset}")

    async def _execute_graphql(self, query, variables: Dict[str, Any]) -> Tuple[dict, Optional[Quota]]:
        """Execute a GraphQL query and classify failures.

        Returns:
            The ``data`` payload and the quota it reported

        Raises:
            QuotaExceeded: When GitHub answers with a RATE_LIMITED error
            TransientNetworkError: On gateway errors, resets and timeouts
            PermanentQueryError: On any other GraphQL error
        """
        try:
            async with self._client as session:
                result = await session.execute(query, variable_values=variables)
        except TransportQueryError as e:
            errors = e.errors or []
            if any(error.get("type") == "RATE_LIMITED" for error in errors):
                quota = self._graphql_header_quota()
                reset_at = quota.reset_at if quota else None
                raise QuotaExceeded(f"GraphQL rate limited: {e}", reset_at=reset_at) from e
            raise PermanentQueryError(f"GraphQL errors: {errors}") from e
        except TransportServerError as e:
            headers = self._transport.response_headers if self._transport else None
            raise classify_status(e.code or 500, headers or {}, str(e)) from e
        except TransportProtocolError as e:
            raise TransientNetworkError(f"Malformed GraphQL response: {e}") from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            raise TransientNetworkError(f"Connection failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError("GraphQL request timed out") from e

        quota = self._graphql_body_quota(result) or self._graphql_header_quota()
        if quota is not None:
            logger.debug(f"GraphQL rate limit remaining: {quota.remaining}, resets at: {quota.reset_at}")
        return result, quota

    def _graphql_header_quota(self) -> Optional[Quota]:
        headers = getattr(self._transport, "response_headers", None)
        if not headers:
            return None
        return quota_from_headers(headers, "graphql")

    @staticmethod
    def _graphql_body_quota(result: dict) -> Optional[Quota]:
        rate_limit = result.get("rateLimit")
        if not rate_limit:
            return None
        reset_at_str = rate_limit.get("resetAt")
        return Quota(
            resource="graphql",
            remaining=rate_limit.get("remaining", 0),
            reset_at=_parse_github_datetime(reset_at_str) if reset_at_str else None
        )

    async def _fetch_repositories(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        result, quota = await self._execute_graphql(
            REPOSITORIES_QUERY, {"repoOwner": unit.owner, "cursor": cursor}
        )
        owner = result.get("repositoryOwner")
        if owner is None:
            raise PermanentQueryError(f"Unknown repository owner: {unit.owner}")
        repositories = owner["repositories"]
        page_info = repositories.get("pageInfo", {})
        return Page(
            records=[node for node in repositories.get("nodes", []) if node],
            has_next_page=page_info.get("hasNextPage", False),
            end_cursor=page_info.get("endCursor"),
            quota=quota
        )

    async def _fetch_commits(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        variables = {
            "repoOwner": unit.owner,
            "repository": unit.repository,
            "since": unit.interval.since if unit.interval else None,
            "until": unit.interval.until if unit.interval else None,
            "cursor": cursor,
        }
        result, quota = await self._execute_graphql(COMMITS_QUERY, variables)
        repository = result.get("repository")
        if repository is None:
            raise PermanentQueryError(f"Unknown repository: {unit.owner}/{unit.repository}")
        # Empty repositories have no default branch.
        if not repository.get("defaultBranchRef"):
            return Page(records=[], quota=quota)
        history = repository["defaultBranchRef"]["target"]["history"]
        page_info = history.get("pageInfo", {})
        return Page(
            records=[node for node in history.get("nodes", []) if node],
            has_next_page=page_info.get("hasNextPage", False),
            end_cursor=page_info.get("endCursor"),
            quota=quota
        )

    async def _fetch_reviews(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        variables = {
            "owner": unit.owner,
            "repo": unit.repository,
            "pullNumber": unit.number,
            "cursor": cursor,
        }
        result, quota = await self._execute_graphql(REVIEWS_QUERY, variables)
        pull_request = (result.get("repository") or {}).get("pullRequest")
        if pull_request is None:
            raise PermanentQueryError(
                f"Unknown pull request: {unit.owner}/{unit.repository}#{unit.number}"
            )
        reviews = pull_request["reviews"]
        page_info = reviews.get("pageInfo", {})
        threads = []
        # Threads are not paginated with the reviews; take them from the first page only.
        if cursor is None:
            threads = [node for node in pull_request["reviewThreads"].get("nodes", []) if node]
        return Page(
            records=[node for node in reviews.get("nodes", []) if node],
            has_next_page=page_info.get("hasNextPage", False),
            end_cursor=page_info.get("endCursor"),
            related=threads,
            quota=quota
        )

    async def _rest_get(self, path: str, params: Dict[str, Any], resource: str) -> Tuple[Any, Optional[Quota]]:
        """GET a REST endpoint and classify failures."""
        try:
            async with self._session.get(f"{GITHUB_REST_API}{path}", params=params) as response:
                headers = {key.lower(): value for key, value in response.headers.items()}
                if response.status != 200:
                    body = await response.text()
                    raise classify_status(response.status, headers, body[:200])
                payload = await response.json()
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            raise TransientNetworkError(f"Connection failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request to {path} timed out") from e

        quota = quota_from_headers(headers, resource)
        return payload, quota

    async def _search(self, unit: FetchUnit, cursor: Optional[str], qualifier: str) -> Page:
        """Search issues/pull requests of the organization within the unit's interval."""
        page = int(cursor) if cursor else 1
        query = f"org:{unit.owner} {qualifier}:{unit.interval.since}..{unit.interval.until}"
        payload, quota = await self._rest_get(
            "/search/issues",
            {"q": query, "per_page": PER_PAGE, "page": page},
            "search"
        )
        items = payload.get("items", [])
        total = min(payload.get("total_count", 0), SEARCH_RESULT_CEILING)
        if payload.get("incomplete_results"):
            logger.warning(f"Search results incomplete for query: {query}")
        has_next_page = len(items) == PER_PAGE and page * PER_PAGE < total
        return Page(
            records=items,
            has_next_page=has_next_page,
            end_cursor=str(page + 1) if has_next_page else None,
            quota=quota
        )

    async def _fetch_issue_events(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        page = int(cursor) if cursor else 1
        payload, quota = await self._rest_get(
            f"/repos/{unit.owner}/{unit.repository}/issues/{unit.number}/events",
            {"per_page": PER_PAGE, "page": page},
            "core"
        )
        has_next_page = len(payload) == PER_PAGE
        return Page(
            records=payload,
            has_next_page=has_next_page,
            end_cursor=str(page + 1) if has_next_page else None,
            quota=quota
        )

    async def get_quota(self, resource: str) -> Quota:
        """Read the current quota from /rate_limit (free of charge)."""
        await self._init_client()
        payload, _ = await self._rest_get("/rate_limit", {}, resource)
        bucket = payload.get("resources", {}).get(resource, {})
        reset = bucket.get("reset")
        return Quota(
            resource=resource,
            remaining=bucket.get("remaining", 0),
            reset_at=datetime.fromtimestamp(reset, timezone.utc) if reset else None
        )

    async def close(self) -> None:
        """Close the GraphQL transport and REST session."""
        if self._transport:
            await self._transport.close()
            self._transport = None
            self._client = None
        if self._session:
            await self._session.close()
            self._session = None
