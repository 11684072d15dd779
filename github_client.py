#!/usr/bin/env python3
"""
GitHub API Client

Paginated, authenticated access to the GitHub REST and GraphQL APIs used by
the flow metrics import. Quota exhaustion is waited out transparently and
requests are paced when the remaining quota runs low. The client is strictly
sequential: one request at a time, one page at a time.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from config import (
    GITHUB_ACCEPT,
    GITHUB_API_BASE,
    GITHUB_API_VERSION,
    GITHUB_GRAPHQL_URL,
    PAGE_SIZE,
    RATE_LOW_WATER,
    RATE_PACING_CAP_SECONDS,
    RATE_SAFETY_MARGIN_SECONDS,
    REQUEST_TIMEOUT,
    SECONDARY_RATE_LIMIT_WAIT_SECONDS,
    SLEEP_SLICE_SECONDS,
)


class Cancelled(Exception):
    """Exception raised when the caller cancels or the run deadline passes"""
    pass


class RateLimited(Exception):
    """Quota exhausted and the response carried no usable reset time"""

    def __init__(self, url: str, message: str = "rate limited by GitHub API"):
        super().__init__(f"{message} ({url})")
        self.url = url


class UpstreamError(Exception):
    """Non-2xx response (or GraphQL/transport failure) that is not a quota signal"""

    def __init__(self, status_code: Optional[int], url: str, body: str = ""):
        super().__init__(f"GitHub API {url} returned {status_code}: {body[:500]}")
        self.status_code = status_code
        self.url = url
        self.body = body


class CancellationToken:
    """Cooperative cancellation with an optional overall deadline"""

    def __init__(self, deadline_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds is not None else None
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def check(self):
        """Raise Cancelled if the token fired"""
        if self._cancelled:
            raise Cancelled("User interrupted the process")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise Cancelled("Run deadline reached")


@dataclass
class Page:
    """One page of records plus the cursor for the next page (None when done)"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None


PROJECT_TIMELINE_QUERY = """
query($owner:String!, $name:String!, $number:Int!, $pageSize:Int!, $after:String){
  repository(owner:$owner, name:$name){
    issue(number:$number){
      timelineItems(first:$pageSize, after:$after, itemTypes:[ADDED_TO_PROJECT_V2_EVENT, PROJECT_V2_ITEM_STATUS_CHANGED_EVENT, REMOVED_FROM_PROJECT_V2_EVENT]){
        pageInfo{hasNextPage endCursor}
        nodes{
          __typename
          ... on AddedToProjectV2Event{ createdAt actor{login} project{fullDatabaseId title} }
          ... on ProjectV2ItemStatusChangedEvent{ createdAt actor{login} project{fullDatabaseId title} status previousStatus }
          ... on RemovedFromProjectV2Event{ createdAt actor{login} project{fullDatabaseId title} }
        }
      }
    }
  }
}
"""

# REST resources: path template plus fixed query parameters
REST_RESOURCES: Dict[str, Dict[str, Any]] = {
    'repos': {'path': '/orgs/{org}/repos', 'params': {'type': 'all'}},
    'issues': {'path': '/repos/{owner}/{repo}/issues',
               'params': {'state': 'all', 'sort': 'created', 'direction': 'asc'},
               'optional': ('since',)},
    'timeline': {'path': '/repos/{owner}/{repo}/issues/{number}/timeline', 'params': {}},
    'pulls': {'path': '/repos/{owner}/{repo}/pulls',
              'params': {'state': 'all', 'sort': 'created', 'direction': 'asc'}},
    'reviews': {'path': '/repos/{owner}/{repo}/pulls/{number}/reviews', 'params': {}},
}

GRAPHQL_RESOURCES = ('project_timeline',)


def _is_secondary_rate_limit(response: requests.Response) -> bool:
    """GitHub signals abuse limits with a 403 whose message mentions a secondary rate limit"""
    try:
        body = response.json()
    except ValueError:
        return 'secondary rate limit' in response.text.lower()
    message = str(body.get('message', '')) if isinstance(body, dict) else ''
    return 'secondary rate limit' in message.lower()


class GitHubClient:
    """Rate-aware GitHub API client"""

    def __init__(self, token: str, session: Optional[requests.Session] = None,
                 cancel: Optional[CancellationToken] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 status=None):
        self.token = token
        self.base_url = GITHUB_API_BASE
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': GITHUB_ACCEPT,
            'X-GitHub-Api-Version': GITHUB_API_VERSION,
        })
        self.cancel = cancel or CancellationToken()
        self._sleep_fn = sleep
        self._clock = clock
        self.status = status
        self.request_count = 0
        self.rate_limit_waits = 0
        self.rate_remaining: Optional[int] = None

    # ------------------------------------------------------------------
    # Rate limit handling
    # ------------------------------------------------------------------

    def _sleep(self, seconds: float):
        """Sleep in slices, checking for cancellation before each slice"""
        remaining = seconds
        while remaining > 0:
            self.cancel.check()
            chunk = min(SLEEP_SLICE_SECONDS, remaining)
            self._sleep_fn(chunk)
            remaining -= chunk

    def _seconds_until_reset(self, response: requests.Response) -> Optional[float]:
        reset = response.headers.get('X-RateLimit-Reset')
        if not reset:
            return None
        try:
            reset_at = int(reset)
        except ValueError:
            return None
        return max(reset_at - self._clock(), 0) + RATE_SAFETY_MARGIN_SECONDS

    def _quota_wait(self, response: requests.Response) -> Optional[float]:
        """
        Detect a REST quota-exhaustion response.

        Returns:
            Seconds to wait before retrying, or None if this is not a quota signal

        Raises:
            RateLimited: quota exhausted but no usable reset time was given
        """
        if response.status_code not in (403, 429):
            return None

        retry_after = response.headers.get('Retry-After')
        if retry_after:
            try:
                return float(retry_after) + RATE_SAFETY_MARGIN_SECONDS
            except ValueError:
                pass

        exhausted = response.headers.get('X-RateLimit-Remaining') == '0'
        if not exhausted and response.status_code != 429:
            if _is_secondary_rate_limit(response):
                return SECONDARY_RATE_LIMIT_WAIT_SECONDS + RATE_SAFETY_MARGIN_SECONDS
            # Plain permission error
            return None

        wait = self._seconds_until_reset(response)
        if wait is None:
            raise RateLimited(response.url or '')
        return wait

    def _pace(self, response: requests.Response):
        """Spread the remaining quota over the rest of the window"""
        remaining = response.headers.get('X-RateLimit-Remaining')
        reset = response.headers.get('X-RateLimit-Reset')
        if not remaining or not reset:
            return
        try:
            remaining_count = int(remaining)
            reset_at = int(reset)
        except ValueError:
            return
        self.rate_remaining = remaining_count

        window = reset_at - self._clock()
        if window <= 0:
            return
        if remaining_count <= 0:
            delay = window + RATE_SAFETY_MARGIN_SECONDS
        elif remaining_count < RATE_LOW_WATER:
            delay = min(window / (remaining_count + 1), RATE_PACING_CAP_SECONDS)
        else:
            return
        self._sleep(delay)

    def _wait_for_quota(self, wait: float, url: str):
        self.rate_limit_waits += 1
        if self.status:
            self.status.update(f"⏳ Rate limited - waiting {int(wait)}s before retrying {url}", style="yellow")
        self._sleep(wait)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str, params: Optional[Dict] = None,
              json_body: Optional[Dict] = None) -> requests.Response:
        """Send one request, retrying the same request after quota waits"""
        while True:
            self.cancel.check()
            try:
                response = self.session.request(method, url, params=params, json=json_body,
                                                timeout=REQUEST_TIMEOUT)
            except requests.RequestException as e:
                raise UpstreamError(None, url, str(e)) from e
            self.request_count += 1

            wait = self._quota_wait(response)
            if wait is not None:
                self._wait_for_quota(wait, url)
                continue

            if 200 <= response.status_code < 300:
                self._pace(response)
                return response

            raise UpstreamError(response.status_code, url, response.text)

    def _get(self, path: str, params: Optional[Dict] = None) -> requests.Response:
        return self._send('GET', f"{self.base_url}{path}", params=params)

    def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query; rate-limit errors are waited out like REST ones"""
        payload = {'query': query, 'variables': variables}
        while True:
            response = self._send('POST', GITHUB_GRAPHQL_URL, json_body=payload)
            result = response.json()
            errors = result.get('errors') or []
            if not errors:
                return result.get('data') or {}

            messages = [str(e.get('message', '')) for e in errors]
            types = [str(e.get('type', '')) for e in errors]
            rate_limited = 'RATE_LIMITED' in types or any('rate limit' in m.lower() for m in messages)
            if not rate_limited:
                raise UpstreamError(response.status_code, GITHUB_GRAPHQL_URL, '; '.join(messages))

            wait = self._seconds_until_reset(response)
            if wait is None:
                raise RateLimited(GITHUB_GRAPHQL_URL, messages[0])
            self._wait_for_quota(wait, GITHUB_GRAPHQL_URL)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    def fetch_page(self, resource: str, cursor: Optional[str] = None, **filters) -> Page:
        """
        Fetch one page of a resource.

        Args:
            resource: One of the REST_RESOURCES names or 'project_timeline'
            cursor: Continuation token from a previous page (None for the first page)
            **filters: Path parameters and optional filters (e.g. owner, repo, since)

        Returns:
            Page with the records and the next cursor (None when exhausted)
        """
        if resource in GRAPHQL_RESOURCES:
            return self._fetch_project_timeline_page(cursor, **filters)
        if resource not in REST_RESOURCES:
            raise ValueError(f"Unknown resource: {resource}")

        spec = REST_RESOURCES[resource]
        page_number = int(cursor) if cursor else 1
        path = spec['path'].format(**filters)
        params = dict(spec['params'])
        for name in spec.get('optional', ()):
            if filters.get(name):
                params[name] = filters[name]
        params.update({'per_page': PAGE_SIZE, 'page': page_number})

        response = self._get(path, params)
        raw = response.json() or []
        if not raw:
            return Page(records=[], cursor=None)

        records = raw
        if resource == 'issues':
            # Pull requests appear in the issues listing
            records = [item for item in raw if 'pull_request' not in item]

        has_next = 'next' in response.links if response.headers.get('Link') else len(raw) >= PAGE_SIZE
        return Page(records=records, cursor=str(page_number + 1) if has_next else None)

    def _fetch_project_timeline_page(self, cursor: Optional[str], owner: str, repo: str,
                                     number: int, **_) -> Page:
        variables = {'owner': owner, 'name': repo, 'number': int(number), 'pageSize': PAGE_SIZE}
        if cursor:
            variables['after'] = cursor
        data = self._graphql(PROJECT_TIMELINE_QUERY, variables)
        issue = ((data.get('repository') or {}).get('issue') or {})
        items = issue.get('timelineItems') or {}
        nodes = items.get('nodes') or []
        page_info = items.get('pageInfo') or {}
        next_cursor = page_info.get('endCursor') if page_info.get('hasNextPage') else None
        if not nodes:
            next_cursor = None
        return Page(records=nodes, cursor=next_cursor)

    def iterate(self, resource: str, cursor: Optional[str] = None, **filters) -> Iterator[Dict[str, Any]]:
        """Lazily yield every record of a resource, starting from an optional cursor"""
        while True:
            page = self.fetch_page(resource, cursor, **filters)
            for record in page.records:
                yield record
            if page.cursor is None:
                return
            cursor = page.cursor

    # ------------------------------------------------------------------
    # Resource helpers
    # ------------------------------------------------------------------

    def list_repos(self, org: str) -> List[Dict]:
        return list(self.iterate('repos', org=org))

    def list_issues(self, owner: str, repo: str, since: Optional[str] = None) -> Iterator[Dict]:
        return self.iterate('issues', owner=owner, repo=repo, since=since)

    def list_timeline(self, owner: str, repo: str, number: int) -> List[Dict]:
        """REST timeline: status changes and classic project column events"""
        return list(self.iterate('timeline', owner=owner, repo=repo, number=number))

    def list_project_timeline(self, owner: str, repo: str, number: int) -> List[Dict]:
        """GraphQL timeline: Projects (v2) added/status-changed/removed events"""
        return list(self.iterate('project_timeline', owner=owner, repo=repo, number=number))

    def list_pull_requests(self, owner: str, repo: str, since: Optional[str] = None) -> List[Dict]:
        """List PRs, optionally keeping only those created at or after since"""
        prs = []
        for pr in self.iterate('pulls', owner=owner, repo=repo):
            if since and pr.get('created_at', '') < since:
                continue
            prs.append(pr)
        return prs

    def list_reviews(self, owner: str, repo: str, number: int) -> List[Dict]:
        return list(self.iterate('reviews', owner=owner, repo=repo, number=number))

    def get_project_column(self, column_id: int) -> Dict:
        """Classic project column: name and parent project id"""
        return self._get(f"/projects/columns/{column_id}").json()

    def get_project(self, project_id: int) -> Dict:
        """Classic project: name"""
        return self._get(f"/projects/{project_id}").json()
