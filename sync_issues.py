#!/usr/bin/env python3
"""
GitHub Flow Data Sync

Fetches an organization's issues with their timelines (status changes and
project board moves) plus pull requests with their reviews, and writes the
raw CSVs that calculate_metrics.py turns into flow metrics.
"""
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "requests",
#     "python-dotenv",
#     "rich",
#     "pandas",
#     "pyyaml",
# ]
# ///

import argparse
import signal
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from dotenv import load_dotenv

from config import (
    ConfigMissing,
    get_config_path,
    get_data_dir,
    get_github_token,
    load_flow_config,
    validate_configuration,
)
from csv_io import write_import_outputs, write_pull_request_outputs
from github_client import CancellationToken, Cancelled, GitHubClient, RateLimited, UpstreamError
from lifecycle import (
    BoardNameCache,
    IssueLifecycle,
    PullRequestRecord,
    ReviewRecord,
    aggregate_lifecycle,
    issue_record_from_api,
    normalize_graphql_event,
    normalize_rest_event,
    pull_request_from_api,
    review_from_api,
)
from status_display import StatusDisplay


@dataclass
class SyncSummary:
    repositories: int = 0
    failed_repositories: int = 0
    issues: int = 0
    pull_requests: int = 0
    reviews: int = 0
    cancelled: bool = False


def parse_repo_filter(value: Optional[str]) -> Set[str]:
    """Parse a comma-separated repository list"""
    if not value:
        return set()
    return {name.strip() for name in value.split(',') if name.strip()}


class GitHubFlowSyncer:
    """Sync an organization's issue and pull request history to CSV files"""

    def __init__(self, client: GitHubClient, org: str, data_dir: str,
                 status: Optional[StatusDisplay] = None):
        self.client = client
        self.org = org
        self.data_dir = data_dir
        self.status = status or StatusDisplay()
        self.board_names = BoardNameCache(client.get_project_column, client.get_project)
        self.lifecycles: List[IssueLifecycle] = []
        self.pull_requests: List[PullRequestRecord] = []
        self.reviews: List[ReviewRecord] = []
        self.original_signal_handler = None

    def _setup_interrupt_handler(self):
        """Ctrl-C cancels the client's token instead of killing the run"""
        def signal_handler(signum, frame):
            self.client.cancel.cancel()

        self.original_signal_handler = signal.signal(signal.SIGINT, signal_handler)

    def _restore_interrupt_handler(self):
        """Restore the original interrupt handler"""
        if self.original_signal_handler is not None:
            signal.signal(signal.SIGINT, self.original_signal_handler)
            self.original_signal_handler = None

    @staticmethod
    def select_repos(repos: List[Dict], allowed: Set[str]) -> List[Dict]:
        if not allowed:
            return list(repos)
        return [repo for repo in repos if repo.get('name') in allowed]

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def fetch_issue_lifecycle(self, owner: str, repo: str, raw_issue: Dict) -> IssueLifecycle:
        """Fetch both timeline feeds for one issue and aggregate its lifecycle"""
        record = issue_record_from_api(self.org, repo, raw_issue)
        events = []

        # Status changes come only from this feed, so a failure aborts the repository
        for raw in self.client.list_timeline(owner, repo, record.number):
            event = normalize_rest_event(raw)
            if event is not None:
                events.append(event)

        # Projects (v2) events need project scope; without them the issue keeps its status history
        try:
            for node in self.client.list_project_timeline(owner, repo, record.number):
                event = normalize_graphql_event(node)
                if event is not None:
                    events.append(event)
        except UpstreamError as e:
            self.status.warn(f"Project timeline fetch failed for {owner}/{repo}#{record.number}: {e}")

        lifecycle = aggregate_lifecycle(record, events, self.board_names)
        if lifecycle.unmatched_closes:
            self.status.warn(
                f"{record.id}: {lifecycle.unmatched_closes} close event(s) without a prior open/reopen"
            )
        return lifecycle

    def sync_repository_issues(self, repo: Dict, since: Optional[str] = None) -> int:
        """Sync every issue of one repository; returns the number of issues added"""
        owner = (repo.get('owner') or {}).get('login') or self.org
        name = repo['name']
        count = 0
        for raw_issue in self.client.list_issues(owner, name, since=since):
            self.status.update(f"⚙️  {owner}/{name}: issue #{raw_issue['number']} ({count} done)")
            self.lifecycles.append(self.fetch_issue_lifecycle(owner, name, raw_issue))
            count += 1
        return count

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    def sync_repository_pull_requests(self, repo: Dict, since: Optional[str] = None) -> Tuple[int, int]:
        """Sync PRs and their reviews for one repository"""
        owner = (repo.get('owner') or {}).get('login') or self.org
        name = repo['name']
        prs = self.client.list_pull_requests(owner, name, since=since)
        review_count = 0
        for i, raw_pr in enumerate(prs):
            pr = pull_request_from_api(self.org, name, raw_pr)
            self.status.update(f"🔍 {owner}/{name}: reviews for PR #{pr.number} ({i + 1}/{len(prs)})")
            raw_reviews = self.client.list_reviews(owner, name, pr.number)
            self.pull_requests.append(pr)
            for raw_review in raw_reviews:
                self.reviews.append(review_from_api(self.org, name, pr.number, raw_review))
                review_count += 1
        return len(prs), review_count

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, repo_filter: Optional[Set[str]] = None, since: Optional[str] = None,
            issues: bool = True, pull_requests: bool = True) -> SyncSummary:
        """
        Sync the selected scopes and write the CSV outputs.

        Each repository is isolated: a failure is reported and the run moves on
        to the next repository. On cancellation whatever was collected is
        still written.
        """
        summary = SyncSummary()
        repos: List[Dict] = []
        self.status.start(f"📥 Listing repositories for {self.org}...")
        self._setup_interrupt_handler()
        try:
            repos = self.select_repos(self.client.list_repos(self.org), repo_filter or set())
            summary.repositories = len(repos)

            for repo in repos:
                full_name = f"{self.org}/{repo['name']}"
                try:
                    if issues:
                        self.sync_repository_issues(repo, since)
                    if pull_requests:
                        self.sync_repository_pull_requests(repo, since)
                except (UpstreamError, RateLimited) as e:
                    summary.failed_repositories += 1
                    self.status.error(f"Failed to sync {full_name}: {e}")
        except Cancelled as e:
            summary.cancelled = True
            self.status.warn(f"{e} - writing {len(self.lifecycles)} issues collected so far")
        finally:
            self._restore_interrupt_handler()
            self.status.stop()

        summary.issues = len(self.lifecycles)
        summary.pull_requests = len(self.pull_requests)
        summary.reviews = len(self.reviews)
        self.write_outputs(repos, issues, pull_requests)
        return summary

    def write_outputs(self, repos: List[Dict], issues: bool, pull_requests: bool):
        if issues:
            for path in write_import_outputs(self.data_dir, self.org, repos, self.lifecycles):
                self.status.print(f"💾 Wrote {path}", style="blue")
        if pull_requests:
            for path in write_pull_request_outputs(self.data_dir, self.pull_requests, self.reviews):
                self.status.print(f"💾 Wrote {path}", style="blue")


def resolve_org(org: Optional[str]) -> str:
    """Use --org, falling back to github.org from the board configuration"""
    if org:
        return org
    try:
        return load_flow_config(get_config_path()).org
    except ConfigMissing:
        return ""


def main():
    """Main execution function"""
    parser = argparse.ArgumentParser(
        description='Sync GitHub issues, timelines and pull requests to CSV files',
        epilog='''
Scopes:
  --issues   issues, status changes and project board moves
  --pr       pull requests and their reviews
  With neither flag both scopes are synced.

Environment:
  GITHUB_TOKEN   required
  CONFIG_PATH    board configuration (default ./config.yml), supplies github.org
  DATA_DIR       output directory (default data)
        ''',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--org', help='GitHub organization (default: github.org from the config file)')
    parser.add_argument('--since', help='Only issues updated since this RFC3339 time, e.g. 2025-01-01T00:00:00Z')
    parser.add_argument('--repo', help='Comma-separated list of repositories to include')
    parser.add_argument('--issues', action='store_true', help='Sync the issues scope')
    parser.add_argument('--pr', action='store_true', help='Sync the pull requests scope')
    parser.add_argument('--data-dir', help='Output directory for CSV files')
    parser.add_argument('--deadline-minutes', type=float, help='Stop fetching after this many minutes')
    args = parser.parse_args()

    # Load environment variables from .env file
    load_dotenv()

    status = StatusDisplay()

    config_status = validate_configuration()
    if not config_status['github_token']:
        status.error("Please set GITHUB_TOKEN environment variable")
        return 1
    token = get_github_token()

    org = resolve_org(args.org)
    if not org:
        status.error("--org is required when no config file with github.org is provided")
        return 1

    sync_issues_scope, sync_pr_scope = args.issues, args.pr
    if not sync_issues_scope and not sync_pr_scope:
        sync_issues_scope = sync_pr_scope = True

    deadline = args.deadline_minutes * 60 if args.deadline_minutes is not None else None
    client = GitHubClient(token, cancel=CancellationToken(deadline_seconds=deadline), status=status)
    syncer = GitHubFlowSyncer(client, org, args.data_dir or get_data_dir(), status=status)

    status.print(f"Syncing organization: {org}")
    try:
        summary = syncer.run(
            repo_filter=parse_repo_filter(args.repo),
            since=args.since,
            issues=sync_issues_scope,
            pull_requests=sync_pr_scope,
        )
    except (UpstreamError, RateLimited) as e:
        status.error(f"Could not list repositories for {org}: {e}")
        return 1

    status.print(
        f"✅ Synced {summary.issues} issues and {summary.pull_requests} pull requests "
        f"from {summary.repositories} repositories ({client.request_count} API requests)",
        style="green bold",
    )
    if summary.failed_repositories:
        status.print(f"⚠️  {summary.failed_repositories} repositories failed", style="yellow")
    return 0


if __name__ == "__main__":
    sys.exit(main())
