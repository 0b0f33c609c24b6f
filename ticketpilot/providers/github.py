"""GitHub integration using PyGithub: issues as tickets, pull requests as reviews."""

import asyncio
import re
from datetime import timezone
from typing import Any

import structlog
from github import Auth, BadCredentialsException, Github, GithubException, RateLimitExceededException

from ticketpilot.config import Settings
from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.naming import commit_message, pr_title
from ticketpilot.core.results import (
    ExecutionResult,
    ProviderResult,
    PullRequestInfo,
    TicketData,
)
from ticketpilot.core.status import ExecutionAction

from .base import TicketSource, VersionControlPublisher

logger = structlog.get_logger()

STATUS_LABEL_PREFIX = "status: "
_REPOSITORY_LINE = re.compile(r"^\s*repository:\s*([\w.-]+/[\w.-]+)\s*$", re.IGNORECASE | re.MULTILINE)


def classify_github_error(exc: GithubException) -> ErrorKind:
    """Map a PyGithub exception to how the lifecycle treats it."""
    if isinstance(exc, RateLimitExceededException):
        return ErrorKind.TRANSIENT
    if isinstance(exc, BadCredentialsException) or exc.status in (401, 403):
        return ErrorKind.CONFIGURATION
    if exc.status in (404, 410, 422):
        return ErrorKind.BUSINESS
    if exc.status is None or exc.status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def _github_failure(exc: GithubException, provider: str, **details: Any) -> ProviderResult:
    message = exc.data.get("message") if isinstance(exc.data, dict) else None
    return ProviderResult.failure(
        classify_github_error(exc),
        message or str(exc),
        provider=provider,
        status=exc.status,
        **details,
    )


def _naive_utc(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class GitHubClient:
    """GitHub API client wrapper."""

    def __init__(self, token: str | None, default_repo: str | None = None):
        self.github = Github(auth=Auth.Token(token)) if token else Github()
        self.default_repo = default_repo

    def get_repo(self, repo_name: str | None = None):
        """Get repository object, defaulting to the configured tracker repository."""
        name = repo_name or self.default_repo
        if not name:
            raise ValueError("No repository given and no default repository configured")
        return self.github.get_repo(name)


class GitHubIssueSource(TicketSource):
    """Open GitHub issues of one repository, keyed ``<REPO>-<number>``."""

    name = "github-issues"

    def __init__(self, settings: Settings, client: GitHubClient | None = None):
        self.settings = settings
        self.client = client or GitHubClient(settings.github_token, settings.github_repo)
        repo_name = (settings.github_repo or "").split("/")[-1]
        self.key_prefix = repo_name.upper() or "GH"

    def ticket_key(self, number: int) -> str:
        return f"{self.key_prefix}-{number}"

    def issue_number(self, key: str) -> int:
        prefix, _, number = key.rpartition("-")
        if prefix != self.key_prefix or not number.isdigit():
            raise ValueError(f"'{key}' is not a ticket key of {self.settings.github_repo}")
        return int(number)

    def _to_ticket(self, issue) -> TicketData:
        labels = [label.name for label in issue.labels]
        status_labels = [l[len(STATUS_LABEL_PREFIX):] for l in labels if l.startswith(STATUS_LABEL_PREFIX)]
        body = issue.body or ""
        linked = _REPOSITORY_LINE.search(body)
        assignees = [assignee.login for assignee in issue.assignees]
        priority = next((l.split(":", 1)[1].strip() for l in labels if l.lower().startswith("priority:")), None)

        return TicketData(
            key=self.ticket_key(issue.number),
            summary=issue.title,
            description=body,
            tracker_status=status_labels[0] if status_labels else issue.state,
            priority=priority,
            assignee=assignees[0] if assignees else None,
            reporter=issue.user.login if issue.user else None,
            labels=[l for l in labels if not l.startswith(STATUS_LABEL_PREFIX)],
            linked_repository=linked.group(1) if linked else self.settings.github_repo,
            created_at=_naive_utc(issue.created_at),
            updated_at=_naive_utc(issue.updated_at),
        )

    def _fetch(self) -> list[TicketData]:
        repo = self.client.get_repo()
        kwargs: dict[str, Any] = {"state": "open", "sort": "created", "direction": "asc"}
        if self.settings.required_label:
            kwargs["labels"] = [self.settings.required_label]

        tickets = []
        for issue in repo.get_issues(**kwargs):
            if issue.pull_request is not None:
                continue
            tickets.append(self._to_ticket(issue))
            if len(tickets) >= self.settings.max_tickets_per_load:
                break
        return tickets

    async def fetch_tickets(self) -> ProviderResult[list[TicketData]]:
        logger.info("Fetching issues", repo=self.settings.github_repo)
        try:
            tickets = await asyncio.to_thread(self._fetch)
        except GithubException as e:
            return _github_failure(e, self.name)
        logger.info("Issues fetched", repo=self.settings.github_repo, count=len(tickets))
        return ProviderResult.success(tickets)

    async def get_ticket(self, key: str) -> ProviderResult[TicketData]:
        try:
            number = self.issue_number(key)
        except ValueError as e:
            return ProviderResult.failure(ErrorKind.BUSINESS, str(e), provider=self.name)

        def _get() -> TicketData:
            return self._to_ticket(self.client.get_repo().get_issue(number))

        try:
            return ProviderResult.success(await asyncio.to_thread(_get))
        except GithubException as e:
            return _github_failure(e, self.name, key=key)

    async def add_comment(self, key: str, body: str) -> ProviderResult[None]:
        def _comment() -> None:
            self.client.get_repo().get_issue(self.issue_number(key)).create_comment(body)

        logger.info("Adding issue comment", key=key)
        try:
            await asyncio.to_thread(_comment)
        except GithubException as e:
            return _github_failure(e, self.name, key=key)
        return ProviderResult.success()

    async def update_status(self, key: str, status: str) -> ProviderResult[None]:
        """Close/reopen for ``closed``/``open``; any other status becomes a ``status:`` label."""

        def _update() -> None:
            issue = self.client.get_repo().get_issue(self.issue_number(key))
            if status in ("open", "closed"):
                issue.edit(state=status)
                return
            for label in issue.labels:
                if label.name.startswith(STATUS_LABEL_PREFIX):
                    issue.remove_from_labels(label.name)
            issue.add_to_labels(f"{STATUS_LABEL_PREFIX}{status}")

        logger.info("Updating issue status", key=key, status=status)
        try:
            await asyncio.to_thread(_update)
        except GithubException as e:
            return _github_failure(e, self.name, key=key)
        return ProviderResult.success()

    def supported_statuses(self) -> list[str]:
        return ["open", "closed", *[s for s in self.settings.allowed_tracker_statuses if s not in ("open", "closed")]]

    def validate_configuration(self) -> list[str]:
        errors = []
        if not self.settings.github_token:
            errors.append("github_token is not set")
        if not self.settings.github_repo or "/" not in self.settings.github_repo:
            errors.append("github_repo must be set as owner/name")
        return errors


class GitHubPublisher(VersionControlPublisher):
    """Pushes executed changes to a branch and opens a pull request."""

    name = "github"

    def __init__(self, settings: Settings, client: GitHubClient | None = None):
        self.settings = settings
        self.client = client or GitHubClient(settings.github_token, settings.github_repo)

    def _ensure_branch(self, repo, branch: str) -> None:
        base = self.settings.default_base_branch or repo.default_branch
        base_sha = repo.get_git_ref(f"heads/{base}").object.sha
        try:
            repo.create_git_ref(f"refs/heads/{branch}", base_sha)
            logger.info("Branch created", repo=repo.full_name, branch=branch)
        except GithubException as e:
            if e.status == 422 and "Reference already exists" in str(e):
                logger.info("Branch already exists", branch=branch)
                return
            raise

    def _push_changes(self, repo, ticket: TicketData, execution: ExecutionResult) -> str | None:
        message = commit_message(ticket.key, ticket.summary, [c.path for c in execution.changes])
        branch = execution.branch_name
        commit_sha = None

        for change in execution.changes:
            try:
                existing = repo.get_contents(change.path, ref=branch)
            except GithubException as e:
                if e.status != 404:
                    raise
                existing = None

            if change.action == ExecutionAction.DELETE_FILE:
                if existing is None:
                    continue
                result = repo.delete_file(change.path, message, existing.sha, branch=branch)
            elif existing is not None:
                result = repo.update_file(change.path, message, change.content or "", existing.sha, branch=branch)
            else:
                result = repo.create_file(change.path, message, change.content or "", branch=branch)
            commit_sha = result["commit"].sha
        return commit_sha

    def _find_open_pull(self, repo, branch: str):
        owner = repo.full_name.split("/")[0]
        for pull in repo.get_pulls(state="open", head=f"{owner}:{branch}"):
            return pull
        return None

    def _pr_body(self, ticket: TicketData, execution: ExecutionResult) -> str:
        lines = [f"Resolves {ticket.key}.", "", ticket.summary, "", "### Changes"]
        lines += [f"- `{c.path}` ({c.action.value}){': ' + c.description if c.description else ''}"
                  for c in execution.changes]
        return "\n".join(lines)

    async def create_pull_request(
        self, ticket: TicketData, execution: ExecutionResult
    ) -> ProviderResult[PullRequestInfo]:
        """Create branch, push files and open the pull request. Reuses an open PR for the branch."""

        def _create() -> PullRequestInfo:
            repo = self.client.get_repo(execution.repository)
            self._ensure_branch(repo, execution.branch_name)
            commit_sha = self._push_changes(repo, ticket, execution)

            pull = self._find_open_pull(repo, execution.branch_name)
            if pull is None:
                pull = repo.create_pull(
                    title=pr_title(ticket.key, ticket.summary),
                    body=self._pr_body(ticket, execution),
                    head=execution.branch_name,
                    base=self.settings.default_base_branch or repo.default_branch,
                    draft=self.settings.create_draft_prs,
                )
                logger.info("Pull request created", pr_number=pull.number, url=pull.html_url)
            else:
                logger.info("Pull request already open", pr_number=pull.number)
            return PullRequestInfo(
                number=pull.number, url=pull.html_url, branch=execution.branch_name, commit_sha=commit_sha
            )

        logger.info("Creating pull request", repo=execution.repository, branch=execution.branch_name)
        try:
            return ProviderResult.success(await asyncio.to_thread(_create))
        except GithubException as e:
            return _github_failure(e, self.name, repository=execution.repository)

    async def add_pr_comment(self, repository: str, pr_number: int, body: str) -> ProviderResult[None]:
        def _comment() -> None:
            self.client.get_repo(repository).get_pull(pr_number).create_issue_comment(body)

        try:
            await asyncio.to_thread(_comment)
        except GithubException as e:
            return _github_failure(e, self.name, pr_number=pr_number)
        return ProviderResult.success()

    async def merge_pull_request(self, repository: str, pr_number: int) -> ProviderResult[None]:
        def _merge() -> None:
            result = self.client.get_repo(repository).get_pull(pr_number).merge(merge_method="squash")
            if not result.merged:
                raise GithubException(409, {"message": result.message}, None)

        logger.info("Merging pull request", repo=repository, pr_number=pr_number)
        try:
            await asyncio.to_thread(_merge)
        except GithubException as e:
            return _github_failure(e, self.name, pr_number=pr_number)
        return ProviderResult.success()

    async def delete_branch(self, repository: str, branch: str) -> ProviderResult[None]:
        def _delete() -> None:
            self.client.get_repo(repository).get_git_ref(f"heads/{branch}").delete()

        try:
            await asyncio.to_thread(_delete)
        except GithubException as e:
            if e.status == 404:
                return ProviderResult.success()
            return _github_failure(e, self.name, branch=branch)
        return ProviderResult.success()

    def validate_configuration(self) -> list[str]:
        return [] if self.settings.github_token else ["github_token is not set"]
