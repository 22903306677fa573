"""GitHub hosting service implementation."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException, Timeout

from ..config import get_github_config
from .git_platform import (
    ApiError,
    AuthenticationError,
    Branch,
    Commit,
    GitHostingService,
    GraphQLError,
    Issue,
    NotFoundError,
    PullRequest,
    Repository,
    ResponseShapeError,
    Tag,
    Thread,
    User,
    calculate_language_percentages,
    optional_field,
    parse_timestamp,
    require_field,
)

logger = logging.getLogger(__name__)

_REVIEW_THREADS_QUERY = """
query ReviewThreads($owner: String!, $repo: String!, $number: Int!, $first: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: $first) {
        nodes {
          isResolved
        }
      }
    }
  }
}
"""


class GitHubService(GitHostingService):
    """GitHub hosting service implementation."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://github.com",
        api_url: Optional[str] = None,
        graphql_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        per_page: int = 100,
        max_concurrent_requests: int = 4,
        default_branch: str = "main",
        user_agent: str = "git-hosting-facade/0.1",
    ):
        """Initialize GitHub service.

        Args:
            token: GitHub personal access token or OAuth token
            base_url: Base URL for GitHub (for GitHub Enterprise)
            api_url: REST API URL (auto-detected if not provided)
            graphql_url: GraphQL endpoint (auto-detected if not provided)
            session: HTTP session to send requests with
            timeout: Per-request timeout in seconds, ``None`` for no timeout
            per_page: Page size requested from list endpoints
            max_concurrent_requests: Fan-out bound for per-item follow-up calls
            default_branch: Branch new branches are created from by default
            user_agent: User-Agent header value
        """
        super().__init__(token, max_concurrent_requests)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.per_page = per_page
        self.default_branch = default_branch

        is_github_com = self.base_url == "https://github.com"

        # Auto-detect API URLs based on base URL
        if api_url is None:
            self.api_url = "https://api.github.com" if is_github_com else f"{self.base_url}/api/v3"
        else:
            self.api_url = api_url.rstrip("/")

        if graphql_url is None:
            self.graphql_url = "https://api.github.com/graphql" if is_github_com else f"{self.base_url}/api/graphql"
        else:
            self.graphql_url = graphql_url.rstrip("/")

        self.session = session if session is not None else requests.Session()

        # Set default headers
        self.session.headers.update({
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": user_agent,
        })

        if self.token:
            self.session.headers.update({
                "Authorization": f"Bearer {self.token}"
            })

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "GitHubService":
        """Build a service from ``git_hosting.config.Settings``."""
        token, base_url = get_github_config(settings)
        return cls(
            token=token,
            base_url=base_url,
            api_url=settings.api_url,
            graphql_url=settings.graphql_url,
            session=session,
            timeout=settings.request_timeout_seconds,
            per_page=settings.per_page,
            max_concurrent_requests=settings.max_concurrent_requests,
            default_branch=settings.default_branch,
        )

    @property
    def platform_name(self) -> str:
        return "GitHub" if self.base_url == "https://github.com" else "GitHub Enterprise"

    # Users

    async def get_user_info(self, username: str) -> User:
        """Get GitHub user profile."""
        self._log_operation("get_user_info", username=username)

        response = await self._make_request("GET", f"/users/{username}")
        return self._parse_user(self._json(response))

    async def get_authenticated_username(self) -> str:
        """Get the login of the token owner."""
        self._log_operation("get_authenticated_username")

        response = await self._make_request("GET", "/user")
        return require_field(self._json(response), "login")

    # Repositories

    async def get_user_repositories(self, username: str) -> List[Repository]:
        """List repositories owned by a GitHub user."""
        self._log_operation("get_user_repositories", username=username)

        response = await self._make_request(
            "GET", f"/users/{username}/repos", params={"per_page": self.per_page}
        )
        repos_data = self._json(response)

        async def with_languages(repo_data: Dict) -> Repository:
            full_name = require_field(repo_data, "full_name")
            languages = await self._get_languages(full_name)
            return self._parse_repository(repo_data, languages)

        repositories = await self._gather_ordered(repos_data, with_languages)
        self.logger.info(f"Listed {len(repositories)} repositories for {username}")
        return repositories

    async def get_repository_by_name(self, username: str, repository_name: str) -> Repository:
        """Get specific repository information."""
        self._log_operation("get_repository_by_name", username=username, repo=repository_name)

        full_name = f"{username}/{repository_name}"
        response = await self._make_request("GET", f"/repos/{full_name}")
        repo_data = self._json(response)

        languages = await self._get_languages(full_name)

        repo = self._parse_repository(repo_data, languages)
        self.logger.info(f"Retrieved repository {repo.full_name}")
        return repo

    async def create_repository(
        self,
        repository_name: str,
        description: Optional[str] = None,
        private: bool = False,
    ) -> Repository:
        """Create a repository for the authenticated user."""
        self._log_operation("create_repository", repo=repository_name)

        payload: Dict[str, Any] = {"name": repository_name, "private": private}
        if description is not None:
            payload["description"] = description

        response = await self._make_request("POST", "/user/repos", data=payload)
        repo = self._parse_repository(self._json(response), {})
        self.logger.info(f"Created repository {repo.full_name}")
        return repo

    # Branches and commits

    async def get_repository_branches(self, repository_name: str) -> List[Branch]:
        """List branches with the date of their tip commits."""
        self._log_operation("get_repository_branches", repo=repository_name)

        owner = await self.get_authenticated_username()
        response = await self._make_request(
            "GET", f"/repos/{owner}/{repository_name}/branches", params={"per_page": self.per_page}
        )
        branch_names = [require_field(item, "name") for item in self._json(response)]

        async def fetch_branch(name: str) -> Branch:
            branch_data = await self._get_branch(owner, repository_name, name)
            return self._parse_branch(branch_data)

        branches = await self._gather_ordered(branch_names, fetch_branch)
        self.logger.info(f"Listed {len(branches)} branches of {owner}/{repository_name}")
        return branches

    async def create_branch(
        self,
        repository_name: str,
        branch_name: str,
        from_branch: Optional[str] = None,
    ) -> Branch:
        """Create a branch from the tip of ``from_branch``."""
        source = from_branch or self.default_branch
        self._log_operation("create_branch", repo=repository_name, branch=branch_name, source=source)

        owner = await self.get_authenticated_username()
        source_data = await self._get_branch(owner, repository_name, source)
        sha = require_field(source_data, "commit", "sha")

        await self._make_request(
            "POST",
            f"/repos/{owner}/{repository_name}/git/refs",
            data={"ref": f"refs/heads/{branch_name}", "sha": sha},
        )

        self.logger.info(f"Created branch {branch_name} of {owner}/{repository_name} at {sha}")
        return Branch(
            name=branch_name,
            updated_at=parse_timestamp(
                require_field(source_data, "commit", "commit", "committer", "date"),
                "commit.commit.committer.date",
            ),
        )

    async def delete_branch(self, repository_name: str, branch_name: str) -> None:
        """Delete a branch ref."""
        self._log_operation("delete_branch", repo=repository_name, branch=branch_name)

        owner = await self.get_authenticated_username()
        await self._delete_ref(owner, repository_name, f"heads/{branch_name}")

    async def get_branch_commits(self, username: str, repository_name: str, branch_name: str) -> List[Commit]:
        """List commits reachable from the branch tip."""
        self._log_operation("get_branch_commits", username=username, repo=repository_name, branch=branch_name)

        branch_data = await self._get_branch(username, repository_name, branch_name)
        sha = require_field(branch_data, "commit", "sha")

        response = await self._make_request(
            "GET",
            f"/repos/{username}/{repository_name}/commits",
            params={"sha": sha, "per_page": self.per_page},
        )
        commits = [self._parse_commit(item) for item in self._json(response)]
        self.logger.info(f"Listed {len(commits)} commits of {username}/{repository_name}@{branch_name}")
        return commits

    # Pull requests

    async def get_repository_pull_requests(self, repository_name: str) -> List[PullRequest]:
        """List open and closed pull requests."""
        self._log_operation("get_repository_pull_requests", repo=repository_name)

        owner = await self.get_authenticated_username()
        response = await self._make_request(
            "GET",
            f"/repos/{owner}/{repository_name}/pulls",
            params={"state": "all", "per_page": self.per_page},
        )
        pull_requests = [self._parse_pull_request(item) for item in self._json(response)]
        self.logger.info(f"Listed {len(pull_requests)} pull requests of {owner}/{repository_name}")
        return pull_requests

    async def create_pull_request(
        self,
        repository_name: str,
        source_branch: str,
        dest_branch: str,
        title: str,
        body: Optional[str] = None,
    ) -> PullRequest:
        """Open a pull request."""
        self._log_operation(
            "create_pull_request", repo=repository_name, source=source_branch, dest=dest_branch
        )

        owner = await self.get_authenticated_username()
        payload: Dict[str, Any] = {"title": title, "head": source_branch, "base": dest_branch}
        if body is not None:
            payload["body"] = body

        response = await self._make_request("POST", f"/repos/{owner}/{repository_name}/pulls", data=payload)
        pull_request = self._parse_pull_request(self._json(response))
        self.logger.info(f"Opened pull request #{pull_request.id} in {owner}/{repository_name}")
        return pull_request

    async def get_threads_info(self, repository_name: str, pull_request_id: int) -> List[Thread]:
        """List review threads of a pull request."""
        self._log_operation("get_threads_info", repo=repository_name, pull_request=pull_request_id)

        owner = await self.get_authenticated_username()
        data = await self._execute_graphql(
            _REVIEW_THREADS_QUERY,
            {"owner": owner, "repo": repository_name, "number": pull_request_id, "first": self.per_page},
        )
        nodes = require_field(
            data, "data", "repository", "pullRequest", "reviewThreads", "nodes"
        )
        threads = [Thread(is_resolved=self._require_bool(node, "isResolved")) for node in nodes]
        self.logger.info(f"Listed {len(threads)} review threads of {owner}/{repository_name}#{pull_request_id}")
        return threads

    # Issues

    async def get_issues(self, repository_name: str) -> List[Issue]:
        """List issues of a repository.

        Issues are fetched across every repository the token can access and
        filtered by ``owner/name``. A bare name refers to a repository of
        the authenticated user.
        """
        self._log_operation("get_issues", repo=repository_name)

        if "/" in repository_name:
            full_name = repository_name
        else:
            owner = await self.get_authenticated_username()
            full_name = f"{owner}/{repository_name}"

        response = await self._make_request(
            "GET", "/issues", params={"filter": "all", "state": "all", "per_page": self.per_page}
        )

        issues = []
        for item in self._json(response):
            if require_field(item, "repository", "full_name") != full_name:
                continue
            issues.append(self._parse_issue(item))

        self.logger.info(f"Listed {len(issues)} issues of {full_name}")
        return issues

    # Collaborators

    async def get_repository_contributors(self, repository_name: str) -> List[User]:
        """List collaborators with their full profiles."""
        self._log_operation("get_repository_contributors", repo=repository_name)

        owner = await self.get_authenticated_username()
        response = await self._make_request(
            "GET", f"/repos/{owner}/{repository_name}/collaborators", params={"per_page": self.per_page}
        )
        logins = [require_field(item, "login") for item in self._json(response)]

        users = await self._gather_ordered(logins, self.get_user_info)
        self.logger.info(f"Listed {len(users)} collaborators of {owner}/{repository_name}")
        return users

    async def set_access_to_repository(self, username: str, repository_name: str, permission: str = "push") -> None:
        """Invite a user as collaborator."""
        self._log_operation("set_access_to_repository", username=username, repo=repository_name)

        owner = await self.get_authenticated_username()
        await self._make_request(
            "PUT",
            f"/repos/{owner}/{repository_name}/collaborators/{username}",
            data={"permission": permission},
        )
        self.logger.info(f"Granted {permission} access to {owner}/{repository_name} for {username}")

    async def deny_access_to_repository(self, username: str, repository_name: str) -> None:
        """Remove a collaborator."""
        self._log_operation("deny_access_to_repository", username=username, repo=repository_name)

        owner = await self.get_authenticated_username()
        await self._make_request("DELETE", f"/repos/{owner}/{repository_name}/collaborators/{username}")
        self.logger.info(f"Revoked access to {owner}/{repository_name} for {username}")

    # Tags

    async def get_repository_tags(self, username: str, repository_name: str) -> List[Tag]:
        """List tags with the message and date of their commits."""
        self._log_operation("get_repository_tags", username=username, repo=repository_name)

        response = await self._make_request(
            "GET", f"/repos/{username}/{repository_name}/tags", params={"per_page": self.per_page}
        )

        async def with_commit(tag_data: Dict) -> Tag:
            sha = require_field(tag_data, "commit", "sha")
            commit_response = await self._make_request(
                "GET", f"/repos/{username}/{repository_name}/commits/{sha}"
            )
            return self._parse_tag(tag_data, self._json(commit_response))

        tags = await self._gather_ordered(self._json(response), with_commit)
        self.logger.info(f"Listed {len(tags)} tags of {username}/{repository_name}")
        return tags

    async def delete_tag(self, repository_name: str, tag_name: str) -> None:
        """Delete a tag ref."""
        self._log_operation("delete_tag", repo=repository_name, tag=tag_name)

        owner = await self.get_authenticated_username()
        await self._delete_ref(owner, repository_name, f"tags/{tag_name}")

    # Helpers

    def _json(self, response: requests.Response) -> Any:
        """Decode a JSON response body."""
        try:
            return response.json()
        except ValueError as e:
            self.logger.error(f"GitHub API returned a non-JSON body: {e}")
            raise ResponseShapeError("body", "error while parsing: response is not JSON") from e

    async def _get_languages(self, full_name: str) -> Dict[str, float]:
        response = await self._make_request("GET", f"/repos/{full_name}/languages")
        return calculate_language_percentages(self._json(response))

    async def _get_branch(self, owner: str, repository_name: str, branch_name: str) -> Dict:
        response = await self._make_request("GET", f"/repos/{owner}/{repository_name}/branches/{branch_name}")
        return self._json(response)

    async def _delete_ref(self, owner: str, repository_name: str, ref: str) -> None:
        await self._make_request("DELETE", f"/repos/{owner}/{repository_name}/git/refs/{ref}")
        self.logger.info(f"Deleted ref {ref} of {owner}/{repository_name}")

    async def _execute_graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query and return the decoded body."""
        response = await self._make_request(
            "POST", self.graphql_url, data={"query": query, "variables": variables}
        )
        body = self._json(response)
        if not isinstance(body, dict):
            raise ResponseShapeError("data", "error while parsing: GraphQL response is not an object")
        if body.get("errors"):
            self.logger.error(f"GitHub GraphQL error: {body['errors']}")
            raise GraphQLError(body["errors"])
        return body

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
    ) -> requests.Response:
        """Make HTTP request to the GitHub API and translate failures."""
        url = endpoint if endpoint.startswith(("http://", "https://")) else f"{self.api_url}{endpoint}"

        try:
            # Make the request in a thread pool to avoid blocking
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.session.request(
                    method, url, params=params, json=data, timeout=self.timeout
                )
            )

            response.raise_for_status()

            return response

        except Timeout as e:
            self.logger.error(f"Request to {url} timed out")
            raise ApiError(f"Request to {url} timed out") from e
        except RequestException as e:
            status_code = None
            if hasattr(e, 'response') and e.response is not None:
                status_code = e.response.status_code
            self.logger.error(f"GitHub API {method} {url} failed: {e}")

            if status_code == 401:
                raise AuthenticationError("Invalid or expired token", status_code) from e
            elif status_code == 403:
                raise AuthenticationError("Insufficient permissions", status_code) from e
            elif status_code == 404:
                raise NotFoundError(f"Resource not found: {url}", status_code) from e

            raise ApiError(f"GitHub API request failed: {str(e)}", status_code) from e

    # Response mapping

    def _parse_user(self, user_data: Dict) -> User:
        """Parse user profile from GitHub API response."""
        return User(
            username=require_field(user_data, "login"),
            full_name=require_field(user_data, "name"),
            followers_count=require_field(user_data, "followers"),
            following_count=require_field(user_data, "following"),
        )

    def _parse_repository(self, repo_data: Dict, languages: Dict[str, float]) -> Repository:
        """Parse repository data from GitHub API response."""
        return Repository(
            name=require_field(repo_data, "name"),
            full_name=require_field(repo_data, "full_name"),
            url=require_field(repo_data, "html_url"),
            is_private=self._require_bool(repo_data, "private"),
            stars_count=require_field(repo_data, "stargazers_count"),
            forks_count=require_field(repo_data, "forks_count"),
            last_updated=parse_timestamp(require_field(repo_data, "updated_at"), "updated_at"),
            languages=languages,
            description=optional_field(repo_data, "description"),
        )

    def _parse_branch(self, branch_data: Dict) -> Branch:
        return Branch(
            name=require_field(branch_data, "name"),
            updated_at=parse_timestamp(
                require_field(branch_data, "commit", "commit", "committer", "date"),
                "commit.commit.committer.date",
            ),
        )

    def _parse_commit(self, commit_data: Dict) -> Commit:
        message = require_field(commit_data, "commit", "message")
        return Commit(
            hash=require_field(commit_data, "sha"),
            title=message.splitlines()[0] if message else "",
            created_at=parse_timestamp(
                require_field(commit_data, "commit", "committer", "date"), "commit.committer.date"
            ),
        )

    def _parse_pull_request(self, pr_data: Dict) -> PullRequest:
        state = require_field(pr_data, "state")
        return PullRequest(
            id=require_field(pr_data, "number"),
            title=require_field(pr_data, "title"),
            source_branch=require_field(pr_data, "head", "ref"),
            target_branch=require_field(pr_data, "base", "ref"),
            state=state,
            is_closed=state == "closed",
            is_merged=bool(pr_data.get("merged")) or pr_data.get("merged_at") is not None,
        )

    def _parse_issue(self, issue_data: Dict) -> Issue:
        return Issue(
            title=require_field(issue_data, "title"),
            is_closed=require_field(issue_data, "state") == "closed",
            created_at=parse_timestamp(require_field(issue_data, "created_at"), "created_at"),
            updated_at=parse_timestamp(require_field(issue_data, "updated_at"), "updated_at"),
            pull_request_url=optional_field(issue_data, "pull_request", "html_url"),
        )

    def _parse_tag(self, tag_data: Dict, commit_data: Dict) -> Tag:
        return Tag(
            title=require_field(tag_data, "name"),
            hash=require_field(tag_data, "commit", "sha"),
            description=require_field(commit_data, "commit", "message"),
            zip_url=require_field(tag_data, "zipball_url"),
            created_at=parse_timestamp(
                require_field(commit_data, "commit", "committer", "date"), "commit.committer.date"
            ),
        )

    @staticmethod
    def _require_bool(data: Dict, field: str) -> bool:
        value = require_field(data, field)
        if not isinstance(value, bool):
            raise ResponseShapeError(field, f"error while parsing: '{field}' is not a boolean")
        return value
