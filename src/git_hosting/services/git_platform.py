"""Abstract base class and value objects for git hosting services."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class User:
    """Short profile of a hosting service user."""
    username: str
    full_name: str
    followers_count: int
    following_count: int


@dataclass(frozen=True)
class Repository:
    """Repository snapshot with language usage in percent."""
    name: str
    full_name: str  # owner/repo
    url: str
    is_private: bool
    stars_count: int
    forks_count: int
    last_updated: datetime
    languages: Dict[str, float]
    description: Optional[str] = None


@dataclass(frozen=True)
class Branch:
    """Branch name and the date of its tip commit."""
    name: str
    updated_at: datetime


@dataclass(frozen=True)
class Commit:
    """Single entry of a branch history."""
    hash: str
    title: str
    created_at: datetime


@dataclass(frozen=True)
class PullRequest:
    """Pull request summary."""
    id: int  # number shown in /pulls/{id}
    title: str
    source_branch: str
    target_branch: str
    state: str
    is_closed: bool
    is_merged: bool = False


@dataclass(frozen=True)
class Thread:
    """Review discussion on a pull request."""
    is_resolved: bool


@dataclass(frozen=True)
class Issue:
    """Issue reported against a repository."""
    title: str
    is_closed: bool
    created_at: datetime
    updated_at: datetime
    pull_request_url: Optional[str] = None


@dataclass(frozen=True)
class Tag:
    """Tag with the commit it points to."""
    title: str
    hash: str
    description: str
    zip_url: str
    created_at: datetime


class GitHostingError(Exception):
    """Base exception for git hosting operations."""
    pass


class ApiError(GitHostingError):
    """Remote call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiError):
    """Authentication failed or the token lacks permissions."""
    pass


class NotFoundError(ApiError):
    """Resource not found or not accessible."""
    pass


class GraphQLError(GitHostingError):
    """GraphQL response carried errors."""

    def __init__(self, errors: List[Dict[str, Any]]):
        messages = "; ".join(str(error.get("message", error)) for error in errors)
        super().__init__(f"GraphQL query failed: {messages}")
        self.errors = errors


class ResponseShapeError(GitHostingError):
    """Remote response is missing an expected field."""

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"error while parsing: missing field '{field}'")
        self.field = field


class OperationNotImplementedError(GitHostingError, NotImplementedError):
    """Operation is not supported by this service."""

    def __init__(self, operation: str):
        super().__init__(f"{operation} is not implemented")
        self.operation = operation


def require_field(data: Any, *path: str) -> Any:
    """Return the value at ``path``, failing when it is absent or null.

    Raises:
        ResponseShapeError: naming the dotted path of the missing field
    """
    value = data
    for key in path:
        if not isinstance(value, Mapping) or value.get(key) is None:
            raise ResponseShapeError(".".join(path))
        value = value[key]
    return value


def optional_field(data: Any, *path: str, default: Any = None) -> Any:
    """Return the value at ``path`` or ``default`` when any step is missing."""
    value = data
    for key in path:
        if not isinstance(value, Mapping) or value.get(key) is None:
            return default
        value = value[key]
    return value


def parse_timestamp(value: Any, field: str) -> datetime:
    """Parse an ISO 8601 timestamp as returned by the hosting API."""
    if not isinstance(value, str):
        raise ResponseShapeError(field)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ResponseShapeError(field, f"error while parsing: invalid timestamp in '{field}': {value}") from e


def calculate_language_percentages(language_bytes: Mapping[str, int]) -> Dict[str, float]:
    """Convert per-language byte counts into percentages summing to 100."""
    total = float(sum(language_bytes.values()))
    if total <= 0:
        return {}
    return {
        language: (count / total) * 100
        for language, count in language_bytes.items()
    }


class GitHostingService(ABC):
    """Facade over a git hosting service API.

    Every operation performs its remote calls in order, maps the response
    into fresh value objects and raises a ``GitHostingError`` subclass on
    failure.
    """

    def __init__(self, token: Optional[str] = None, max_concurrent_requests: int = 4):
        """Initialize the hosting service.

        Args:
            token: Bearer token used for authenticated requests
            max_concurrent_requests: Upper bound for fan-out requests issued
                by a single operation
        """
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

        self.token = token
        self.max_concurrent_requests = max_concurrent_requests

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Human readable platform name."""
        pass

    @abstractmethod
    async def get_user_info(self, username: str) -> User:
        """Get the profile of a user.

        Raises:
            ResponseShapeError: If login, name, followers or following is absent
            NotFoundError: If the user does not exist
        """
        pass

    @abstractmethod
    async def get_authenticated_username(self) -> str:
        """Get the login of the identity the token belongs to."""
        pass

    @abstractmethod
    async def get_user_repositories(self, username: str) -> List[Repository]:
        """List repositories owned by a user, with language percentages."""
        pass

    @abstractmethod
    async def get_repository_by_name(self, username: str, repository_name: str) -> Repository:
        """Get a single repository with language percentages."""
        pass

    @abstractmethod
    async def create_repository(self,
                                repository_name: str,
                                description: Optional[str] = None,
                                private: bool = False) -> Repository:
        """Create a repository owned by the authenticated identity."""
        pass

    @abstractmethod
    async def get_repository_branches(self, repository_name: str) -> List[Branch]:
        """List branches of an authenticated identity's repository."""
        pass

    @abstractmethod
    async def create_branch(self,
                            repository_name: str,
                            branch_name: str,
                            from_branch: Optional[str] = None) -> Branch:
        """Create a branch pointing at the tip of ``from_branch``."""
        pass

    @abstractmethod
    async def delete_branch(self, repository_name: str, branch_name: str) -> None:
        """Delete the ``heads/<branch_name>`` ref."""
        pass

    @abstractmethod
    async def get_branch_commits(self, username: str, repository_name: str, branch_name: str) -> List[Commit]:
        """List the history of a branch starting at its tip commit."""
        pass

    @abstractmethod
    async def get_repository_pull_requests(self, repository_name: str) -> List[PullRequest]:
        """List open and closed pull requests."""
        pass

    @abstractmethod
    async def create_pull_request(self,
                                  repository_name: str,
                                  source_branch: str,
                                  dest_branch: str,
                                  title: str,
                                  body: Optional[str] = None) -> PullRequest:
        """Open a pull request from ``source_branch`` into ``dest_branch``."""
        pass

    @abstractmethod
    async def get_threads_info(self, repository_name: str, pull_request_id: int) -> List[Thread]:
        """List review discussions of a pull request."""
        pass

    @abstractmethod
    async def get_issues(self, repository_name: str) -> List[Issue]:
        """List issues of a repository among all accessible issues."""
        pass

    @abstractmethod
    async def get_repository_contributors(self, repository_name: str) -> List[User]:
        """List collaborators of a repository as full user profiles."""
        pass

    @abstractmethod
    async def get_repository_tags(self, username: str, repository_name: str) -> List[Tag]:
        """List tags of a repository."""
        pass

    async def create_tag(self, title: str) -> Tag:
        """Create a tag.

        Raises:
            OperationNotImplementedError: Always, without contacting the service
        """
        self._log_operation("create_tag", title=title)
        raise OperationNotImplementedError("create_tag")

    @abstractmethod
    async def delete_tag(self, repository_name: str, tag_name: str) -> None:
        """Delete the ``tags/<tag_name>`` ref."""
        pass

    @abstractmethod
    async def set_access_to_repository(self, username: str, repository_name: str, permission: str = "push") -> None:
        """Add a collaborator to an authenticated identity's repository."""
        pass

    @abstractmethod
    async def deny_access_to_repository(self, username: str, repository_name: str) -> None:
        """Remove a collaborator from an authenticated identity's repository."""
        pass

    async def _gather_ordered(self,
                              items: Iterable[T],
                              fetch: Callable[[T], Awaitable[R]]) -> List[R]:
        """Run ``fetch`` for every item with bounded concurrency.

        Results keep the order of ``items``. The first failure propagates and
        the remaining fetches are cancelled.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_requests)

        async def bounded(item: T) -> R:
            async with semaphore:
                return await fetch(item)

        tasks = [asyncio.ensure_future(bounded(item)) for item in items]
        if not tasks:
            return []

        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    def _log_operation(self, operation: str, **kwargs):
        """Log a hosting service operation for debugging.

        Args:
            operation: Operation name
            **kwargs: Additional context
        """
        context = {
            'platform': self.platform_name,
            'operation': operation,
            'authenticated': bool(self.token),
            **kwargs
        }

        # Remove sensitive information
        if 'token' in context:
            context['token'] = '***MASKED***'

        self.logger.debug(f"Git hosting operation: {operation}", extra={'context': context})
