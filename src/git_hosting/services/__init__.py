"""Service layer for the git hosting facade."""

from .git_platform import (
    GitHostingService,
    User,
    Repository,
    Branch,
    Commit,
    PullRequest,
    Thread,
    Issue,
    Tag,
    GitHostingError,
    ApiError,
    AuthenticationError,
    NotFoundError,
    GraphQLError,
    ResponseShapeError,
    OperationNotImplementedError,
    calculate_language_percentages,
)
from .github import GitHubService

__all__ = [
    "GitHostingService",
    "GitHubService",
    "User",
    "Repository",
    "Branch",
    "Commit",
    "PullRequest",
    "Thread",
    "Issue",
    "Tag",
    "GitHostingError",
    "ApiError",
    "AuthenticationError",
    "NotFoundError",
    "GraphQLError",
    "ResponseShapeError",
    "OperationNotImplementedError",
    "calculate_language_percentages",
]
