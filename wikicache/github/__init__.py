"""
Cache-aware GitHub services.
"""

from wikicache.github.base import BaseGitHubService
from wikicache.github.content import ContentService
from wikicache.github.users import UserService
from wikicache.github.repos import RepositoryService
from wikicache.github.permissions import PermissionService
from wikicache.github.forks import ForkService
from wikicache.github.pull_requests import PullRequestService, is_pr_for_user
from wikicache.github.donators import DonatorService, DonatorStatus
from wikicache.github.avatars import AvatarService
from wikicache.github.builds import BuildService

__all__ = [
    "BaseGitHubService",
    "ContentService",
    "UserService",
    "RepositoryService",
    "PermissionService",
    "ForkService",
    "PullRequestService",
    "is_pr_for_user",
    "DonatorService",
    "DonatorStatus",
    "AvatarService",
    "BuildService",
]
