"""
Base sync engine interface.

A sync engine keeps a local directory and a directory in a container in step.
The up pipeline only needs start/stop; how the engine diffs and transfers
files is up to the implementation.
"""

import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import List

from kubernetes import client
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SyncExcludes(BaseModel):
    """Gitignore-like path patterns excluded from sync."""
    exclude_paths: List[str] = Field(default_factory=list, description="Excluded in both directions")
    upload_exclude_paths: List[str] = Field(default_factory=list, description="Excluded from local -> container")
    download_exclude_paths: List[str] = Field(default_factory=list, description="Excluded from container -> local")

    @property
    def upload_patterns(self) -> List[str]:
        return self.exclude_paths + self.upload_exclude_paths

    @property
    def download_patterns(self) -> List[str]:
        return self.exclude_paths + self.download_exclude_paths


def is_excluded(relative_path: str, is_dir: bool, patterns: List[str]) -> bool:
    """
    Match a path relative to the sync root against gitignore-like patterns.

    - "/build" only matches at the root, "build" matches at any depth
    - "logs/" only matches directories
    - "*.pyc" matches by name, "src/*.tmp" by relative path

    Examples:
        is_excluded("node_modules", True, ["node_modules/"]) -> True
        is_excluded("src/app.pyc", False, ["*.pyc"]) -> True
        is_excluded("src/build", True, ["/build"]) -> False
    """
    relative_path = relative_path.replace("\\", "/").strip("/")
    name = relative_path.rsplit("/", 1)[-1]

    for pattern in patterns:
        pattern = pattern.strip()
        if not pattern or pattern.startswith("#"):
            continue

        if pattern.endswith("/"):
            if not is_dir:
                continue
            pattern = pattern.rstrip("/")

        if pattern.startswith("/"):
            if fnmatch.fnmatchcase(relative_path, pattern.lstrip("/")):
                return True
        elif "/" in pattern:
            if fnmatch.fnmatchcase(relative_path, pattern):
                return True
        elif fnmatch.fnmatchcase(name, pattern):
            return True

    return False


class SyncHandle:
    """Running sync of one path. stop() may be called any number of times."""

    def __init__(self, local_path: str, remote_path: str, pod_name: str):
        self.local_path = local_path
        self.remote_path = remote_path
        self.pod_name = pod_name
        self.stopped = False

    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        logger.debug(f"[SYNC] Stopped sync {self.local_path} <-> {self.pod_name}:{self.remote_path}")


class BaseSyncEngine(ABC):
    """Abstract base class for sync engines."""

    @abstractmethod
    async def start(
        self,
        local_path: str,
        remote_path: str,
        pod: client.V1Pod,
        container: str,
        excludes: SyncExcludes
    ) -> SyncHandle:
        """
        Start syncing local_path with remote_path in a container.

        Raises:
            StreamError: If the initial transfer fails
        """
        pass
