"""
Base image builder interface and data models.

This module defines the abstract base class every build engine implements
(daemon-based Docker, in-cluster Kaniko), along with the Pydantic models that
describe what to build and where to push it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
from pydantic import BaseModel, Field


class ImageTarget(BaseModel):
    """Where a built image is pushed."""
    registry_url: str = Field("", description="Registry host, empty for Docker Hub")
    image_name: str = Field(..., description="Repository name within the registry")
    tag: str = Field(..., description="Tag of the image being built")
    insecure: bool = Field(False, description="Allow plain HTTP / unverified TLS to the registry")

    @property
    def repository(self) -> str:
        if self.registry_url:
            return f"{self.registry_url}/{self.image_name}"
        return self.image_name

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


class BuildOptions(BaseModel):
    """Options passed to the build engine."""
    build_args: Dict[str, str] = Field(default_factory=dict, description="Docker build arguments")


class BaseImageBuilder(ABC):
    """
    Abstract base class for build engines.

    A builder is created for one image target; authenticate, build_image and
    push_image are called once each, in that order.
    """

    def __init__(self, target: ImageTarget):
        self.target = target

    @abstractmethod
    async def authenticate(self, username: str, password: str, anonymous_allowed: bool) -> Optional[str]:
        """
        Authenticate against the target registry.

        Args:
            username: Registry username (empty for anonymous)
            password: Registry password or token
            anonymous_allowed: Skip authentication when no credentials are given

        Returns:
            Identity token issued by the registry, if any

        Raises:
            BuildError: If authentication fails
        """
        pass

    @abstractmethod
    async def build_image(self, context_path: str, dockerfile_path: str, options: BuildOptions) -> None:
        """
        Build the image from a build context.

        Raises:
            BuildError: If the build fails
        """
        pass

    @abstractmethod
    async def push_image(self) -> None:
        """
        Push the built image to the registry.

        Raises:
            BuildError: If the push fails
        """
        pass
