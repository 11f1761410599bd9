"""
Docker build engine.

Builds with a Docker daemon through the docker SDK and pushes to the target
registry. When the cluster is a minikube and the image prefers it, the
minikube daemon is used so the cluster sees the image without a registry
round trip.
"""

import asyncio
import logging
import os
from typing import Dict, Iterable, Optional

import docker
from docker.errors import APIError, DockerException

from ....exceptions import BuildError
from ....utils.async_subprocess import run_async
from ...cluster.helpers import is_minikube
from ..base import BaseImageBuilder, BuildOptions, ImageTarget

logger = logging.getLogger(__name__)


def parse_docker_env(output: str) -> Dict[str, str]:
    """Parse `minikube docker-env --shell none` output (KEY=VALUE lines)."""
    env = {}
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        env[key.strip()] = value.strip().strip('"')
    return env


def _consume(events: Iterable[dict], action: str) -> None:
    """Log a streamed build/push response and raise on the first error entry."""
    for event in events:
        if "error" in event or "errorDetail" in event:
            detail = event.get("errorDetail") or {}
            message = event.get("error") or detail.get("message") or str(event)
            raise BuildError(f"Error during image {action}: {message.strip()}")

        text = event.get("stream") or event.get("status")
        if text and text.strip():
            logger.debug(f"[BUILD] {text.strip()}")


class DockerImageBuilder(BaseImageBuilder):
    """Build engine backed by a Docker daemon."""

    def __init__(self, target: ImageTarget, prefer_minikube: bool = True):
        super().__init__(target)
        self.prefer_minikube = prefer_minikube
        self.docker_client = None
        self._auth_config: Optional[Dict[str, str]] = None

    async def _get_docker_client(self):
        """Get or create the Docker client."""
        if self.docker_client is not None:
            return self.docker_client

        try:
            if self.prefer_minikube and is_minikube():
                result = await run_async(["minikube", "docker-env", "--shell", "none"], timeout=30)
                if result.success:
                    environment = dict(os.environ)
                    environment.update(parse_docker_env(result.stdout))
                    self.docker_client = docker.from_env(environment=environment)
                    logger.info("[BUILD] Using minikube Docker daemon")
                    return self.docker_client
                logger.warning(f"[BUILD] minikube docker-env failed, using local daemon: {result.stderr.strip()}")

            self.docker_client = docker.from_env()
        except (DockerException, RuntimeError, asyncio.TimeoutError) as e:
            raise BuildError(f"Error creating docker client: {e}") from e

        return self.docker_client

    async def authenticate(self, username: str, password: str, anonymous_allowed: bool) -> Optional[str]:
        if anonymous_allowed and not username:
            logger.debug("[BUILD] No registry credentials, pushing anonymously")
            return None

        docker_client = await self._get_docker_client()
        registry = self.target.registry_url or None

        try:
            response = await asyncio.to_thread(
                docker_client.login,
                username=username,
                password=password,
                registry=registry,
            )
        except APIError as e:
            raise BuildError(f"Error during image registry authentication: {e}") from e

        self._auth_config = {"username": username, "password": password}
        return (response or {}).get("IdentityToken")

    async def build_image(self, context_path: str, dockerfile_path: str, options: BuildOptions) -> None:
        docker_client = await self._get_docker_client()

        context_path = os.path.abspath(context_path)
        dockerfile_path = os.path.abspath(dockerfile_path)
        if os.path.commonpath([context_path, dockerfile_path]) == context_path:
            dockerfile = os.path.relpath(dockerfile_path, context_path)
        else:
            dockerfile = dockerfile_path

        logger.info(f"[BUILD] Building {self.target.reference} from {context_path}")

        def build():
            events = docker_client.api.build(
                path=context_path,
                dockerfile=dockerfile,
                tag=self.target.reference,
                buildargs=options.build_args or None,
                rm=True,
                decode=True,
            )
            _consume(events, "build")

        try:
            await asyncio.to_thread(build)
        except (APIError, DockerException, TypeError) as e:
            raise BuildError(f"Error during image build: {e}") from e

    async def push_image(self) -> None:
        docker_client = await self._get_docker_client()

        def push():
            events = docker_client.api.push(
                self.target.repository,
                tag=self.target.tag,
                stream=True,
                decode=True,
                auth_config=self._auth_config,
            )
            _consume(events, "push")

        try:
            await asyncio.to_thread(push)
        except (APIError, DockerException) as e:
            raise BuildError(f"Error during image push: {e}") from e

        logger.info(f"[BUILD] Pushed {self.target.reference}")
