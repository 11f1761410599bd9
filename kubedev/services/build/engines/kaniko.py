"""
Kaniko build engine.

Builds inside the cluster, so no local Docker daemon is needed:
1. Start a build pod from the kaniko debug image (it ships busybox)
2. Write the registry credentials to /kaniko/.docker/config.json
3. Stream the build context into the pod as a tar archive
4. Run /kaniko/executor, which builds and pushes in one step
"""

import asyncio
import base64
import io
import json
import logging
import os
import tarfile
from typing import Optional

from kubernetes import client

from ....config import get_settings
from ....exceptions import BuildError, CommandExitError, KubedevError
from ..base import BaseImageBuilder, BuildOptions, ImageTarget

logger = logging.getLogger(__name__)

DOCKER_HUB_AUTH_URL = "https://index.docker.io/v1/"
BUILD_CONTAINER = "kaniko"
WORKSPACE = "/workspace"
EXTERNAL_DOCKERFILE = ".kubedev.Dockerfile"


def create_context_archive(context_path: str, dockerfile_path: str) -> tuple:
    """
    Pack a build context into an in-memory tar archive.

    A Dockerfile outside the context is added at the archive root.

    Returns:
        (tar_bytes, dockerfile path relative to the archive root)
    """
    context_path = os.path.abspath(context_path)
    dockerfile_path = os.path.abspath(dockerfile_path)

    tar_stream = io.BytesIO()
    with tarfile.open(fileobj=tar_stream, mode='w') as tar:
        tar.add(context_path, arcname=".")

        if os.path.commonpath([context_path, dockerfile_path]) == context_path:
            dockerfile = os.path.relpath(dockerfile_path, context_path)
        else:
            dockerfile = EXTERNAL_DOCKERFILE
            tar.add(dockerfile_path, arcname=dockerfile)

    return tar_stream.getvalue(), dockerfile


def docker_config_json(registry_url: str, username: str, password: str) -> bytes:
    auth = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return json.dumps({"auths": {registry_url or DOCKER_HUB_AUTH_URL: {"auth": auth}}}).encode("utf-8")


class KanikoImageBuilder(BaseImageBuilder):
    """Build engine running kaniko in a pod of the cluster."""

    def __init__(self, target: ImageTarget, cluster, namespace: str):
        super().__init__(target)
        self.cluster = cluster
        self.namespace = namespace
        self.settings = get_settings()
        self.pod_name = f"kubedev-build-{target.tag}"
        self._docker_config: Optional[bytes] = None
        self._pod: Optional[client.V1Pod] = None

    async def authenticate(self, username: str, password: str, anonymous_allowed: bool) -> Optional[str]:
        # Credentials are checked by kaniko itself when it pushes
        if anonymous_allowed and not username:
            return None
        self._docker_config = docker_config_json(self.target.registry_url, username, password)
        return None

    def _build_pod_manifest(self) -> client.V1Pod:
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=self.pod_name,
                namespace=self.namespace,
                labels={
                    "app.kubernetes.io/managed-by": "kubedev",
                    "kubedev/component": "image-build",
                },
            ),
            spec=client.V1PodSpec(
                restart_policy="Never",
                containers=[
                    client.V1Container(
                        name=BUILD_CONTAINER,
                        image=self.settings.kaniko_image,
                        command=["/busybox/sleep", "36000"],
                    )
                ],
            ),
        )

    def _executor_command(self, dockerfile: str, options: BuildOptions) -> list:
        command = [
            "/kaniko/executor",
            f"--dockerfile={WORKSPACE}/{dockerfile}",
            f"--context=dir://{WORKSPACE}",
            f"--destination={self.target.reference}",
        ]
        for key, value in options.build_args.items():
            command.append(f"--build-arg={key}={value}")
        if self.target.insecure:
            command.extend(["--insecure", "--skip-tls-verify"])
        return command

    async def _exec(self, command: list, stdin_data: Optional[bytes] = None, action: str = "build") -> bytes:
        try:
            stdout, _ = await self.cluster.exec_buffered(
                self._pod, BUILD_CONTAINER, command, stdin_data=stdin_data
            )
            return stdout
        except CommandExitError as e:
            output = (e.stderr or e.stdout or b"").decode("utf-8", errors="replace").strip()
            raise BuildError(f"Error during image {action} (exit code {e.exit_code}): {output[-2000:]}") from e
        except KubedevError as e:
            raise BuildError(f"Error during image {action}: {e}") from e

    async def _build_in_pod(self, context_path: str, dockerfile_path: str, options: BuildOptions) -> None:
        if self._docker_config:
            await self._exec(
                ["/busybox/sh", "-c", "mkdir -p /kaniko/.docker && cat > /kaniko/.docker/config.json"],
                stdin_data=self._docker_config,
                action="authentication",
            )

        archive, dockerfile = await asyncio.to_thread(create_context_archive, context_path, dockerfile_path)
        logger.info(f"[BUILD] Uploading build context ({len(archive)} bytes)")
        await self._exec(
            ["/busybox/sh", "-c", f"mkdir -p {WORKSPACE} && tar xf - -C {WORKSPACE}"],
            stdin_data=archive,
            action="context upload",
        )

        await self._exec(self._executor_command(dockerfile, options))

    async def build_image(self, context_path: str, dockerfile_path: str, options: BuildOptions) -> None:
        logger.info(f"[BUILD] Starting kaniko build pod {self.pod_name} in {self.namespace}")

        try:
            pod = await self.cluster.create_pod(self.namespace, self._build_pod_manifest())
            self._pod = await self.cluster.wait_for_ready(
                pod,
                max_wait=self.settings.kaniko_pod_timeout_seconds,
                interval=2,
            )

            await asyncio.wait_for(
                self._build_in_pod(context_path, dockerfile_path, options),
                timeout=self.settings.kaniko_build_timeout_seconds,
            )
        except BuildError:
            await self._cleanup()
            raise
        except KubedevError as e:
            await self._cleanup()
            raise BuildError(f"Error during image build: {e}") from e
        except asyncio.TimeoutError as e:
            await self._cleanup()
            raise BuildError(f"Kaniko build timed out after {self.settings.kaniko_build_timeout_seconds}s") from e

        logger.info(f"[BUILD] Kaniko built and pushed {self.target.reference}")

    async def push_image(self) -> None:
        # kaniko pushes as part of the build, only the build pod is left to remove
        await self._cleanup()

    async def _cleanup(self) -> None:
        try:
            await self.cluster.delete_pod(self.pod_name, self.namespace)
        except KubedevError as e:
            logger.warning(f"[BUILD] Unable to delete build pod {self.pod_name}: {e}")
