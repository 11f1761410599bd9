"""
Build dispatcher.

Walks the image records of the project config, decides which images need a
rebuild and runs the selected build engine for each of them. Every successful
build assigns a fresh tag and persists the config right away, so a later
failure never loses the tag of an image that is already pushed.
"""

import logging
import os
from typing import Dict, Optional, Type

from ...exceptions import BuildError, KubedevError
from ...project_config import ConfigStore, ImageConfig
from ...utils.naming import generate_image_tag
from ..registry import get_registry_config, registry_prefix
from .base import BaseImageBuilder, BuildOptions, ImageTarget
from .decision import should_rebuild
from .engines import DockerImageBuilder, KanikoImageBuilder

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE_PATH = "./Dockerfile"
DEFAULT_CONTEXT_PATH = "./"


class BuildDispatcher:
    """Builds and pushes the images of a project."""

    # Registry of available build engines
    BUILD_ENGINES: Dict[str, Type[BaseImageBuilder]] = {
        "docker": DockerImageBuilder,
        "kaniko": KanikoImageBuilder,
    }

    def __init__(
        self,
        store: ConfigStore,
        cluster=None,
        workdir: str = ".",
        release_namespace: Optional[str] = None
    ):
        self.store = store
        self.cluster = cluster
        self.workdir = workdir
        self.release_namespace = release_namespace

    @staticmethod
    def select_engine(image: ImageConfig) -> str:
        """Kaniko when configured, Docker otherwise."""
        if image.build.engine.kaniko is not None:
            return "kaniko"
        return "docker"

    def create_builder(self, image: ImageConfig, target: ImageTarget) -> BaseImageBuilder:
        engine = self.select_engine(image)
        builder_class = self.BUILD_ENGINES[engine]

        if engine == "kaniko":
            if self.cluster is None:
                raise BuildError("The kaniko build engine needs a cluster connection")
            namespace = (
                image.build.engine.kaniko.namespace
                or self.release_namespace
                or self.store.config.dev_space.release.namespace
            )
            return builder_class(target, self.cluster, namespace)

        docker_config = image.build.engine.docker
        prefer_minikube = True
        if docker_config is not None and docker_config.prefer_minikube is not None:
            prefer_minikube = docker_config.prefer_minikube
        return builder_class(target, prefer_minikube=prefer_minikube)

    def _resolve(self, path: str) -> str:
        return os.path.normpath(os.path.join(self.workdir, path))

    async def build_image(self, image_key: str, image: ImageConfig, force_flag_explicitly_set: bool) -> bool:
        """
        Build one image if it needs a rebuild.

        Returns:
            True if the image was built and pushed
        """
        dockerfile_path = self._resolve(image.build.dockerfile_path or DEFAULT_DOCKERFILE_PATH)
        context_path = self._resolve(image.build.context_path or DEFAULT_CONTEXT_PATH)

        if not should_rebuild(image, dockerfile_path, force_flag_explicitly_set):
            logger.info(f"[BUILD] Skip building image '{image_key}'")
            return False

        config = self.store.config
        tag = generate_image_tag()
        registry = get_registry_config(image, config.registries)
        target = ImageTarget(
            registry_url=registry_prefix(registry),
            image_name=image.name,
            tag=tag,
            insecure=bool(registry.insecure),
        )

        builder = self.create_builder(image, target)
        logger.info(
            f"[BUILD] Building image '{image_key}' as {target.reference} "
            f"with {self.select_engine(image)}"
        )

        auth = registry.auth
        username = auth.username if auth and auth.username else ""
        password = auth.password if auth and auth.password else ""

        options = BuildOptions(
            build_args=(image.build.options.build_args or {}) if image.build.options else {}
        )

        try:
            await builder.authenticate(username, password, anonymous_allowed=True)
            await builder.build_image(context_path, dockerfile_path, options)
            await builder.push_image()
        except BuildError:
            raise
        except KubedevError as e:
            raise BuildError(f"Error building image '{image_key}': {e}") from e

        image.tag = tag
        self.store.save()

        logger.info(f"[BUILD] Image '{image_key}' pushed as {target.reference}")
        return True

    async def build_images(self, force_flag_explicitly_set: bool) -> bool:
        """
        Build every image of the project that needs it.

        Returns:
            True if at least one image was rebuilt

        Raises:
            ConfigurationError: Dockerfile or registry config missing
            BuildError: A build engine failed
        """
        rebuilt = False
        for image_key, image in self.store.config.images.items():
            if await self.build_image(image_key, image, force_flag_explicitly_set):
                rebuilt = True
        return rebuilt
