"""
Project configuration models and persistence.

The project config is a YAML document under the project directory. It is loaded
once per run, mutated in place (image tags, build timestamps) and written back
through ConfigStore.save(), which replaces the file atomically so an interrupted
save never leaves a half-written config behind.
"""

import logging
import os
import tempfile
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ClusterUser(BaseModel):
    """Client identity used to talk to the cluster API."""
    username: Optional[str] = None
    client_cert: Optional[str] = Field(None, description="PEM encoded client certificate")
    client_key: Optional[str] = Field(None, description="PEM encoded client key")


class ClusterConfig(BaseModel):
    """Persisted cluster connection settings."""
    api_server: Optional[str] = Field(None, description="API server URL")
    ca_cert: Optional[str] = Field(None, description="PEM encoded cluster CA certificate")
    user: Optional[ClusterUser] = None


class RegistryAuth(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class RegistryConfig(BaseModel):
    """Credentials and location of an image registry."""
    url: Optional[str] = None
    auth: Optional[RegistryAuth] = None
    insecure: Optional[bool] = None


class DockerEngineConfig(BaseModel):
    prefer_minikube: Optional[bool] = None


class KanikoEngineConfig(BaseModel):
    namespace: Optional[str] = Field(None, description="Namespace of the build pod (default: release namespace)")


class BuildEngineConfig(BaseModel):
    """Build engine selector. Kaniko wins when both are set."""
    docker: Optional[DockerEngineConfig] = None
    kaniko: Optional[KanikoEngineConfig] = None


class BuildOptionsConfig(BaseModel):
    build_args: Optional[Dict[str, str]] = None


class BuildConfig(BaseModel):
    dockerfile_path: Optional[str] = None
    context_path: Optional[str] = None
    engine: BuildEngineConfig = Field(default_factory=BuildEngineConfig)
    options: Optional[BuildOptionsConfig] = None
    # Modification time of the Dockerfile at the last run, see build.decision
    latest_timestamp: Optional[str] = None


class ImageConfig(BaseModel):
    """Image build record: what to build and what was last produced."""
    name: str
    tag: Optional[str] = None
    registry: Optional[str] = Field(None, description="Key into ProjectConfig.registries")
    build: BuildConfig = Field(default_factory=BuildConfig)


class ReleaseConfig(BaseModel):
    name: str
    namespace: str = "default"


class PortMappingConfig(BaseModel):
    local_port: int
    remote_port: int


class PortForwardingConfig(BaseModel):
    resource_type: str = "pod"
    label_selector: Dict[str, str] = Field(default_factory=dict)
    namespace: Optional[str] = None
    port_mappings: List[PortMappingConfig] = Field(default_factory=list)


class SyncPathConfig(BaseModel):
    local_sub_path: str
    container_path: str
    label_selector: Dict[str, str] = Field(default_factory=dict)
    namespace: Optional[str] = None
    exclude_paths: List[str] = Field(default_factory=list)
    download_exclude_paths: List[str] = Field(default_factory=list)
    upload_exclude_paths: List[str] = Field(default_factory=list)


class DevSpaceConfig(BaseModel):
    release: ReleaseConfig
    sync: List[SyncPathConfig] = Field(default_factory=list)
    port_forwarding: List[PortForwardingConfig] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    """Root of the persisted project configuration."""
    version: str = "v1"
    dev_space: DevSpaceConfig
    images: Dict[str, ImageConfig] = Field(default_factory=dict)
    registries: Dict[str, RegistryConfig] = Field(default_factory=dict)
    cluster: Optional[ClusterConfig] = None


class ConfigStore:
    """Loads and saves the project configuration file."""

    def __init__(self, path: str):
        self.path = path
        self._config: Optional[ProjectConfig] = None

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> ProjectConfig:
        if not self.exists():
            raise ConfigurationError(
                f"Project config {self.path} not found, did you run init?"
            )

        with open(self.path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        try:
            self._config = ProjectConfig.model_validate(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid project config {self.path}: {e}") from e

        logger.debug(f"Loaded project config from {self.path}")
        return self._config

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            return self.load()
        return self._config

    def save(self) -> None:
        """Write the config next to the target and atomically swap it in."""
        if self._config is None:
            raise ConfigurationError("No project config loaded, nothing to save")

        data = self._config.model_dump(mode="json", exclude_none=True)
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".yaml", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Saved project config to {self.path}")
