"""
Registry resolution and image pull secrets.

Images reference a registry by key. The registry decides the image URL prefix,
the credentials used at build time and the pull secret the release uses to
fetch the image from the cluster.
"""

import base64
import json
import logging
from typing import Dict

from kubernetes import client

from ..exceptions import ConfigurationError
from ..project_config import ImageConfig, RegistryConfig
from ..utils.naming import dns_safe_name

logger = logging.getLogger(__name__)

DOCKER_HUB = "hub.docker.com"
DOCKER_HUB_AUTH_URL = "https://index.docker.io/v1/"


def registry_prefix(registry: RegistryConfig) -> str:
    """Image URL prefix of a registry. Docker Hub has none."""
    url = registry.url or ""
    if url == DOCKER_HUB:
        return ""
    return url.rstrip("/")


def get_registry_config(image: ImageConfig, registries: Dict[str, RegistryConfig]) -> RegistryConfig:
    """
    Look up the registry an image is pushed to.

    An image without a registry key pushes to Docker Hub anonymously.

    Raises:
        ConfigurationError: If the referenced registry is not configured
    """
    if not image.registry:
        return RegistryConfig(url=DOCKER_HUB)

    registry = registries.get(image.registry)
    if registry is None:
        raise ConfigurationError(
            f"Registry '{image.registry}' of image '{image.name}' is not configured"
        )
    return registry


def get_image_url(image: ImageConfig, registries: Dict[str, RegistryConfig], with_tag: bool = True) -> str:
    """
    Full image URL, e.g. "registry.example.com/team/app:k3x8n2a".

    Raises:
        ConfigurationError: If the referenced registry is not configured
    """
    prefix = registry_prefix(get_registry_config(image, registries))
    url = f"{prefix}/{image.name}" if prefix else image.name

    if with_tag and image.tag:
        url = f"{url}:{image.tag}"
    return url


def get_registry_auth_secret_name(registry_url: str) -> str:
    """Name of the pull secret for a registry URL, stable and DNS-1123 safe."""
    return dns_safe_name(f"devspace-auth-{registry_url or DOCKER_HUB}")


def build_docker_config_json(registry_url: str, username: str, password: str, email: str) -> bytes:
    """Render the .dockerconfigjson payload for one registry."""
    server = DOCKER_HUB_AUTH_URL if registry_url in ("", DOCKER_HUB) else registry_url
    auth = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    payload = {
        "auths": {
            server: {
                "username": username,
                "password": password,
                "email": email,
                "auth": auth,
            }
        }
    }
    return json.dumps(payload).encode("utf-8")


async def ensure_pull_secrets(
    cluster,
    registries: Dict[str, RegistryConfig],
    namespace: str,
    email: str
) -> list:
    """
    Create or update one image pull secret per registry with credentials.

    Returns:
        Names of the secrets written
    """
    written = []
    for key, registry in registries.items():
        auth = registry.auth
        if auth is None or not auth.password:
            logger.debug(f"[REGISTRY] Registry '{key}' has no password, no pull secret needed")
            continue

        url = registry.url or DOCKER_HUB
        name = get_registry_auth_secret_name(url)
        config_json = build_docker_config_json(url, auth.username or "", auth.password, email)

        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels={"app.kubernetes.io/managed-by": "kubedev"},
            ),
            type="kubernetes.io/dockerconfigjson",
            data={".dockerconfigjson": base64.b64encode(config_json).decode("ascii")},
        )
        await cluster.create_or_replace_secret(namespace, secret)
        written.append(name)

    if written:
        logger.info(f"[REGISTRY] Pull secrets ready in {namespace}: {', '.join(written)}")
    return written
