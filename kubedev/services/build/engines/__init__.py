"""Build engine implementations."""
from .docker import DockerImageBuilder
from .kaniko import KanikoImageBuilder

__all__ = [
    "DockerImageBuilder",
    "KanikoImageBuilder",
]
