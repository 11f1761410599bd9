"""
Build Module - image rebuild decision and build engines

- decision: Dockerfile timestamp comparison
- BuildDispatcher: tags, builds and pushes images, then persists the config
- engines: Docker daemon and in-cluster Kaniko builders
"""

from .base import BaseImageBuilder, BuildOptions, ImageTarget
from .decision import should_rebuild
from .dispatcher import BuildDispatcher

__all__ = [
    "BaseImageBuilder",
    "BuildOptions",
    "ImageTarget",
    "should_rebuild",
    "BuildDispatcher",
]
