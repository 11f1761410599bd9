"""
Tar upload sync engine.

Copies the local tree into the container once, as a tar stream piped into
`tar xf -` over exec. Upload exclude patterns are applied while packing.
"""

import asyncio
import io
import logging
import os
import shlex
import tarfile
from typing import List

from kubernetes import client

from ...exceptions import CommandExitError, StreamError
from .base import BaseSyncEngine, SyncExcludes, SyncHandle, is_excluded

logger = logging.getLogger(__name__)


def create_upload_archive(local_path: str, patterns: List[str]) -> tuple:
    """
    Pack a directory into an in-memory tar archive, skipping excluded paths.

    Returns:
        (tar_bytes, number of files packed)
    """
    tar_stream = io.BytesIO()
    file_count = 0

    with tarfile.open(fileobj=tar_stream, mode='w') as tar:
        for root, dirs, files in os.walk(local_path):
            relative_root = os.path.relpath(root, local_path)
            if relative_root == ".":
                relative_root = ""

            # Prune excluded directories so os.walk doesn't descend into them
            kept_dirs = []
            for name in sorted(dirs):
                relative = os.path.join(relative_root, name)
                if is_excluded(relative, True, patterns):
                    continue
                kept_dirs.append(name)
                tar.add(os.path.join(root, name), arcname=relative, recursive=False)
            dirs[:] = kept_dirs

            for name in sorted(files):
                relative = os.path.join(relative_root, name)
                if is_excluded(relative, False, patterns):
                    continue
                tar.add(os.path.join(root, name), arcname=relative, recursive=False)
                file_count += 1

    return tar_stream.getvalue(), file_count


class TarUploadSyncEngine(BaseSyncEngine):
    """One-way initial upload of a local directory into a container."""

    def __init__(self, cluster):
        self.cluster = cluster

    async def start(
        self,
        local_path: str,
        remote_path: str,
        pod: client.V1Pod,
        container: str,
        excludes: SyncExcludes
    ) -> SyncHandle:
        if not os.path.isdir(local_path):
            raise StreamError(f"Sync path {local_path} is not a directory")

        archive, file_count = await asyncio.to_thread(
            create_upload_archive, local_path, excludes.upload_patterns
        )

        target = shlex.quote(remote_path)
        command = ["sh", "-c", f"mkdir -p {target} && tar xf - -C {target}"]

        try:
            await self.cluster.exec_buffered(pod, container, command, stdin_data=archive)
        except CommandExitError as e:
            output = e.stderr.decode("utf-8", errors="replace").strip()
            raise StreamError(f"Sync error: upload to {remote_path} failed: {output}") from e

        logger.info(f"[SYNC] Uploaded {file_count} files to {pod.metadata.name}:{remote_path}")
        return SyncHandle(local_path, remote_path, pod.metadata.name)
