"""
Local port tunnels into a pod.

Each (local, remote) pair gets a TCP server on the bind address. Every accepted
connection opens its own kubernetes port-forward websocket and bytes are piped
in both directions until either side closes.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, List, Set, Tuple

from ...exceptions import StreamError

# Transport chatter is routed to the run log file, see logging_setup
logger = logging.getLogger("kubedev.portforward")


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Connection closed: {e}")


class PortTunnel:
    """Forward local ports to one pod until stopped."""

    def __init__(
        self,
        open_forward: Callable[[int], Any],
        pod_name: str,
        ports: List[Tuple[int, int]],
        bind_address: str = "127.0.0.1"
    ):
        """
        Args:
            open_forward: Opens a port-forward to the pod for one remote port (blocking)
            pod_name: Pod name, for log messages
            ports: (local_port, remote_port) pairs
            bind_address: Local interface to listen on
        """
        self.open_forward = open_forward
        self.pod_name = pod_name
        self.ports = ports
        self.bind_address = bind_address
        self._writers: Set[asyncio.StreamWriter] = set()

    async def _handle(
        self,
        remote_port: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        self._writers.add(writer)
        remote_writer = None
        try:
            forward = await asyncio.to_thread(self.open_forward, remote_port)
            remote_socket = forward.socket(remote_port)
            remote_reader, remote_writer = await asyncio.open_connection(sock=remote_socket)

            await asyncio.gather(
                _pipe(reader, remote_writer),
                _pipe(remote_reader, writer),
            )

            error = forward.error(remote_port)
            if error:
                logger.error(f"Port {remote_port} on pod {self.pod_name}: {error}")
        except Exception as e:
            logger.error(f"Forwarding to {self.pod_name}:{remote_port} failed: {e}")
        finally:
            self._writers.discard(writer)
            if remote_writer is not None:
                remote_writer.close()
            writer.close()

    async def run(self, stop_event: asyncio.Event, ready_event: asyncio.Event) -> None:
        """
        Listen on all local ports, set ready_event, serve until stop_event is set.

        Raises:
            StreamError: If a local port cannot be bound
        """
        servers = []
        try:
            for local_port, remote_port in self.ports:
                try:
                    server = await asyncio.start_server(
                        functools.partial(self._handle, remote_port),
                        host=self.bind_address,
                        port=local_port,
                    )
                except OSError as e:
                    raise StreamError(f"Unable to listen on port {local_port}: {e}") from e
                servers.append(server)
                logger.info(f"Forwarding {self.bind_address}:{local_port} -> {self.pod_name}:{remote_port}")

            ready_event.set()
            await stop_event.wait()
        finally:
            for server in servers:
                server.close()
            for writer in list(self._writers):
                writer.close()
            for server in servers:
                await server.wait_closed()
