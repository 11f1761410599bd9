"""
Remote Command Sessions

Two ways to run a command in a pod over the exec websocket:

- Interactive: the local terminal is bound to the remote process (raw mode when
  stdin is a real terminal) and the call blocks until the remote side exits.
- Buffered: three in-process pipes (stdin writer, stdout/stderr readers) driven
  by one background worker. The worker closes all pipes when the remote stream
  ends and resolves the session result exactly once.

Both modes drive the kubernetes WSClient from a worker thread; data reaches the
event loop through call_soon_threadsafe.
"""

import asyncio
import json
import logging
import os
import queue
import select
import signal
import sys
import termios
import threading
import tty
from contextlib import contextmanager
from typing import Any, Callable, Optional, Tuple

from kubernetes.stream.ws_client import STDIN_CHANNEL, V5_CHANNEL_PROTOCOL

from ...exceptions import CommandExitError, KubedevError, StreamError

logger = logging.getLogger(__name__)

# Channel of the exec websocket carrying terminal size updates
RESIZE_CHANNEL = 4

# Seconds the worker blocks waiting for websocket frames per iteration
POLL_TIMEOUT = 0.1

_STDIN_EOF = object()


def close_remote_stdin(ws, sent_input: bool) -> None:
    """
    Signal end of input to the remote command.

    v5 servers get a close frame for the stdin channel. v4 has none, so the
    connection itself is closed, and only once input was sent: a command that
    reads no input keeps running.
    """
    if getattr(ws, "subprotocol", None) == V5_CHANNEL_PROTOCOL:
        ws.close_channel(STDIN_CHANNEL)
    elif sent_input:
        logger.debug("[EXEC] Server has no stdin close support, ending the stream after input")
        ws.close()


def _exit_code(ws) -> Optional[int]:
    """Exit code reported on the error channel, None when it is unavailable."""
    try:
        return ws.returncode
    except Exception as e:
        logger.debug(f"[EXEC] Unable to read exit status: {e}")
        return None


# =============================================================================
# Local Terminal
# =============================================================================

class LocalTerminal:
    """Local stdin/stdout handle used by interactive sessions."""

    def __init__(self, stdin=None, stdout=None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self._size_lock = threading.Lock()
        self._pending_size: Optional[Tuple[int, int]] = None
        self._stdin_eof = False

        self.raw = self._is_terminal_in()
        if not self.raw:
            logger.info("[EXEC] Unable to use a TTY - input is not a terminal or the right kind of file")

    def _is_terminal_in(self) -> bool:
        try:
            return os.isatty(self.stdin.fileno())
        except (AttributeError, ValueError, OSError):
            return False

    @contextmanager
    def raw_mode(self):
        """Put the local terminal into raw mode for the duration of the block."""
        if not self.raw:
            yield
            return

        fd = self.stdin.fileno()
        previous = termios.tcgetattr(fd)
        try:
            tty.setraw(fd)
            yield
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, previous)

    def size(self) -> Optional[Tuple[int, int]]:
        """(columns, rows) of the local terminal, None when unknown."""
        try:
            size = os.get_terminal_size(self.stdout.fileno())
        except (AttributeError, ValueError, OSError):
            return None
        return size.columns, size.lines

    def notify_resize(self) -> None:
        size = self.size()
        if size is None:
            return
        with self._size_lock:
            self._pending_size = size

    def take_resize(self) -> Optional[Tuple[int, int]]:
        """Return the latest unsent terminal size, if any."""
        with self._size_lock:
            size, self._pending_size = self._pending_size, None
        return size

    def read_input(self) -> Optional[bytes]:
        """Read available local input without blocking. None once stdin hit EOF."""
        if self._stdin_eof:
            return None

        fd = self.stdin.fileno()
        readable, _, _ = select.select([fd], [], [], 0)
        if not readable:
            return b""

        data = os.read(fd, 4096)
        if not data:
            self._stdin_eof = True
            return None
        return data

    def write_output(self, data: bytes) -> None:
        fd = self.stdout.fileno()
        while data:
            written = os.write(fd, data)
            data = data[written:]


@contextmanager
def monitor_size(terminal: LocalTerminal):
    """Track local terminal resizes while the block runs, where SIGWINCH exists."""
    loop = asyncio.get_running_loop()
    sigwinch = getattr(signal, "SIGWINCH", None)
    monitoring = False

    terminal.notify_resize()
    if terminal.raw and sigwinch is not None:
        try:
            loop.add_signal_handler(sigwinch, terminal.notify_resize)
            monitoring = True
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.debug(f"[EXEC] Terminal size monitoring unavailable: {e}")

    try:
        yield
    finally:
        if monitoring:
            loop.remove_signal_handler(sigwinch)


def _interactive_loop(ws, terminal: LocalTerminal) -> Optional[int]:
    stdin_open = True
    sent_input = False

    while ws.is_open():
        size = terminal.take_resize()
        if size is not None:
            columns, rows = size
            ws.write_channel(RESIZE_CHANNEL, json.dumps({"Width": columns, "Height": rows}))

        ws.update(timeout=POLL_TIMEOUT)
        if ws.peek_stdout():
            terminal.write_output(ws.read_stdout())
        if ws.peek_stderr():
            terminal.write_output(ws.read_stderr())

        if stdin_open:
            data = terminal.read_input()
            if data is None:
                stdin_open = False
                close_remote_stdin(ws, sent_input)
            elif data:
                ws.write_stdin(data)
                sent_input = True

    # Flush whatever arrived together with the close frame
    if ws.peek_stdout():
        terminal.write_output(ws.read_stdout())
    if ws.peek_stderr():
        terminal.write_output(ws.read_stderr())

    return _exit_code(ws)


async def run_interactive(open_stream: Callable[[bool], Any], terminal: LocalTerminal) -> Optional[int]:
    """
    Attach the local terminal to a remote command and block until it ends.

    Args:
        open_stream: Opens the exec websocket; receives whether to request a TTY
        terminal: Local terminal handle

    Returns:
        Exit code of the remote command (None when the server did not report one)

    Raises:
        StreamError: If the connection cannot be opened or breaks
    """
    try:
        ws = await asyncio.to_thread(open_stream, terminal.raw)
    except Exception as e:
        raise StreamError(f"Unable to start terminal session: {e}") from e

    try:
        with terminal.raw_mode(), monitor_size(terminal):
            return await asyncio.to_thread(_interactive_loop, ws, terminal)
    except KubedevError:
        raise
    except Exception as e:
        raise StreamError(f"Terminal session failed: {e}") from e
    finally:
        ws.close()


# =============================================================================
# Buffered Session
# =============================================================================

class ExecInput:
    """Writable end of the stdin pipe of a buffered session."""

    def __init__(self):
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self.closed = False
        self._sent = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ValueError("write to closed stdin")
        if data:
            self._queue.put(data)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put(_STDIN_EOF)

    def drain_into(self, ws) -> None:
        """Forward queued input to the remote stream (worker thread)."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _STDIN_EOF:
                close_remote_stdin(ws, self._sent)
                return
            ws.write_stdin(item)
            self._sent = True


class BufferedExecSession:
    """
    Non-interactive remote command with separate stdin/stdout/stderr pipes.

    Attributes:
        stdin: ExecInput to send data to the command
        stdout: asyncio.StreamReader fed with the command's stdout
        stderr: asyncio.StreamReader fed with the command's stderr
        result: Future resolved once the command ended (None, CommandExitError
            or StreamError)
    """

    def __init__(self, open_stream: Callable[[], Any]):
        self._open_stream = open_stream
        self.stdin = ExecInput()
        self.stdout = asyncio.StreamReader(limit=2 ** 24)
        self.stderr = asyncio.StreamReader(limit=2 ** 24)
        self.exit_code: Optional[int] = None
        self.result: Optional[asyncio.Future] = None
        self._worker: Optional[asyncio.Task] = None
        self._stopped = threading.Event()
        self._pipes_closed = False

    def start(self) -> None:
        """Spawn the worker that owns the remote stream."""
        loop = asyncio.get_running_loop()
        self.result = loop.create_future()
        self._worker = asyncio.create_task(self._run(loop))

    def _deliver(self, reader: asyncio.StreamReader, data: bytes) -> None:
        if not self._pipes_closed:
            reader.feed_data(data)

    def _feed(self, loop: asyncio.AbstractEventLoop, reader: asyncio.StreamReader, data: bytes) -> None:
        if data:
            loop.call_soon_threadsafe(self._deliver, reader, data)

    def _pump(self, loop: asyncio.AbstractEventLoop) -> Optional[int]:
        ws = self._open_stream()
        try:
            while ws.is_open() and not self._stopped.is_set():
                self.stdin.drain_into(ws)
                ws.update(timeout=POLL_TIMEOUT)
                if ws.peek_stdout():
                    self._feed(loop, self.stdout, ws.read_stdout())
                if ws.peek_stderr():
                    self._feed(loop, self.stderr, ws.read_stderr())

            if ws.peek_stdout():
                self._feed(loop, self.stdout, ws.read_stdout())
            if ws.peek_stderr():
                self._feed(loop, self.stderr, ws.read_stderr())

            return _exit_code(ws)
        finally:
            ws.close()

    async def _run(self, loop: asyncio.AbstractEventLoop) -> None:
        error: Optional[BaseException] = None
        try:
            self.exit_code = await asyncio.to_thread(self._pump, loop)
            if self.exit_code:
                error = CommandExitError(self.exit_code)
        except asyncio.CancelledError:
            self._stopped.set()
            error = StreamError("Remote command was cancelled")
            raise
        except Exception as e:
            logger.error(f"[EXEC] Remote stream failed: {e}")
            error = StreamError(f"Remote stream failed: {e}")
        finally:
            # Close all three pipes, then deliver the terminal error exactly once
            self.stdin.close()
            self._pipes_closed = True
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            if not self.result.done():
                if error is None:
                    self.result.set_result(None)
                else:
                    self.result.set_exception(error)

    async def wait(self) -> None:
        """
        Wait for the remote command to end.

        Raises:
            CommandExitError: On a non-zero exit code
            StreamError: If the transport failed
        """
        await asyncio.shield(self.result)

    async def close(self) -> None:
        """Stop the worker if it is still running."""
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self.result is not None and self.result.done() and not self.result.cancelled():
            # Mark the error as retrieved when nobody waited for it
            self.result.exception()


async def exec_buffered(session: BufferedExecSession, stdin_data: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    Collect the complete output of a buffered session.

    stdout and stderr are drained by two concurrent tasks; both buffers are
    returned only after both drains have finished.

    Raises:
        CommandExitError: On a non-zero exit code (carries both buffers)
        StreamError: If the transport failed
    """
    if stdin_data:
        session.stdin.write(stdin_data)
    session.stdin.close()

    async def drain(reader: asyncio.StreamReader) -> bytes:
        chunks = []
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)

    stdout, stderr = await asyncio.gather(drain(session.stdout), drain(session.stderr))

    try:
        await session.wait()
    except CommandExitError as e:
        raise CommandExitError(e.exit_code, stdout, stderr) from e

    return stdout, stderr
