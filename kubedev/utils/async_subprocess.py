"""
Async subprocess utilities
Runs external tools (helm, minikube) without blocking the event loop.
"""
import asyncio
from typing import Optional, List
from dataclasses import dataclass


@dataclass
class SubprocessResult:
    """Result from subprocess execution (mirrors subprocess.CompletedProcess)"""
    returncode: int
    stdout: str
    stderr: str
    args: List[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def run_async(
    cmd: List[str],
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
    check: bool = False
) -> SubprocessResult:
    """
    Async replacement for subprocess.run()

    Args:
        cmd: Command and arguments as list
        timeout: Optional timeout in seconds
        cwd: Working directory
        env: Environment variables
        check: Raise exception on non-zero exit code

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        asyncio.TimeoutError: If timeout is exceeded
        RuntimeError: If check=True and returncode != 0, or the command cannot be started
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env
        )
    except OSError as e:
        raise RuntimeError(f"Subprocess execution failed: {e}") from e

    try:
        if timeout:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout
            )
        else:
            stdout_bytes, stderr_bytes = await process.communicate()
    except asyncio.TimeoutError:
        # Kill process on timeout
        process.kill()
        await process.wait()
        raise

    stdout = stdout_bytes.decode('utf-8', errors='replace') if stdout_bytes else ""
    stderr = stderr_bytes.decode('utf-8', errors='replace') if stderr_bytes else ""

    result = SubprocessResult(
        returncode=process.returncode,
        stdout=stdout,
        stderr=stderr,
        args=cmd
    )

    if check and result.returncode != 0:
        raise RuntimeError(
            f"Command {' '.join(cmd)} failed with exit code {result.returncode}: {stderr}"
        )

    return result
