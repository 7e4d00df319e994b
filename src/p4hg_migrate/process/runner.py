"""Execution of external commands for the Perforce and Mercurial clients."""

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from loguru import logger

from ..exceptions import (
    CommunicationError,
    ExecutionError,
    IoError,
    ProcessTimeoutError,
)


@dataclass
class ProcessResult:
    """Result of an external command."""

    returncode: int
    stdout: str = ''

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ProcessRunner:
    """Spawns external commands with a cleared environment.

    Every call starts one child process and waits for it to exit before
    returning. Only the variables passed in ``env`` (plus ``PATH`` so the
    binary can be located) are visible to the child.
    """

    def __init__(self, timeout: Optional[float] = None):
        """Initialize process runner.

        Args:
            timeout: Seconds to wait for a command before killing it.
                ``None`` waits forever.
        """
        self.timeout = timeout
        self.logger = logger.bind(component='ProcessRunner')

    async def run(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        prompt: Optional[str] = None,
        input: Optional[str] = None,
        capture: bool = False,
    ) -> ProcessResult:
        """Run a command to completion.

        Args:
            args: Argument vector, binary first
            cwd: Working directory of the child
            env: Environment variables of the child
            prompt: Literal the child must print before ``input`` is sent
            input: Text written to the child's stdin
            capture: Whether stdout is collected

        Returns:
            Exit code and captured output

        Raises:
            ExecutionError: If the command could not be spawned
            CommunicationError: If talking to the child failed
            IoError: If waiting for the child failed or timed out
        """
        args = [str(arg) for arg in args]
        child_env = dict(env or {})
        child_env.setdefault('PATH', os.environ.get('PATH', os.defpath))

        self.logger.debug(f'Executing command: {" ".join(args)} (cwd={cwd})')

        capture = capture or prompt is not None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                env=child_env,
                stdin=asyncio.subprocess.PIPE
                if input is not None
                else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE
                if capture
                else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise ExecutionError(f'Failed to execute {args[0]}: {e}', args) from e

        try:
            stdout = await asyncio.wait_for(
                self._communicate(process, args, prompt, input),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise ProcessTimeoutError(
                f'Command {args[0]} timed out after {self.timeout} seconds', args
            ) from e
        except (CommunicationError, IoError):
            await self._kill(process)
            raise

        self.logger.debug(f'Command {args[0]} exited with {process.returncode}')
        return ProcessResult(returncode=process.returncode, stdout=stdout)

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        args: Sequence[str],
        prompt: Optional[str],
        input: Optional[str],
    ) -> str:
        output = b''

        try:
            if prompt is not None:
                expected = prompt.encode('utf-8')
                received = await process.stdout.readexactly(len(expected))
                if received != expected:
                    raise CommunicationError(
                        f'Unexpected prompt from {args[0]}: {received!r}', args
                    )

            if input is not None:
                process.stdin.write(input.encode('utf-8'))
                await process.stdin.drain()
                process.stdin.close()

            if process.stdout is not None:
                output = await process.stdout.read()
        except (OSError, asyncio.IncompleteReadError) as e:
            raise CommunicationError(
                f'Communication with {args[0]} failed: {e}', args
            ) from e

        try:
            await process.wait()
        except OSError as e:
            raise IoError(f'Waiting for {args[0]} failed: {e}', args) from e

        return output.decode('utf-8', errors='replace')

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
