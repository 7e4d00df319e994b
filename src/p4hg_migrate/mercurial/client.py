"""Mercurial command line client."""

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .. import marker
from ..exceptions import DateFormatError, ExitError, ReadMetadataError
from ..process import ProcessResult, ProcessRunner

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class MercurialClient:
    """Runs ``hg`` commands in one local working copy."""

    def __init__(
        self,
        command: str,
        work_dir: str,
        runner: Optional[ProcessRunner] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize Mercurial client.

        Args:
            command: Path to the ``hg`` binary
            work_dir: Root of the working copy
            runner: Command runner, a new one is created if omitted
            timeout: Per-command timeout in seconds
        """
        self.command = command
        self.work_dir = work_dir
        self.runner = runner or ProcessRunner(timeout=timeout)
        self.logger = logger.bind(component='MercurialClient')

    async def update(self, revision: str) -> None:
        """Update the working copy to ``revision``."""
        self.logger.info(f'Mercurial update, revision = {revision}')
        await self._execute(['update', '--rev', revision])

    async def last_commit(self, revision: str) -> Optional[int]:
        """Return the change number recorded in the message of ``revision``.

        Returns:
            Change number, or None if the commit carries no change marker

        Raises:
            ChangeParseError: If the marker is malformed
        """
        self.logger.info(f'Mercurial last commit, revision = {revision}')
        result = await self._execute(
            ['log', '--rev', revision, '--template', '{desc|firstline}'],
            capture=True,
        )
        return marker.decode(result.stdout)

    async def get_large_files(self, min_size: int) -> List[str]:
        """List unknown files of at least ``min_size`` bytes.

        Raises:
            ReadMetadataError: If a file could not be inspected
        """
        self.logger.info(f'Mercurial large files, min_size = {min_size}')
        large_files = []

        for path in await self._list_files(['status', '--no-status', '--unknown']):
            try:
                size = (Path(self.work_dir) / path).stat().st_size
            except OSError as e:
                raise ReadMetadataError(
                    f'Cannot read metadata of {path}: {e}', path=path
                ) from e

            if size >= min_size:
                self.logger.debug(f'Found large file {path}, size = {size}')
                large_files.append(path)

        return large_files

    async def add_large(self, path: str) -> None:
        """Track ``path`` with the largefiles extension."""
        self.logger.info(f'Mercurial add large, path = {path}')
        await self._execute(['add', '--large', path])

    async def status(self) -> List[str]:
        """List changed files of the working copy."""
        self.logger.info('Mercurial status')
        return await self._list_files(['status', '--no-status'])

    async def addremove(self, similarity: int) -> None:
        """Add new files and remove missing ones, detecting renames."""
        if not 0 <= similarity <= 100:
            raise ValueError(f'Similarity must be between 0 and 100: {similarity}')

        self.logger.info(f'Mercurial addremove, similarity = {similarity}')
        await self._execute(['addremove', '--similarity', str(similarity)])

    async def commit(self, message: str, date: datetime, user: str) -> None:
        """Commit the working copy on behalf of ``user`` at ``date``."""
        try:
            formatted_date = date.strftime(DATE_FORMAT)
        except (AttributeError, ValueError) as e:
            raise DateFormatError(f'Cannot format commit date {date!r}: {e}') from e

        self.logger.info(f'Mercurial commit, user = {user}')
        await self._execute(
            [
                'commit',
                '--message',
                message,
                '--date',
                formatted_date,
                '--user',
                user,
            ]
        )

    async def push(self) -> None:
        """Push committed changesets to the default path."""
        self.logger.info('Mercurial push')
        await self._execute(['push'])

    async def _list_files(self, args: List[str]) -> List[str]:
        result = await self._execute(args, capture=True)
        return [line for line in result.stdout.splitlines() if line]

    async def _execute(self, args: List[str], capture: bool = False) -> ProcessResult:
        result = await self.runner.run(
            [self.command] + args,
            cwd=self.work_dir,
            env={},
            capture=capture,
        )

        if not result.success:
            self.logger.warning(
                f'hg {args[0]} failed with exit code {result.returncode}'
            )
            raise ExitError(
                f'hg {args[0]} exited with code {result.returncode}',
                exit_code=result.returncode,
                command=[self.command] + args,
            )

        return result
