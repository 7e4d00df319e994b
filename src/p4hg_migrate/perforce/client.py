"""Perforce command line client."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from loguru import logger

from ..exceptions import (
    ChangeParseError,
    DateParseError,
    ExitError,
    IncorrectChangeError,
    LoginFailedError,
    MigrationError,
    NotLoggedInError,
)
from ..process import ProcessResult, ProcessRunner
from .models import Change, Session

PASSWORD_PROMPT = 'Enter password: '
TOKEN_LENGTH = 32
CHANGE_PREFIX = 'Change '
DATE_FORMAT = '%Y/%m/%d %H:%M:%S'


class PerforceClient:
    """Runs ``p4`` commands inside a client workspace.

    Authentication follows the ticket flow: :meth:`login` returns a
    :class:`Session` whose token replaces the password for every later
    command, and :meth:`logout` ends it.
    """

    def __init__(
        self,
        command: str,
        work_dir: str,
        client: str,
        port: str,
        user: str,
        password: str,
        ignore: str,
        runner: Optional[ProcessRunner] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize Perforce client.

        Args:
            command: Path to the ``p4`` binary
            work_dir: Root of the client workspace
            client: Client workspace name (P4CLIENT)
            port: Server address (P4PORT)
            user: Perforce user (P4USER)
            password: Password exchanged for a ticket on login
            ignore: Ignore file honoured by ``p4 clean`` (P4IGNORE)
            runner: Command runner, a new one is created if omitted
            timeout: Per-command timeout in seconds
        """
        self.command = command
        self.work_dir = work_dir
        self.client = client
        self.port = port
        self.user = user
        self.password = password
        self.ignore = ignore
        self.runner = runner or ProcessRunner(timeout=timeout)
        self.logger = logger.bind(component='PerforceClient')

    def __repr__(self) -> str:
        return (
            f'PerforceClient(command={self.command!r}, port={self.port!r}, '
            f'user={self.user!r}, client={self.client!r})'
        )

    async def login(self) -> Session:
        """Exchange the configured password for a ticket.

        Returns:
            Active session

        Raises:
            LoginFailedError: If the server did not return a valid ticket
            ExitError: If ``p4 login`` failed
        """
        self.logger.info(f'Perforce login, user = {self.user}')

        result = await self._execute(
            ['login', '-p'],
            {'P4PORT': self.port, 'P4USER': self.user},
            prompt=PASSWORD_PROMPT,
            input=f'{self.password}\n',
            check=False,
        )

        token = result.stdout.strip()
        if len(token) != TOKEN_LENGTH:
            self.logger.warning('Login failed, no valid ticket received')
            raise LoginFailedError(f'Perforce login failed for user {self.user}')

        self._check(['login', '-p'], result)

        self.logger.debug('Login success')
        return Session(token=token)

    async def logout(self, session: Optional[Session]) -> None:
        """End a session.

        The session is inactive afterwards even if ``p4 logout`` fails.
        Inactive or missing sessions are ignored.
        """
        if session is None or not session.active:
            return

        self.logger.info('Perforce logout')
        session.active = False

        await self._execute(
            ['logout'],
            {'P4PORT': self.port, 'P4USER': self.user, 'P4PASSWD': session.token},
        )
        self.logger.debug('Logout success')

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Log in for the duration of a block and always log out afterwards."""
        session = await self.login()
        try:
            yield session
        except BaseException:
            try:
                await self.logout(session)
            except MigrationError as e:
                self.logger.warning(f'Logout after failure did not succeed: {e}')
            raise
        await self.logout(session)

    async def sync(self, session: Session, directory: str, commit: int) -> None:
        """Sync the workspace below ``directory`` to revision ``commit``."""
        self.logger.info(f'Perforce sync {directory} to @{commit}')
        await self._execute(
            ['sync', '-q', f'{directory}...@{commit}'],
            self._session_env(session),
        )

    async def clean(self, session: Session, directory: str) -> None:
        """Remove files below ``directory`` that are not in the depot."""
        self.logger.info(f'Perforce clean {directory}')
        env = self._session_env(session)
        env['P4IGNORE'] = self.ignore
        await self._execute(['clean', f'{directory}...'], env)

    async def changes(
        self, session: Session, directory: str, commit: int
    ) -> List[int]:
        """List submitted changes below ``directory`` starting at ``commit``.

        Returns:
            Change numbers in ascending order without duplicates
        """
        self.logger.info(f'Perforce changes of {directory} from @{commit}')
        result = await self._execute(
            ['-F', '%change%', 'changes', '-e', str(commit), f'{directory}...'],
            self._session_env(session),
            capture=True,
        )
        changes = parse_changes(result.stdout)
        self.logger.debug(f'Found {len(changes)} changes in {directory}')
        return changes

    async def change(self, session: Session, commit: int) -> Change:
        """Read the change form of ``commit``."""
        self.logger.info(f'Perforce change {commit}')
        result = await self._execute(
            ['change', '-o', str(commit)],
            self._session_env(session),
            capture=True,
        )
        return parse_change(result.stdout, commit)

    def _session_env(self, session: Optional[Session]) -> Dict[str, str]:
        if session is None or not session.active:
            raise NotLoggedInError('Perforce operation requires an active session')

        return {
            'P4CLIENT': self.client,
            'P4PORT': self.port,
            'P4PASSWD': session.token,
            'P4USER': self.user,
        }

    async def _execute(
        self,
        args: List[str],
        env: Dict[str, str],
        prompt: Optional[str] = None,
        input: Optional[str] = None,
        capture: bool = False,
        check: bool = True,
    ) -> ProcessResult:
        result = await self.runner.run(
            [self.command] + args,
            cwd=self.work_dir,
            env=env,
            prompt=prompt,
            input=input,
            capture=capture,
        )
        if check:
            self._check(args, result)
        return result

    def _check(self, args: List[str], result: ProcessResult) -> None:
        if not result.success:
            self.logger.warning(
                f'p4 {args[0]} failed with exit code {result.returncode}'
            )
            raise ExitError(
                f'p4 {args[0]} exited with code {result.returncode}',
                exit_code=result.returncode,
                command=[self.command] + args,
            )


def parse_changes(output: str) -> List[int]:
    """Collect change numbers from ``p4 -F %change% changes`` output.

    Lines that do not start with ``Change `` are ignored.
    """
    changes = set()

    for line in output.splitlines():
        if not line.startswith(CHANGE_PREFIX):
            continue
        value = line[len(CHANGE_PREFIX):].strip()
        try:
            changes.add(int(value))
        except ValueError as e:
            raise ChangeParseError(f'Invalid change number: {value!r}') from e

    return sorted(changes)


def parse_change(output: str, commit: int) -> Change:
    """Parse the form printed by ``p4 change -o``.

    Args:
        output: Command output
        commit: Requested change number, used for error reporting

    Raises:
        IncorrectChangeError: If change, date, user or description is missing
        ChangeParseError: If the change number is malformed
        DateParseError: If the date is malformed
    """
    change = None
    date = None
    user = None
    description = None
    in_description = False

    for line in output.splitlines():
        if line.startswith('\t'):
            if in_description:
                description.append(line[1:])
            continue

        in_description = False

        if line.startswith('Change:'):
            value = line[len('Change:'):].strip()
            try:
                change = int(value)
            except ValueError as e:
                raise ChangeParseError(f'Invalid change number: {value!r}') from e
        elif line.startswith('Date:'):
            value = line[len('Date:'):].strip()
            try:
                date = datetime.strptime(value, DATE_FORMAT)
            except ValueError as e:
                raise DateParseError(f'Invalid change date: {value!r}') from e
        elif line.startswith('User:'):
            user = line[len('User:'):].strip()
        elif line.startswith('Description:'):
            description = []
            in_description = True

    if change is None or date is None or not user or description is None:
        raise IncorrectChangeError(commit)

    return Change(
        change=change,
        date=date,
        user=user,
        description=''.join(f'{line}\n' for line in description),
    )
