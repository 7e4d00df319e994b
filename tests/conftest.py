"""Shared fixtures: a scripted stand-in for the p4 and hg binaries."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import pytest

from p4hg_migrate.config.config import MappingConfig
from p4hg_migrate.mercurial import MercurialClient
from p4hg_migrate.perforce import PerforceClient
from p4hg_migrate.process import ProcessResult

TOKEN = 'A' * 32


@dataclass
class RunCall:
    """One recorded command invocation."""

    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    prompt: Optional[str] = None
    input: Optional[str] = None
    capture: bool = False

    @property
    def binary(self) -> str:
        return self.args[0]

    @property
    def subcommand(self) -> str:
        args = self.args[1:]
        if args[:1] == ['-F']:
            args = args[2:]
        return args[0]


class FakeRunner:
    """Records invocations and answers them through ``handler``."""

    def __init__(
        self,
        handler: Optional[Callable[[RunCall], ProcessResult]] = None,
        yielding: bool = False,
    ):
        self.handler = handler or (lambda call: ProcessResult(returncode=0))
        self.yielding = yielding
        self.calls: List[RunCall] = []

    async def run(
        self,
        args,
        cwd=None,
        env=None,
        prompt=None,
        input=None,
        capture=False,
    ) -> ProcessResult:
        call = RunCall(
            args=list(args),
            cwd=cwd,
            env=dict(env or {}),
            prompt=prompt,
            input=input,
            capture=capture,
        )
        self.calls.append(call)
        if self.yielding:
            await asyncio.sleep(0)
        result = self.handler(call)
        if isinstance(result, Exception):
            raise result
        return result

    def subcommands(self, binary: Optional[str] = None) -> List[str]:
        return [
            call.subcommand
            for call in self.calls
            if binary is None or call.binary == binary
        ]


@dataclass
class DepotChange:
    """A change known to the simulated depot."""

    change: int
    user: str = 'jdoe'
    date: datetime = datetime(2018, 3, 4, 5, 6, 7)
    description: str = 'Some change'
    files: Dict[str, int] = field(default_factory=dict)


@dataclass
class TicketServer:
    """Tickets the depot currently accepts, shared by all clients of one user."""

    tickets: Set[str] = field(default_factory=set)


class FakeTools:
    """Simulates a Perforce server and a Mercurial working copy.

    Syncing a change writes its files into the working directory and marks
    them as unknown to Mercurial until the next commit.
    """

    def __init__(
        self,
        work_dir: Path,
        token: str = TOKEN,
        server: Optional[TicketServer] = None,
        yielding: bool = False,
    ):
        work_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir = work_dir
        self.token = token
        self.server = server or TicketServer()
        self.depot: Dict[int, DepotChange] = {}
        self.commits: List[Dict[str, str]] = []
        self.unknown: List[str] = []
        self.large: List[str] = []
        self.pushes = 0
        self.failures: Dict[str, int] = {}
        self.runner = FakeRunner(self.handle, yielding=yielding)

    def add_change(self, change: int, **kwargs) -> DepotChange:
        kwargs.setdefault('files', {f'file{change}.txt': 10})
        depot_change = DepotChange(change=change, **kwargs)
        self.depot[change] = depot_change
        return depot_change

    def fail(self, subcommand: str, exit_code: int = 1) -> None:
        self.failures[subcommand] = exit_code

    def handle(self, call: RunCall) -> ProcessResult:
        if call.subcommand in self.failures:
            return ProcessResult(returncode=self.failures[call.subcommand])

        if call.binary == 'p4':
            return self._handle_p4(call)
        return self._handle_hg(call)

    def _handle_p4(self, call: RunCall) -> ProcessResult:
        subcommand = call.subcommand
        if subcommand == 'login':
            self.server.tickets.add(self.token)
            return ProcessResult(returncode=0, stdout=f'{self.token}\n')
        if subcommand == 'logout':
            self.server.tickets.discard(call.env['P4PASSWD'])
            return ProcessResult(returncode=0)
        if call.env.get('P4PASSWD') not in self.server.tickets:
            return ProcessResult(returncode=1)
        if subcommand == 'changes':
            since = int(call.args[call.args.index('-e') + 1])
            lines = [f'Change {c}' for c in sorted(self.depot, reverse=True) if c >= since]
            return ProcessResult(returncode=0, stdout='\n'.join(lines) + '\n')
        if subcommand == 'change':
            change = self.depot[int(call.args[-1])]
            description = ''.join(
                f'\t{line}\n' for line in change.description.split('\n')
            )
            stdout = (
                f'Change:\t{change.change}\n\n'
                f'Date:\t{change.date:%Y/%m/%d %H:%M:%S}\n\n'
                f'Client:\tmirror\n\n'
                f'User:\t{change.user}\n\n'
                f'Status:\tsubmitted\n\n'
                f'Description:\n{description}'
            )
            return ProcessResult(returncode=0, stdout=stdout)
        if subcommand == 'sync':
            change = self.depot[int(call.args[-1].rsplit('@', 1)[1])]
            for name, size in change.files.items():
                (self.work_dir / name).write_bytes(b'x' * size)
                self.unknown.append(name)
        return ProcessResult(returncode=0)

    def _handle_hg(self, call: RunCall) -> ProcessResult:
        subcommand = call.subcommand
        if subcommand == 'log':
            first_line = self.commits[-1]['message'].split('\n')[0] if self.commits else ''
            return ProcessResult(returncode=0, stdout=first_line)
        if subcommand == 'status':
            return ProcessResult(returncode=0, stdout=''.join(f'{n}\n' for n in self.unknown))
        if subcommand == 'add':
            self.large.append(call.args[-1])
        if subcommand == 'commit':
            args = call.args
            self.commits.append(
                {
                    'message': args[args.index('--message') + 1],
                    'date': args[args.index('--date') + 1],
                    'user': args[args.index('--user') + 1],
                }
            )
            self.unknown = []
        if subcommand == 'push':
            self.pushes += 1
        return ProcessResult(returncode=0)

    def client_factory(self, mapping: MappingConfig):
        perforce = PerforceClient(
            command='p4',
            work_dir=str(self.work_dir),
            client='mirror',
            port='perforce:1666',
            user='mirror',
            password='secret',
            ignore='.p4ignore',
            runner=self.runner,
        )
        mercurial = MercurialClient(
            command='hg', work_dir=str(self.work_dir), runner=self.runner
        )
        return perforce, mercurial


@pytest.fixture
def tools(tmp_path):
    return FakeTools(tmp_path)


@pytest.fixture
def mapping(tmp_path):
    return MappingConfig(
        depot_directory='//depot/project',
        bookmark='master',
        local_directory=str(tmp_path),
    )
