"""Tests for the migration orchestrator."""

import pytest

from p4hg_migrate.config.config import MappingConfig
from p4hg_migrate.exceptions import ExitError, LoginFailedError
from p4hg_migrate.migration import MappingStatus, MigrationOrchestrator
from p4hg_migrate.process import ProcessResult

from .conftest import FakeTools, TicketServer

THRESHOLD = 1024


def make_orchestrator(tools, mappings, batch_size=10, **kwargs):
    kwargs.setdefault('update_interval', 60)
    return MigrationOrchestrator(
        mappings=mappings,
        client_factory=tools.client_factory,
        batch_size=batch_size,
        large_file_threshold=THRESHOLD,
        **kwargs,
    )


class TestProcessMapping:
    """Test one migration cycle of one mapping."""

    @pytest.mark.asyncio
    async def test_batch_is_truncated(self, tools, mapping):
        """Test only the first batch_size changes are migrated."""
        for change in (10, 11, 12):
            tools.add_change(change)

        result = await make_orchestrator(tools, [mapping], batch_size=2).process_mapping(
            mapping
        )

        assert [c['message'].split('\n')[0] for c in tools.commits] == [
            'change #10',
            'change #11',
        ]
        assert result.resume_from == 1
        assert result.pending == 3
        assert result.committed == [10, 11]
        assert tools.pushes == 1
        assert result.published
        assert result.status == MappingStatus.MIGRATED

    @pytest.mark.asyncio
    async def test_next_cycle_resumes_after_marker(self, tools, mapping):
        """Test the following cycle starts after the last migrated change."""
        for change in (10, 11, 12):
            tools.add_change(change)
        orchestrator = make_orchestrator(tools, [mapping], batch_size=2)

        await orchestrator.process_mapping(mapping)
        result = await orchestrator.process_mapping(mapping)

        assert result.resume_from == 12
        assert result.committed == [12]
        assert tools.pushes == 2
        changes_calls = [c for c in tools.runner.calls if c.args[1:2] == ['-F']]
        assert changes_calls[-1].args[5] == '12'

    @pytest.mark.asyncio
    async def test_call_sequence(self, tools, mapping):
        """Test the order of operations for one change."""
        tools.add_change(5)

        await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert tools.runner.subcommands() == [
            'login',
            'update',
            'log',
            'changes',
            'change',
            'sync',
            'clean',
            'status',
            'status',
            'addremove',
            'commit',
            'logout',
            'push',
        ]

    @pytest.mark.asyncio
    async def test_commit_metadata(self, tools, mapping):
        """Test author, date and escaped description of the commit."""
        tools.add_change(3, user='émile', description='Café au lait')

        await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        commit = tools.commits[0]
        assert commit['message'] == 'change #3\nCaf\\u{e9} au lait\n'
        assert commit['date'] == '2018-03-04 05:06:07'
        assert commit['user'] == 'émile'
        assert 'addremove' in tools.runner.subcommands('hg')
        addremove = [c for c in tools.runner.calls if c.subcommand == 'addremove'][0]
        assert addremove.args[-1] == '80'

    @pytest.mark.asyncio
    async def test_empty_batch(self, tools, mapping):
        """Test nothing but update and login happen without pending changes."""
        result = await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert tools.runner.subcommands() == [
            'login',
            'update',
            'log',
            'changes',
            'logout',
        ]
        assert result.status == MappingStatus.UP_TO_DATE
        assert not result.published

    @pytest.mark.asyncio
    async def test_change_without_effect(self, tools, mapping):
        """Test changes that leave the working copy clean are skipped."""
        tools.add_change(1, files={})
        tools.add_change(2)

        result = await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert result.processed == [1, 2]
        assert result.committed == [2]
        assert len(tools.commits) == 1
        assert tools.pushes == 1

    @pytest.mark.asyncio
    async def test_no_push_without_commits(self, tools, mapping):
        """Test nothing is pushed when no change had an effect."""
        tools.add_change(1, files={})

        result = await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert tools.commits == []
        assert tools.pushes == 0
        assert 'addremove' not in tools.runner.subcommands()
        assert result.status == MappingStatus.STALLED
        assert result.processed == [1]
        assert not result.published

    @pytest.mark.asyncio
    async def test_stalled_batch_is_retried(self, tools, mapping):
        """Test a batch without commits leaves the resume point unchanged."""
        tools.add_change(1, files={})
        tools.add_change(2, files={})
        orchestrator = make_orchestrator(tools, [mapping], batch_size=2)

        first = await orchestrator.process_mapping(mapping)
        second = await orchestrator.process_mapping(mapping)

        assert first.status == MappingStatus.STALLED
        assert second.status == MappingStatus.STALLED
        assert first.resume_from == second.resume_from == 1
        assert second.processed == [1, 2]

    @pytest.mark.asyncio
    async def test_large_files_skip_status_probe(self, tools, mapping):
        """Test large files are added and the plain status probe is skipped."""
        tools.add_change(
            1, files={'video.bin': THRESHOLD, 'small.txt': THRESHOLD - 1}
        )

        await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert tools.large == ['video.bin']
        hg = tools.runner.subcommands('hg')
        assert hg.count('status') == 1
        assert hg.index('add') < hg.index('addremove') < hg.index('commit')

    @pytest.mark.asyncio
    async def test_login_failure(self, tools, mapping):
        """Test a short ticket aborts before any other command."""
        tools.token = 'A' * 31
        tools.add_change(1)

        with pytest.raises(LoginFailedError):
            await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        assert tools.runner.subcommands() == ['login']

    @pytest.mark.asyncio
    async def test_logout_after_mid_batch_failure(self, tools, mapping):
        """Test the session is released when a change fails."""
        tools.add_change(1)
        tools.add_change(2)
        calls = {'count': 0}
        handle = tools.handle

        def fail_second_commit(call):
            if call.subcommand == 'commit':
                calls['count'] += 1
                if calls['count'] == 2:
                    return ProcessResult(returncode=1)
            return handle(call)

        tools.runner.handler = fail_second_commit

        with pytest.raises(ExitError):
            await make_orchestrator(tools, [mapping]).process_mapping(mapping)

        subcommands = tools.runner.subcommands()
        assert subcommands[-1] == 'logout'
        assert 'push' not in subcommands
        assert len(tools.commits) == 1


class TestRunCycle:
    """Test processing all mappings."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, tmp_path):
        """Test a failing mapping does not stop the others."""
        failing = FakeTools(tmp_path)
        failing.fail('update')
        working = FakeTools(tmp_path)
        working.add_change(1)
        tools_by_bookmark = {'broken': failing, 'master': working}
        mappings = [
            MappingConfig(
                depot_directory='//depot/broken',
                bookmark='broken',
                local_directory=str(tmp_path / 'broken'),
            ),
            MappingConfig(
                depot_directory='//depot/project',
                bookmark='master',
                local_directory=str(tmp_path / 'project'),
            ),
        ]
        orchestrator = MigrationOrchestrator(
            mappings=mappings,
            client_factory=lambda m: tools_by_bookmark[m.bookmark].client_factory(m),
            batch_size=10,
            update_interval=60,
        )

        summary = await orchestrator.run_cycle()

        assert [r.status for r in summary.results] == [
            MappingStatus.FAILED,
            MappingStatus.MIGRATED,
        ]
        assert 'ExitError' in summary.results[0].error_message
        assert summary.failed == 1
        assert summary.commits == 1
        assert failing.runner.subcommands() == ['login', 'update', 'logout']

    @pytest.mark.asyncio
    async def test_mappings_in_order(self, tools, tmp_path):
        """Test mappings are processed in configured order."""
        mappings = [
            MappingConfig(
                depot_directory=f'//depot/p{i}',
                bookmark='master',
                local_directory=str(tmp_path / f'p{i}'),
            )
            for i in range(3)
        ]

        summary = await make_orchestrator(tools, mappings).run_cycle()

        assert [r.depot_directory for r in summary.results] == [
            '//depot/p0/',
            '//depot/p1/',
            '//depot/p2/',
        ]
        changes_calls = [c for c in tools.runner.calls if c.subcommand == 'changes']
        assert [c.args[-1] for c in changes_calls] == [
            '//depot/p0/...',
            '//depot/p1/...',
            '//depot/p2/...',
        ]

    @pytest.mark.asyncio
    async def test_concurrent_workers(self, tools, tmp_path):
        """Test results keep configured order with several workers."""
        mappings = [
            MappingConfig(
                depot_directory=f'//depot/p{i}',
                bookmark='master',
                local_directory=str(tmp_path / f'p{i}'),
            )
            for i in range(4)
        ]

        summary = await make_orchestrator(tools, mappings, max_workers=2).run_cycle()

        assert [r.depot_directory for r in summary.results] == [
            m.depot_directory for m in mappings
        ]
        assert summary.failed == 0

    @pytest.mark.asyncio
    async def test_concurrent_mappings_share_one_login(self, tmp_path):
        """Test a mapping finishing early does not revoke the ticket of others."""
        server = TicketServer()
        idle = FakeTools(tmp_path / 'idle', server=server, yielding=True)
        busy = FakeTools(tmp_path / 'busy', server=server, yielding=True)
        for change in (1, 2, 3):
            busy.add_change(change)
        tools_by_bookmark = {'idle': idle, 'busy': busy}
        mappings = [
            MappingConfig(
                depot_directory=f'//depot/{name}',
                bookmark=name,
                local_directory=str(tmp_path / name),
            )
            for name in ('idle', 'busy')
        ]
        orchestrator = MigrationOrchestrator(
            mappings=mappings,
            client_factory=lambda m: tools_by_bookmark[m.bookmark].client_factory(m),
            batch_size=10,
            update_interval=60,
            max_workers=2,
        )

        summary = await orchestrator.run_cycle()

        assert summary.failed == 0
        assert [r.status for r in summary.results] == [
            MappingStatus.UP_TO_DATE,
            MappingStatus.MIGRATED,
        ]
        assert summary.results[1].committed == [1, 2, 3]
        assert idle.runner.subcommands('p4') == ['login', 'changes', 'logout']
        assert 'login' not in busy.runner.subcommands()
        assert 'logout' not in busy.runner.subcommands()
        assert server.tickets == set()

    @pytest.mark.asyncio
    async def test_shared_login_failure_fails_every_mapping(self, tools, tmp_path):
        """Test a failed shared login is reported for each mapping."""
        tools.token = 'A' * 31
        mappings = [
            MappingConfig(
                depot_directory=f'//depot/p{i}',
                bookmark='master',
                local_directory=str(tmp_path / f'p{i}'),
            )
            for i in range(2)
        ]

        summary = await make_orchestrator(tools, mappings, max_workers=2).run_cycle()

        assert summary.failed == 2
        assert all('LoginFailedError' in r.error_message for r in summary.results)
        assert tools.runner.subcommands() == ['login']


class FakeClock:
    """Clock advanced by the simulated work."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


class TestRunForever:
    """Test pacing of the migration loop."""

    @pytest.mark.asyncio
    async def test_sleeps_remaining_interval(self, tools, mapping):
        """Test the loop waits out the rest of the interval."""
        clock = FakeClock()
        handle = tools.handle

        def slow_handle(call):
            clock.now += 1.0
            return handle(call)

        tools.runner.handler = slow_handle
        orchestrator = make_orchestrator(
            tools, [mapping], update_interval=60, sleep=clock.sleep, clock=clock
        )

        summary = await orchestrator.run_forever(max_cycles=3)

        assert summary.elapsed == 5.0
        assert clock.sleeps == [55.0, 55.0]

    @pytest.mark.asyncio
    async def test_no_sleep_after_overrun(self, tools, mapping):
        """Test a cycle longer than the interval is followed immediately."""
        clock = FakeClock()
        handle = tools.handle

        def slow_handle(call):
            clock.now += 30.0
            return handle(call)

        tools.runner.handler = slow_handle
        orchestrator = make_orchestrator(
            tools, [mapping], update_interval=60, sleep=clock.sleep, clock=clock
        )

        await orchestrator.run_forever(max_cycles=2)

        assert clock.sleeps == []
        assert tools.runner.subcommands().count('login') == 2

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_loop(self, tools, mapping):
        """Test the loop keeps running when every cycle fails."""
        clock = FakeClock()
        tools.fail('login')
        orchestrator = make_orchestrator(
            tools, [mapping], sleep=clock.sleep, clock=clock
        )

        summary = await orchestrator.run_forever(max_cycles=3)

        assert summary.failed == 1
        assert tools.runner.subcommands() == ['login', 'login', 'login']
