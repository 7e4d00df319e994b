"""Migration orchestrator for mirroring Perforce changes into Mercurial."""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from ..config.config import LARGE_FILE_THRESHOLD, SIMILARITY, MappingConfig
from ..exceptions import MigrationError
from ..marker import format_change
from ..mercurial import MercurialClient
from ..perforce import PerforceClient, Session

ClientFactory = Callable[[MappingConfig], Tuple[PerforceClient, MercurialClient]]


class MappingStatus(str, Enum):
    """Outcome of one mapping in one cycle."""

    UP_TO_DATE = 'up_to_date'
    MIGRATED = 'migrated'
    # Changes were synced but none altered the working copy, so no marker
    # was written and the next cycle starts from the same change.
    STALLED = 'stalled'
    FAILED = 'failed'


class MappingResult(BaseModel):
    """Result of migrating one mapping in one cycle."""

    depot_directory: str = Field(..., description='Depot directory')
    bookmark: str = Field(..., description='Target bookmark')
    status: MappingStatus = Field(
        default=MappingStatus.UP_TO_DATE, description='Mapping status'
    )

    resume_from: Optional[int] = Field(
        default=None, description='First change number considered'
    )
    pending: int = Field(default=0, description='Changes waiting in the depot')
    processed: List[int] = Field(
        default_factory=list, description='Changes synced this cycle'
    )
    committed: List[int] = Field(
        default_factory=list, description='Changes committed this cycle'
    )
    published: bool = Field(default=False, description='Commits were pushed')

    error_message: Optional[str] = Field(
        default=None, description='Error message if failed'
    )

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def success(self) -> bool:
        return self.status != MappingStatus.FAILED


class CycleSummary(BaseModel):
    """Results of one pass over all mappings."""

    started_at: datetime = Field(..., description='Cycle start time')
    completed_at: datetime = Field(..., description='Cycle completion time')
    elapsed: float = Field(..., description='Processing time in seconds')
    results: List[MappingResult] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def commits(self) -> int:
        return sum(len(result.committed) for result in self.results)


class MigrationOrchestrator:
    """Replays pending Perforce changes of every mapping as Mercurial commits."""

    def __init__(
        self,
        mappings: Sequence[MappingConfig],
        client_factory: ClientFactory,
        batch_size: int,
        update_interval: float,
        max_workers: int = 1,
        large_file_threshold: int = LARGE_FILE_THRESHOLD,
        similarity: int = SIMILARITY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize migration orchestrator.

        Args:
            mappings: Mappings in processing order
            client_factory: Creates the Perforce and Mercurial clients of a mapping
            batch_size: Maximum changes migrated per mapping and cycle
            update_interval: Seconds between the start of two cycles
            max_workers: Mappings processed concurrently
            large_file_threshold: Minimum size in bytes of a largefile
            similarity: Rename detection similarity in percent
            sleep: Coroutine used to wait between cycles
            clock: Monotonic clock used to measure cycles
        """
        self.mappings = list(mappings)
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.update_interval = update_interval
        self.max_workers = max_workers
        self.large_file_threshold = large_file_threshold
        self.similarity = similarity
        self.sleep = sleep
        self.clock = clock
        self.logger = logger.bind(component='MigrationOrchestrator')

    async def run_forever(self, max_cycles: Optional[int] = None) -> Optional[CycleSummary]:
        """Run cycles, waiting out the rest of the update interval after each.

        A cycle that takes longer than the interval is followed immediately
        by the next one.

        Args:
            max_cycles: Stop after this many cycles (run forever if None)

        Returns:
            Summary of the last cycle
        """
        summary = None
        cycles = 0

        while max_cycles is None or cycles < max_cycles:
            self.logger.info(f'Processing batch, batch_size = {self.batch_size}')
            summary = await self.run_cycle()
            cycles += 1

            self.logger.info(
                f'Batch time = {summary.elapsed:.1f}s, '
                f'{summary.commits} commits, {summary.failed} failed mappings'
            )

            if max_cycles is not None and cycles >= max_cycles:
                break

            delay = self.update_interval - summary.elapsed
            if delay > 0:
                self.logger.info(f'Sleeping for {delay:.1f}s')
                await self.sleep(delay)

        return summary

    async def run_cycle(self) -> CycleSummary:
        """Process every mapping once.

        Failures are recorded per mapping and never abort the cycle. With
        more than one worker all mappings share a single depot session,
        since a logout revokes the ticket of every client of the user.
        """
        started_at = datetime.now()
        start = self.clock()

        if self.max_workers > 1:
            results = await self._process_with_shared_session()
        else:
            results = await self._process_all()

        return CycleSummary(
            started_at=started_at,
            completed_at=datetime.now(),
            elapsed=self.clock() - start,
            results=list(results),
        )

    async def _process_all(
        self, session: Optional[Session] = None
    ) -> List[MappingResult]:
        semaphore = asyncio.Semaphore(self.max_workers)

        async def process(mapping: MappingConfig) -> MappingResult:
            async with semaphore:
                return await self._process_isolated(mapping, session)

        return await asyncio.gather(*(process(m) for m in self.mappings))

    async def _process_with_shared_session(self) -> List[MappingResult]:
        perforce, _ = self.client_factory(self.mappings[0])

        try:
            session = await perforce.login()
        except Exception as e:
            results = [self._new_result(mapping) for mapping in self.mappings]
            for mapping, result in zip(self.mappings, results):
                self._record_failure(mapping, result, e)
            return results

        try:
            return await self._process_all(session)
        finally:
            try:
                await perforce.logout(session)
            except MigrationError as e:
                self.logger.warning(f'Logout after cycle did not succeed: {e}')

    async def process_mapping(
        self,
        mapping: MappingConfig,
        result: Optional[MappingResult] = None,
        session: Optional[Session] = None,
    ) -> MappingResult:
        """Migrate the next batch of changes of one mapping.

        Args:
            mapping: Mapping to migrate
            result: Result updated in place as the batch progresses
            session: Depot session owned by the caller. If omitted the
                mapping logs in and out on its own.

        Returns:
            Mapping result

        Raises:
            MigrationError: If any step fails; commits made before the
                failure stay in the repository
        """
        if result is None:
            result = self._new_result(mapping)

        self.logger.info(
            f'Processing mapping, depot_directory = {mapping.depot_directory}'
        )
        perforce, mercurial = self.client_factory(mapping)

        if session is None:
            async with perforce.session() as own_session:
                await self._migrate_batch(
                    perforce, mercurial, own_session, mapping, result
                )
        else:
            await self._migrate_batch(perforce, mercurial, session, mapping, result)

        if result.committed:
            await mercurial.push()
            result.published = True
            result.status = MappingStatus.MIGRATED
        elif result.processed:
            result.status = MappingStatus.STALLED
            self.logger.warning(
                f'None of {len(result.processed)} changes in '
                f'{mapping.depot_directory} altered the working copy, '
                f'next cycle resumes from change {result.resume_from} again'
            )

        return result

    async def _migrate_batch(
        self,
        perforce: PerforceClient,
        mercurial: MercurialClient,
        session: Session,
        mapping: MappingConfig,
        result: MappingResult,
    ) -> None:
        await mercurial.update(mapping.bookmark)

        last_commit = await mercurial.last_commit(mapping.bookmark)
        resume_from = last_commit + 1 if last_commit is not None else 1
        result.resume_from = resume_from

        changes = await perforce.changes(session, mapping.depot_directory, resume_from)
        result.pending = len(changes)

        if not changes:
            self.logger.info(f'No more changes in {mapping.depot_directory}')

        for change_id in changes[: self.batch_size]:
            committed = await self._migrate_change(
                perforce, mercurial, session, mapping, change_id
            )
            result.processed.append(change_id)
            if committed:
                result.committed.append(change_id)

    async def _migrate_change(
        self,
        perforce: PerforceClient,
        mercurial: MercurialClient,
        session: Session,
        mapping: MappingConfig,
        change_id: int,
    ) -> bool:
        """Replay one change; return whether a commit was created."""
        self.logger.info(f'Processing change {change_id}')

        change = await perforce.change(session, change_id)
        message = format_change(change)

        await perforce.sync(session, mapping.depot_directory, change_id)
        await perforce.clean(session, mapping.depot_directory)

        large_files = await mercurial.get_large_files(self.large_file_threshold)
        for large_file in large_files:
            await mercurial.add_large(large_file)

        has_changes = bool(large_files)
        if not has_changes:
            has_changes = bool(await mercurial.status())

        if not has_changes:
            self.logger.info(f'Change {change_id} has no effect on the working copy')
            return False

        await mercurial.addremove(self.similarity)
        await mercurial.commit(message, change.date, change.user)
        return True

    async def _process_isolated(
        self, mapping: MappingConfig, session: Optional[Session] = None
    ) -> MappingResult:
        result = self._new_result(mapping)

        try:
            await self.process_mapping(mapping, result, session)
        except Exception as e:
            self._record_failure(mapping, result, e)
        finally:
            result.completed_at = datetime.now()

        return result

    def _record_failure(
        self, mapping: MappingConfig, result: MappingResult, error: Exception
    ) -> None:
        result.status = MappingStatus.FAILED
        result.error_message = f'{type(error).__name__}: {error}'
        result.completed_at = datetime.now()

        if isinstance(error, MigrationError):
            self.logger.error(
                f'Mapping {mapping.depot_directory} -> {mapping.bookmark} failed: '
                f'{result.error_message}'
            )
        else:
            self.logger.opt(exception=error).error(
                f'Unexpected error in mapping {mapping.depot_directory}'
            )

    @staticmethod
    def _new_result(mapping: MappingConfig) -> MappingResult:
        return MappingResult(
            depot_directory=mapping.depot_directory, bookmark=mapping.bookmark
        )
