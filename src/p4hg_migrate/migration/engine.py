"""Migration engine - main entry point for migration operations."""

import shutil
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from ..config.config import Config, MappingConfig
from ..exceptions import MigrationError
from ..mercurial import MercurialClient
from ..perforce import PerforceClient
from .orchestrator import CycleSummary, MigrationOrchestrator


class MappingState(BaseModel):
    """Last migrated change of a mapping."""

    depot_directory: str = Field(..., description='Depot directory')
    bookmark: str = Field(..., description='Target bookmark')
    local_directory: str = Field(..., description='Local working copy')
    last_change: Optional[int] = Field(
        default=None, description='Last migrated change number'
    )
    error_message: Optional[str] = Field(
        default=None, description='Error message if the lookup failed'
    )


class MigrationEngine:
    """Main migration engine that wires the configuration to the orchestrator."""

    def __init__(self, config: Config):
        """Initialize migration engine.

        Args:
            config: Migration configuration
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        self.orchestrator = MigrationOrchestrator(
            mappings=config.mappings,
            client_factory=self.create_clients,
            batch_size=config.batch_size,
            update_interval=config.update_interval,
            max_workers=config.max_workers,
            large_file_threshold=config.large_file_threshold,
            similarity=config.similarity,
        )

    def create_clients(
        self, mapping: MappingConfig
    ) -> Tuple[PerforceClient, MercurialClient]:
        """Create fresh clients for one mapping."""
        perforce_config = self.config.perforce
        perforce = PerforceClient(
            command=perforce_config.command,
            work_dir=perforce_config.work_dir,
            client=perforce_config.client,
            port=perforce_config.port,
            user=perforce_config.user,
            password=perforce_config.password,
            ignore=perforce_config.ignore,
            timeout=perforce_config.timeout,
        )
        mercurial = self.create_mercurial_client(mapping)
        return perforce, mercurial

    def create_mercurial_client(self, mapping: MappingConfig) -> MercurialClient:
        return MercurialClient(
            command=self.config.mercurial.command,
            work_dir=mapping.local_directory,
            timeout=self.config.mercurial.timeout,
        )

    async def run(self, once: bool = False) -> Optional[CycleSummary]:
        """Mirror changes until interrupted, or for a single cycle.

        Returns:
            Summary of the last cycle
        """
        self.logger.info(
            f'Starting migration of {len(self.config.mappings)} mappings, '
            f'update_interval = {self.config.update_interval}s'
        )
        return await self.orchestrator.run_forever(max_cycles=1 if once else None)

    async def status(self) -> List[MappingState]:
        """Read the last migrated change of every mapping."""
        states = []

        for mapping in self.config.mappings:
            state = MappingState(
                depot_directory=mapping.depot_directory,
                bookmark=mapping.bookmark,
                local_directory=mapping.local_directory,
            )
            try:
                mercurial = self.create_mercurial_client(mapping)
                state.last_change = await mercurial.last_commit(mapping.bookmark)
            except MigrationError as e:
                self.logger.warning(
                    f'Cannot read last change of {mapping.depot_directory}: {e}'
                )
                state.error_message = str(e)
            states.append(state)

        return states

    def validate_environment(self) -> Dict[str, bool]:
        """Check that the configured binaries can be found.

        Returns:
            Dictionary with validation results
        """
        return {
            'p4_available': shutil.which(self.config.perforce.command) is not None,
            'hg_available': shutil.which(self.config.mercurial.command) is not None,
        }
