"""Migration engine and orchestrator."""

from .orchestrator import (
    CycleSummary,
    MappingResult,
    MappingStatus,
    MigrationOrchestrator,
)
from .engine import MappingState, MigrationEngine

__all__ = [
    'CycleSummary',
    'MappingResult',
    'MappingStatus',
    'MigrationOrchestrator',
    'MappingState',
    'MigrationEngine',
]
