"""Configuration loading."""

from .config import (
    Config,
    LoggingConfig,
    MappingConfig,
    MercurialConfig,
    PerforceConfig,
)

__all__ = [
    'Config',
    'LoggingConfig',
    'MappingConfig',
    'MercurialConfig',
    'PerforceConfig',
]
