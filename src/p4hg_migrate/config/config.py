"""Configuration management for the Perforce to Mercurial migration."""

from typing import Optional, Dict, Any, List
from pathlib import Path
import os

from pydantic import BaseModel, Field, validator
import yaml
from dotenv import load_dotenv

LARGE_FILE_THRESHOLD = 10 * 1024 * 1024
SIMILARITY = 80


class PerforceConfig(BaseModel):
    """Connection settings for the Perforce server."""

    command: str = Field(default='p4', description='Path to the p4 binary')
    work_dir: str = Field(..., description='Root of the client workspace')
    client: str = Field(..., description='Client workspace name (P4CLIENT)')
    port: str = Field(..., description='Server address (P4PORT)')
    user: str = Field(..., description='Perforce user (P4USER)')
    password: str = Field(..., description='Perforce password')
    ignore: str = Field(
        default='.p4ignore', description='Ignore file used by p4 clean (P4IGNORE)'
    )
    timeout: Optional[int] = Field(
        default=None, description='Command timeout in seconds (no limit if unset)'
    )

    @validator('command', 'work_dir', 'client', 'port', 'user')
    def validate_not_empty(cls, v):
        """Validate required strings are not blank."""
        if not v or not v.strip():
            raise ValueError('Value must not be empty')
        return v

    @validator('timeout')
    def validate_timeout(cls, v):
        """Validate timeout is positive."""
        if v is not None and v <= 0:
            raise ValueError('Timeout must be positive')
        return v


class MercurialConfig(BaseModel):
    """Mercurial settings."""

    command: str = Field(default='hg', description='Path to the hg binary')
    timeout: Optional[int] = Field(
        default=None, description='Command timeout in seconds (no limit if unset)'
    )

    @validator('timeout')
    def validate_timeout(cls, v):
        """Validate timeout is positive."""
        if v is not None and v <= 0:
            raise ValueError('Timeout must be positive')
        return v


class MappingConfig(BaseModel):
    """A depot directory mirrored into a bookmark of a local repository."""

    depot_directory: str = Field(..., description='Depot path, e.g. //depot/project/')
    bookmark: str = Field(..., description='Target bookmark')
    local_directory: str = Field(..., description='Local Mercurial working copy')

    class Config:
        """Pydantic configuration."""

        frozen = True

    @validator('depot_directory')
    def validate_depot_directory(cls, v):
        """Validate depot path format and end it with a single slash.

        Commands append ``...`` directly, so ``//depot/project/`` limits
        them to that directory and excludes ``//depot/project2/``.
        """
        if not v.startswith('//') or not v.strip('/'):
            raise ValueError('Depot directory must start with // and name a directory')
        return v.rstrip('/') + '/'

    @validator('bookmark', 'local_directory')
    def validate_not_empty(cls, v):
        """Validate required strings are not blank."""
        if not v or not v.strip():
            raise ValueError('Value must not be empty')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')

    @validator('level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for the migration."""

    update_interval: int = Field(
        default=60, description='Seconds between the start of two cycles'
    )
    batch_size: int = Field(
        default=10, description='Maximum changes migrated per mapping and cycle'
    )
    max_workers: int = Field(
        default=1, description='Mappings processed concurrently'
    )
    large_file_threshold: int = Field(
        default=LARGE_FILE_THRESHOLD,
        description='Size in bytes from which new files are added as largefiles',
    )
    similarity: int = Field(
        default=SIMILARITY, description='Rename detection similarity in percent'
    )
    perforce: PerforceConfig = Field(..., description='Perforce settings')
    mercurial: MercurialConfig = Field(
        default_factory=MercurialConfig, description='Mercurial settings'
    )
    mappings: List[MappingConfig] = Field(..., description='Mirrored directories')
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    class Config:
        """Pydantic configuration."""

        extra = 'forbid'  # Don't allow extra fields

    @validator('update_interval', 'batch_size', 'max_workers', 'large_file_threshold')
    def validate_positive(cls, v):
        """Validate counters and sizes are positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @validator('similarity')
    def validate_similarity(cls, v):
        """Validate similarity is a percentage."""
        if not 0 <= v <= 100:
            raise ValueError('Similarity must be between 0 and 100')
        return v

    @validator('mappings')
    def validate_mappings(cls, v):
        """Validate at least one mapping exists and working copies are unique."""
        if not v:
            raise ValueError('At least one mapping must be configured')

        directories = [mapping.local_directory for mapping in v]
        if len(set(directories)) != len(directories):
            raise ValueError('Mappings must not share a local directory')
        return v

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file.

        ``P4HG_PERFORCE_PASSWORD`` overrides the password from the file.
        """
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        load_dotenv()
        password = os.getenv('P4HG_PERFORCE_PASSWORD')
        if password and isinstance(config_data.get('perforce'), dict):
            config_data['perforce']['password'] = password

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration with a single mapping from environment variables."""
        # Load .env file if it exists
        load_dotenv()

        config_data = {
            'update_interval': _int_env('P4HG_UPDATE_INTERVAL'),
            'batch_size': _int_env('P4HG_BATCH_SIZE'),
            'max_workers': _int_env('P4HG_MAX_WORKERS'),
            'perforce': {
                'command': os.getenv('P4HG_PERFORCE_COMMAND'),
                'work_dir': os.getenv('P4HG_PERFORCE_WORK_DIR'),
                'client': os.getenv('P4HG_PERFORCE_CLIENT'),
                'port': os.getenv('P4HG_PERFORCE_PORT'),
                'user': os.getenv('P4HG_PERFORCE_USER'),
                'password': os.getenv('P4HG_PERFORCE_PASSWORD'),
                'ignore': os.getenv('P4HG_PERFORCE_IGNORE'),
            },
            'mercurial': {
                'command': os.getenv('P4HG_MERCURIAL_COMMAND'),
            },
            'mappings': [
                {
                    'depot_directory': os.getenv('P4HG_DEPOT_DIRECTORY'),
                    'bookmark': os.getenv('P4HG_BOOKMARK'),
                    'local_directory': os.getenv('P4HG_LOCAL_DIRECTORY'),
                }
            ],
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Any) -> Any:
        """Recursively remove None values from dictionaries and lists."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        if isinstance(data, list):
            return [Config._remove_none_values(item) for item in data]
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.dict(), f, default_flow_style=False, indent=2, sort_keys=False
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config: Dict[str, Any] = {
            'update_interval': 60,
            'batch_size': 10,
            'max_workers': 1,
            'large_file_threshold': LARGE_FILE_THRESHOLD,
            'similarity': SIMILARITY,
            'perforce': {
                'command': 'p4',
                'work_dir': '/srv/p4/workspace',
                'client': 'mirror-workspace',
                'port': 'ssl:perforce.example.com:1666',
                'user': 'mirror',
                'password': 'your-perforce-password',
                'ignore': '.p4ignore',
            },
            'mercurial': {
                'command': 'hg',
            },
            'mappings': [
                {
                    'depot_directory': '//depot/project/',
                    'bookmark': 'master',
                    'local_directory': '/srv/p4/workspace/project',
                }
            ],
            'logging': {
                'level': 'INFO',
                'file': 'p4hg-migrate.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )


def _int_env(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value is not None else None
