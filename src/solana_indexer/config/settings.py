"""
Settings and configuration management for the Solana indexer.
Loads configuration from a YAML file and environment variables.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class DatabaseConfig:
    """Application store (connections, configs, audit log) settings."""
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle_hours: int = 1
    connection_timeout_seconds: int = 30
    echo: bool = False


@dataclass
class TargetPoolConfig:
    """Settings for pooled connections into user-owned target databases."""
    pool_size: int = 2
    max_overflow: int = 3
    pool_timeout_seconds: int = 10
    idle_lifetime_seconds: int = 300
    connection_timeout_seconds: int = 10
    probe_timeout_seconds: int = 5


@dataclass
class HeliusConfig:
    """Helius webhook API settings."""
    base_url: str = "https://api.helius.xyz/v0"
    webhook_type: str = "enhanced"
    timeout_seconds: int = 30
    max_retries: int = 3
    auth_header: str = ""


@dataclass
class WebhookConfig:
    """Public callback settings for webhook delivery."""
    base_url: str = "http://localhost:8000"
    path_template: str = "/api/webhook/{owner_id}"


@dataclass
class QueryConfig:
    """Ad-hoc read query settings."""
    max_rows: int = 1000
    statement_timeout_seconds: int = 15


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    sql_echo: bool = False


class Settings:
    """Main settings class that loads and manages all configuration."""

    def __init__(self, config_path: Optional[str] = None, config_data: Optional[Dict[str, Any]] = None):
        """Initialize settings.

        Args:
            config_path: Path to YAML configuration file. If None, uses default path.
            config_data: Pre-parsed configuration, skips file loading when given.
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config_data: Dict[str, Any] = {}
        if config_data is not None:
            self.config_data = config_data
        else:
            self.load_config()

        self.database = self._load_database_config()
        self.target_pool = self._load_target_pool_config()
        self.helius = self._load_helius_config()
        self.webhook = self._load_webhook_config()
        self.query = self._load_query_config()
        self.logging = self._load_logging_config()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path."""
        env_path = os.getenv('INDEXER_CONFIG_PATH')
        if env_path:
            return env_path

        possible_paths = [
            "/app/config/indexer_config.yaml",  # Docker path
            "config/indexer_config.yaml",       # Relative path
            os.path.join(os.path.dirname(__file__), "..", "..", "..", "config", "indexer_config.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return possible_paths[0]

    def load_config(self):
        """Load configuration from YAML file."""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r') as file:
                    self.config_data = yaml.safe_load(file) or {}
                logger.debug(f"Loaded configuration from {self.config_path}")
            else:
                logger.warning(f"Configuration file not found at {self.config_path}, using defaults")
                self.config_data = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load configuration from {self.config_path}: {e}")
            self.config_data = {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Args:
            key: Configuration key (supports dot notation like 'database.pool_size')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        env_key = key.upper().replace('.', '_')
        env_value = os.getenv(env_key)
        if env_value is not None:
            if isinstance(default, bool):
                return env_value.lower() in ('true', '1', 'yes', 'on')
            elif isinstance(default, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass
            elif isinstance(default, float):
                try:
                    return float(env_value)
                except ValueError:
                    pass
            return env_value

        keys = key.split('.')
        value = self.config_data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def _load_database_config(self) -> DatabaseConfig:
        """Load application store configuration."""
        return DatabaseConfig(
            pool_size=self.get('database.pool_size', 10),
            max_overflow=self.get('database.max_overflow', 20),
            pool_recycle_hours=self.get('database.pool_recycle_hours', 1),
            connection_timeout_seconds=self.get('database.connection_timeout_seconds', 30),
            echo=self.get('database.echo', False)
        )

    def _load_target_pool_config(self) -> TargetPoolConfig:
        """Load target pool configuration."""
        probe_timeout = self.get('target_pool.probe_timeout_seconds', 5)
        return TargetPoolConfig(
            pool_size=self.get('target_pool.pool_size', 2),
            max_overflow=self.get('target_pool.max_overflow', 3),
            pool_timeout_seconds=self.get('target_pool.pool_timeout_seconds', 10),
            idle_lifetime_seconds=self.get('target_pool.idle_lifetime_seconds', 300),
            connection_timeout_seconds=self.get('target_pool.connection_timeout_seconds', 10),
            # connectivity probes never wait longer than 5 seconds
            probe_timeout_seconds=max(1, min(int(probe_timeout), 5))
        )

    def _load_helius_config(self) -> HeliusConfig:
        """Load Helius configuration."""
        return HeliusConfig(
            base_url=self.get('helius.base_url', "https://api.helius.xyz/v0"),
            webhook_type=self.get('helius.webhook_type', "enhanced"),
            timeout_seconds=self.get('helius.timeout_seconds', 30),
            max_retries=self.get('helius.max_retries', 3),
            auth_header=self.get('helius.auth_header', "")
        )

    def _load_webhook_config(self) -> WebhookConfig:
        """Load webhook callback configuration."""
        base_url = os.getenv('WEBHOOK_BASE_URL') or self.get('webhook.base_url', "http://localhost:8000")
        return WebhookConfig(
            base_url=base_url.rstrip("/"),
            path_template=self.get('webhook.path_template', "/api/webhook/{owner_id}")
        )

    def _load_query_config(self) -> QueryConfig:
        """Load ad-hoc query configuration."""
        return QueryConfig(
            max_rows=self.get('query.max_rows', 1000),
            statement_timeout_seconds=self.get('query.statement_timeout_seconds', 15)
        )

    def _load_logging_config(self) -> LoggingConfig:
        """Load logging configuration."""
        return LoggingConfig(
            level=self.get('logging.level', "INFO"),
            sql_echo=self.get('logging.sql_echo', False)
        )

    # Environment-specific getters

    def get_database_url(self) -> str:
        """Get application store URL from environment variables."""
        url = os.getenv('DATABASE_URL')
        if url:
            return url

        user = os.getenv('POSTGRES_USER', 'indexer')
        password = os.getenv('POSTGRES_PASSWORD', 'indexer_password')
        host = os.getenv('POSTGRES_HOST', 'localhost')
        port = os.getenv('POSTGRES_PORT', '5432')
        database = os.getenv('POSTGRES_DB', 'solana_indexer')

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{database}"

    def get_helius_api_key(self) -> str:
        """Get Helius API key from environment variables."""
        api_key = os.getenv('HELIUS_API_KEY')
        if not api_key:
            raise ValueError("HELIUS_API_KEY must be set in environment variables")
        return api_key

    def callback_url(self, owner_id: int) -> str:
        """Public webhook URL that the provider delivers an owner's batches to."""
        return self.webhook.base_url + self.webhook.path_template.format(owner_id=owner_id)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from configuration file."""
    global _settings
    _settings = Settings()
    logger.info("Settings reloaded")


def configure_logging(settings: Optional[Settings] = None):
    """Configure root logging once at process start."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, str(settings.logging.level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
    if settings.logging.sql_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)
