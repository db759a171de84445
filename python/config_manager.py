"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "vault_user"
    password: str = "vault_password"
    name: str = "vault_reconciliation"
    lock_timeout_ms: int = 5000  # PostgreSQL lock_timeout for vault row locks
    slow_query_ms: float = 1000.0


@dataclass
class ValidationConfig:
    """Thresholds used by the card update validator"""
    low_confidence_threshold: int = 70
    medium_confidence_threshold: int = 85
    fraud_score_threshold: int = 70
    max_recent_failures: int = 3
    acu_minimum_confidence: int = 50


@dataclass
class RiskConfig:
    """Risk scoring weights"""
    flag_weight: int = 15
    high_risk_threshold: int = 70
    expired_card_penalty: int = 20
    failure_rate_threshold: float = 0.3
    failure_rate_penalty: int = 25


@dataclass
class PolicyConfig:
    """Decision table thresholds"""
    max_warnings: int = 2
    review_risk_threshold: int = 50


@dataclass
class BatchConfig:
    """Batch orchestration settings"""
    chunk_size: int = 10
    chunk_delay_seconds: float = 0.1
    max_batch_size: int = 5000
    result_preview_size: int = 10
    max_validation_errors: int = 100
    max_risk_flags: int = 50


@dataclass
class StorageConfig:
    """Vault store backend selection"""
    backend: str = "memory"  # memory, database


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/reconciliation.log"
    audit_directory: str = "logs"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class EngineConfig:
    """Engine version information"""
    version: str = "1.0.0"
    name: str = "Vault Reconciliation Engine"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.validation: ValidationConfig = ValidationConfig()
        self.risk: RiskConfig = RiskConfig()
        self.policy: PolicyConfig = PolicyConfig()
        self.batch: BatchConfig = BatchConfig()
        self.storage: StorageConfig = StorageConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.engine: EngineConfig = EngineConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_validation()
        self._parse_risk()
        self._parse_policy()
        self._parse_batch()
        self._parse_storage()
        self._parse_logging()
        self._parse_engine()
        self._parse_database()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            lock_timeout_ms=cfg.get('lock_timeout_ms', self.database.lock_timeout_ms),
            slow_query_ms=cfg.get('slow_query_ms', self.database.slow_query_ms)
        )

    def _parse_validation(self) -> None:
        """Parse validator thresholds"""
        cfg = self._raw_config.get('validation', {})
        self.validation = ValidationConfig(
            low_confidence_threshold=cfg.get('low_confidence_threshold', 70),
            medium_confidence_threshold=cfg.get('medium_confidence_threshold', 85),
            fraud_score_threshold=cfg.get('fraud_score_threshold', 70),
            max_recent_failures=cfg.get('max_recent_failures', 3),
            acu_minimum_confidence=cfg.get('acu_minimum_confidence', 50)
        )

    def _parse_risk(self) -> None:
        """Parse risk scoring configuration"""
        cfg = self._raw_config.get('risk', {})
        self.risk = RiskConfig(
            flag_weight=cfg.get('flag_weight', 15),
            high_risk_threshold=cfg.get('high_risk_threshold', 70),
            expired_card_penalty=cfg.get('expired_card_penalty', 20),
            failure_rate_threshold=cfg.get('failure_rate_threshold', 0.3),
            failure_rate_penalty=cfg.get('failure_rate_penalty', 25)
        )

    def _parse_policy(self) -> None:
        """Parse decision policy configuration"""
        cfg = self._raw_config.get('policy', {})
        self.policy = PolicyConfig(
            max_warnings=cfg.get('max_warnings', 2),
            review_risk_threshold=cfg.get('review_risk_threshold', 50)
        )

    def _parse_batch(self) -> None:
        """Parse batch orchestration configuration"""
        cfg = self._raw_config.get('batch', {})
        self.batch = BatchConfig(
            chunk_size=cfg.get('chunk_size', 10),
            chunk_delay_seconds=cfg.get('chunk_delay_seconds', 0.1),
            max_batch_size=cfg.get('max_batch_size', 5000),
            result_preview_size=cfg.get('result_preview_size', 10),
            max_validation_errors=cfg.get('max_validation_errors', 100),
            max_risk_flags=cfg.get('max_risk_flags', 50)
        )

    def _parse_storage(self) -> None:
        """Parse storage configuration"""
        cfg = self._raw_config.get('storage', {})
        self.storage = StorageConfig(
            backend=cfg.get('backend', 'memory')
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/reconciliation.log'),
            audit_directory=cfg.get('audit_directory', 'logs'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_engine(self) -> None:
        """Parse engine configuration"""
        cfg = self._raw_config.get('engine', {})
        self.engine = EngineConfig(
            version=cfg.get('version', '1.0.0'),
            name=cfg.get('name', 'Vault Reconciliation Engine')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'validation': {
                'low_confidence_threshold': self.validation.low_confidence_threshold,
                'medium_confidence_threshold': self.validation.medium_confidence_threshold,
                'fraud_score_threshold': self.validation.fraud_score_threshold,
                'max_recent_failures': self.validation.max_recent_failures,
                'acu_minimum_confidence': self.validation.acu_minimum_confidence
            },
            'risk': {
                'flag_weight': self.risk.flag_weight,
                'high_risk_threshold': self.risk.high_risk_threshold,
                'expired_card_penalty': self.risk.expired_card_penalty,
                'failure_rate_threshold': self.risk.failure_rate_threshold,
                'failure_rate_penalty': self.risk.failure_rate_penalty
            },
            'policy': {
                'max_warnings': self.policy.max_warnings,
                'review_risk_threshold': self.policy.review_risk_threshold
            },
            'batch': {
                'chunk_size': self.batch.chunk_size,
                'chunk_delay_seconds': self.batch.chunk_delay_seconds,
                'max_batch_size': self.batch.max_batch_size,
                'result_preview_size': self.batch.result_preview_size
            },
            'storage': {
                'backend': self.storage.backend
            },
            'engine': {
                'version': self.engine.version,
                'name': self.engine.name
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        v = self.validation
        if not 0 <= v.low_confidence_threshold <= v.medium_confidence_threshold <= 100:
            errors.append(
                "validation thresholds must satisfy "
                "0 <= low_confidence_threshold <= medium_confidence_threshold <= 100"
            )
        if not 0 <= v.fraud_score_threshold <= 100:
            errors.append("validation.fraud_score_threshold must be between 0 and 100")
        if v.max_recent_failures < 0:
            errors.append("validation.max_recent_failures must be non-negative")

        r = self.risk
        for name in ('flag_weight', 'expired_card_penalty', 'failure_rate_penalty'):
            if getattr(r, name) < 0:
                errors.append(f"risk.{name} must be non-negative")
        if not 0 <= r.failure_rate_threshold <= 1:
            errors.append("risk.failure_rate_threshold must be between 0 and 1")

        if self.policy.max_warnings < 0:
            errors.append("policy.max_warnings must be non-negative")

        b = self.batch
        if b.chunk_size < 1:
            errors.append("batch.chunk_size must be at least 1")
        if b.chunk_delay_seconds < 0:
            errors.append("batch.chunk_delay_seconds must be non-negative")
        if b.max_batch_size < 1:
            errors.append("batch.max_batch_size must be at least 1")

        if self.database.lock_timeout_ms < 0:
            errors.append("database.lock_timeout_ms must be non-negative")

        if self.storage.backend not in ('memory', 'database'):
            errors.append(f"storage.backend must be 'memory' or 'database', got '{self.storage.backend}'")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
