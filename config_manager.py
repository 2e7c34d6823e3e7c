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

SCORE_COMPONENTS = ('background_check', 'training', 'attestation', 'access_review')


@dataclass
class ScoringConfig:
    """Compliance score weights and status thresholds"""
    weights: Dict[str, int] = field(default_factory=lambda: {
        'background_check': 25,
        'training': 25,
        'attestation': 25,
        'access_review': 25
    })
    compliant_threshold: int = 80
    at_risk_threshold: int = 60
    deadline_window_days: int = 30


@dataclass
class CorrelationConfig:
    """Batch sizes and limits used by correlation and reporting"""
    recalculation_batch_size: int = 500
    security_score_history: int = 5
    default_page_size: int = 25
    max_page_size: int = 100
    deadline_list_limit: int = 10
    recent_change_days: int = 7


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class MonitoringSettings:
    """Query timing and Prometheus settings"""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


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
        self.scoring: ScoringConfig = ScoringConfig()
        self.correlation: CorrelationConfig = CorrelationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.monitoring: MonitoringSettings = MonitoringSettings()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path.cwd() / "config.yaml",
            Path(__file__).parent / "config.yaml",
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

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_scoring()
        self._parse_correlation()
        self._parse_logging()
        self._parse_monitoring()
        self._validate()

    def _section(self, name: str) -> Dict[str, Any]:
        cfg = self._raw_config.get(name) or {}
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        return cfg

    def _parse_scoring(self) -> None:
        """Parse scoring configuration"""
        cfg = self._section('scoring')
        defaults = ScoringConfig()
        weights = dict(defaults.weights)
        weights.update(cfg.get('weights') or {})
        self.scoring = ScoringConfig(
            weights=weights,
            compliant_threshold=cfg.get('compliant_threshold', defaults.compliant_threshold),
            at_risk_threshold=cfg.get('at_risk_threshold', defaults.at_risk_threshold),
            deadline_window_days=cfg.get('deadline_window_days', defaults.deadline_window_days)
        )

    def _parse_correlation(self) -> None:
        """Parse correlation configuration"""
        cfg = self._section('correlation')
        defaults = CorrelationConfig()
        self.correlation = CorrelationConfig(
            recalculation_batch_size=cfg.get('recalculation_batch_size', defaults.recalculation_batch_size),
            security_score_history=cfg.get('security_score_history', defaults.security_score_history),
            default_page_size=cfg.get('default_page_size', defaults.default_page_size),
            max_page_size=cfg.get('max_page_size', defaults.max_page_size),
            deadline_list_limit=cfg.get('deadline_list_limit', defaults.deadline_list_limit),
            recent_change_days=cfg.get('recent_change_days', defaults.recent_change_days)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._section('logging')
        self.logging = LoggingConfig(
            level=str(cfg.get('level', 'INFO')).upper(),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_monitoring(self) -> None:
        cfg = self._section('monitoring')
        defaults = MonitoringSettings()
        self.monitoring = MonitoringSettings(
            slow_query_threshold_ms=cfg.get('slow_query_threshold_ms', defaults.slow_query_threshold_ms),
            warning_threshold_ms=cfg.get('warning_threshold_ms', defaults.warning_threshold_ms),
            enable_prometheus=cfg.get('enable_prometheus', defaults.enable_prometheus)
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
            'scoring': {
                'weights': dict(self.scoring.weights),
                'compliant_threshold': self.scoring.compliant_threshold,
                'at_risk_threshold': self.scoring.at_risk_threshold,
                'deadline_window_days': self.scoring.deadline_window_days
            },
            'correlation': {
                'recalculation_batch_size': self.correlation.recalculation_batch_size,
                'security_score_history': self.correlation.security_score_history,
                'default_page_size': self.correlation.default_page_size,
                'max_page_size': self.correlation.max_page_size,
                'deadline_list_limit': self.correlation.deadline_list_limit,
                'recent_change_days': self.correlation.recent_change_days
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console,
                'format': self.logging.format
            },
            'monitoring': {
                'slow_query_threshold_ms': self.monitoring.slow_query_threshold_ms,
                'warning_threshold_ms': self.monitoring.warning_threshold_ms,
                'enable_prometheus': self.monitoring.enable_prometheus
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        weights = self.scoring.weights
        unknown = set(weights) - set(SCORE_COMPONENTS)
        if unknown:
            raise ConfigurationError(f"Unknown score components: {sorted(unknown)}")
        for name, weight in weights.items():
            if not isinstance(weight, int) or isinstance(weight, bool) or weight < 0:
                raise ConfigurationError(f"Weight for '{name}' must be a non-negative integer")
        if sum(weights.values()) != 100:
            raise ConfigurationError(
                f"Score weights must sum to 100, got {sum(weights.values())}"
            )

        if not 0 <= self.scoring.at_risk_threshold <= self.scoring.compliant_threshold <= 100:
            raise ConfigurationError(
                "Thresholds must satisfy 0 <= at_risk_threshold <= compliant_threshold <= 100"
            )
        if self.scoring.deadline_window_days < 1:
            raise ConfigurationError("deadline_window_days must be at least 1")

        for name in ('recalculation_batch_size', 'security_score_history',
                     'default_page_size', 'max_page_size', 'deadline_list_limit',
                     'recent_change_days'):
            if getattr(self.correlation, name) < 1:
                raise ConfigurationError(f"correlation.{name} must be at least 1")
        if self.correlation.default_page_size > self.correlation.max_page_size:
            raise ConfigurationError("default_page_size cannot exceed max_page_size")

        if logging.getLevelName(self.logging.level) == f"Level {self.logging.level}":
            raise ConfigurationError(f"Unknown log level: {self.logging.level}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Apply a LoggingConfig to the root logger."""
    config = config or get_config().logging
    handlers = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, config.level),
        format=config.format,
        handlers=handlers or None,
        force=True
    )
