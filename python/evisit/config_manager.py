"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "evisit_user"
    password: str = "evisit_password"
    name: str = "evisit_database"


@dataclass
class SecurityConfig:
    """Secrets and signing parameters"""
    hmac_secret: str = ""
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    qr_max_age_seconds: int = 86400


@dataclass
class ScreeningConfig:
    """Risk screening windows and weights"""
    duplicate_window_days: int = 7
    rejection_window_days: int = 30
    phone_window_days: int = 30
    suspicious_phone_threshold: int = 3
    overstay_history_min_days: int = 7
    weights: Dict[str, int] = field(default_factory=lambda: {
        'duplicate': 40,
        'recent_rejection': 25,
        'overstay_history': 35,
        'suspicious_pattern': 30
    })
    watchlist_weights: Dict[str, int] = field(default_factory=lambda: {
        'CRITICAL': 80,
        'HIGH': 50,
        'MEDIUM': 30,
        'LOW': 15
    })


@dataclass
class PermitConfig:
    """Permit issuance settings"""
    reference_prefix: str = "KRG"
    processing_deadline_hours: int = 72
    qr_box_size: int = 10
    qr_border: int = 2


@dataclass
class OverstayConfig:
    """Overstay sweep settings"""
    enabled: bool = True
    grace_days: int = 3
    watchlist_min_days: int = 7
    medium_severity_days: int = 14
    high_severity_days: int = 30
    watchlist_ttl_days: int = 180
    sweep_interval_seconds: int = 3600


@dataclass
class NotificationConfig:
    """Applicant notification settings"""
    enabled: bool = True
    max_workers: int = 2
    track_url: str = "krg-evisit.gov/track"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/evisit.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None, load_env: bool = True):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
            load_env: Apply EVISIT_* environment overrides after loading
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.security: SecurityConfig = SecurityConfig()
        self.screening: ScreeningConfig = ScreeningConfig()
        self.permit: PermitConfig = PermitConfig()
        self.overstay: OverstayConfig = OverstayConfig()
        self.notifications: NotificationConfig = NotificationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning("Config file not found at %s, using defaults", self.config_path)

        if load_env:
            self._apply_env_overrides()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path(__file__).parent.parent / "config.yaml",
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

        self._parse_security()
        self._parse_screening()
        self._parse_permit()
        self._parse_overstay()
        self._parse_notifications()
        self._parse_logging()
        self._parse_database()

    def _apply_env_overrides(self) -> None:
        """Secrets from the environment take precedence over the file"""
        hmac_secret = os.getenv("EVISIT_HMAC_SECRET")
        if hmac_secret:
            self.security.hmac_secret = hmac_secret
        jwt_secret = os.getenv("EVISIT_JWT_SECRET")
        if jwt_secret:
            self.security.jwt_secret = jwt_secret

    def _parse_security(self) -> None:
        """Parse security configuration"""
        cfg = self._raw_config.get('security', {})
        self.security = SecurityConfig(
            hmac_secret=cfg.get('hmac_secret', self.security.hmac_secret),
            jwt_secret=cfg.get('jwt_secret', self.security.jwt_secret),
            jwt_algorithm=cfg.get('jwt_algorithm', 'HS256'),
            qr_max_age_seconds=cfg.get('qr_max_age_seconds', 86400)
        )

    def _parse_screening(self) -> None:
        """Parse screening configuration"""
        cfg = self._raw_config.get('screening', {})

        # Partial weight tables merge over the defaults
        weights = dict(self.screening.weights)
        weights.update(cfg.get('weights', {}))
        watchlist_weights = dict(self.screening.watchlist_weights)
        watchlist_weights.update(cfg.get('watchlist_weights', {}))

        self.screening = ScreeningConfig(
            duplicate_window_days=cfg.get('duplicate_window_days', 7),
            rejection_window_days=cfg.get('rejection_window_days', 30),
            phone_window_days=cfg.get('phone_window_days', 30),
            suspicious_phone_threshold=cfg.get('suspicious_phone_threshold', 3),
            overstay_history_min_days=cfg.get('overstay_history_min_days', 7),
            weights=weights,
            watchlist_weights=watchlist_weights
        )

    def _parse_permit(self) -> None:
        """Parse permit configuration"""
        cfg = self._raw_config.get('permit', {})
        self.permit = PermitConfig(
            reference_prefix=cfg.get('reference_prefix', 'KRG'),
            processing_deadline_hours=cfg.get('processing_deadline_hours', 72),
            qr_box_size=cfg.get('qr_box_size', 10),
            qr_border=cfg.get('qr_border', 2)
        )

    def _parse_overstay(self) -> None:
        """Parse overstay sweep configuration"""
        cfg = self._raw_config.get('overstay', {})
        self.overstay = OverstayConfig(
            enabled=cfg.get('enabled', True),
            grace_days=cfg.get('grace_days', 3),
            watchlist_min_days=cfg.get('watchlist_min_days', 7),
            medium_severity_days=cfg.get('medium_severity_days', 14),
            high_severity_days=cfg.get('high_severity_days', 30),
            watchlist_ttl_days=cfg.get('watchlist_ttl_days', 180),
            sweep_interval_seconds=cfg.get('sweep_interval_seconds', 3600)
        )

    def _parse_notifications(self) -> None:
        """Parse notification configuration"""
        cfg = self._raw_config.get('notifications', {})
        self.notifications = NotificationConfig(
            enabled=cfg.get('enabled', True),
            max_workers=cfg.get('max_workers', 2),
            track_url=cfg.get('track_url', self.notifications.track_url)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/evisit.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def validate(self) -> None:
        """Validate configuration values

        Called once at service startup, after environment overrides,
        so that a missing secret fails fast instead of at first use.

        Raises:
            ConfigurationError: If any value is unusable
        """
        errors = []

        if len(self.security.hmac_secret or "") < MIN_SECRET_LENGTH:
            errors.append(f"security.hmac_secret must be at least {MIN_SECRET_LENGTH} characters")
        if len(self.security.jwt_secret or "") < MIN_SECRET_LENGTH:
            errors.append(f"security.jwt_secret must be at least {MIN_SECRET_LENGTH} characters")
        if self.security.qr_max_age_seconds <= 0:
            errors.append("security.qr_max_age_seconds must be positive")

        for name in ('duplicate_window_days', 'rejection_window_days', 'phone_window_days'):
            if getattr(self.screening, name) <= 0:
                errors.append(f"screening.{name} must be positive")
        if any(points < 0 for points in self.screening.weights.values()):
            errors.append("screening.weights must not be negative")
        if any(points < 0 for points in self.screening.watchlist_weights.values()):
            errors.append("screening.watchlist_weights must not be negative")

        if self.overstay.sweep_interval_seconds <= 0:
            errors.append("overstay.sweep_interval_seconds must be positive")
        if not (self.overstay.watchlist_min_days
                <= self.overstay.medium_severity_days
                <= self.overstay.high_severity_days):
            errors.append("overstay severity thresholds must be ascending")

        if errors:
            raise ConfigurationError("; ".join(errors))

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
        """Export configuration as dictionary, secrets excluded"""
        return {
            'security': {
                'jwt_algorithm': self.security.jwt_algorithm,
                'qr_max_age_seconds': self.security.qr_max_age_seconds
            },
            'screening': {
                'duplicate_window_days': self.screening.duplicate_window_days,
                'rejection_window_days': self.screening.rejection_window_days,
                'phone_window_days': self.screening.phone_window_days,
                'suspicious_phone_threshold': self.screening.suspicious_phone_threshold,
                'weights': self.screening.weights,
                'watchlist_weights': self.screening.watchlist_weights
            },
            'permit': {
                'reference_prefix': self.permit.reference_prefix,
                'processing_deadline_hours': self.permit.processing_deadline_hours
            },
            'overstay': {
                'enabled': self.overstay.enabled,
                'grace_days': self.overstay.grace_days,
                'watchlist_ttl_days': self.overstay.watchlist_ttl_days,
                'sweep_interval_seconds': self.overstay.sweep_interval_seconds
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
