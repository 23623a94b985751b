"""
Alert Engine Configuration Service - Admin-configurable thresholds and policies.

Provides centralized configuration for:
- SLA windows per severity
- Default cooldown and auto-resolve grace period
- Snooze limits
- Evaluation / escalation loop timing and worker pool size
- Retry, backoff and timeout for store reads and channel delivery
- Channel enable flags
"""

import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict, fields
from datetime import timedelta

from .enums import Severity

logger = logging.getLogger(__name__)


@dataclass
class AlertEngineConfig:
    """Complete Alert Engine configuration"""

    # SLA windows (minutes from trigger to breach). None = never breaches.
    # CRITICAL is "immediate" with a short acknowledgement grace.
    sla_critical_minutes: Optional[float] = 15.0
    sla_high_minutes: Optional[float] = 120.0
    sla_medium_minutes: Optional[float] = 480.0
    sla_low_minutes: Optional[float] = None

    # Deduplication / lifecycle
    default_cooldown_minutes: int = 60
    auto_resolve_grace_minutes: int = 60
    max_snooze_minutes: int = 7 * 24 * 60

    # Loop timing
    evaluation_interval_seconds: int = 60
    escalation_check_interval_seconds: int = 60
    evaluation_concurrency: int = 8

    # Observation store reads
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 0.5

    # Channel delivery
    delivery_max_attempts: int = 3
    delivery_backoff_seconds: float = 1.0
    delivery_timeout_seconds: float = 10.0

    # Channel switches
    email_enabled: bool = True
    sms_enabled: bool = True
    phone_call_enabled: bool = True

    # Recipients
    default_notify_roles: List[str] = field(default_factory=lambda: ["clinician"])
    escalation_roles: List[str] = field(default_factory=lambda: ["supervisor"])
    reminder_role: str = "patient"

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for storage/API"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlertEngineConfig':
        """Create config from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown alert engine config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


class AlertConfigService:
    """Service for managing Alert Engine configuration"""

    _instance: Optional['AlertConfigService'] = None
    _config: AlertEngineConfig = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._config = AlertEngineConfig()
        return cls._instance

    @property
    def config(self) -> AlertEngineConfig:
        """Get current configuration"""
        return self._config

    def update_config(self, updates: Dict[str, Any]) -> AlertEngineConfig:
        """Update configuration with new values"""
        try:
            current_dict = self._config.to_dict()
            current_dict.update(updates)
            self._config = AlertEngineConfig.from_dict(current_dict)
            logger.info(f"Alert Engine config updated: {list(updates.keys())}")
            return self._config
        except Exception as e:
            logger.error(f"Error updating config: {e}")
            raise

    def reset_to_defaults(self) -> AlertEngineConfig:
        """Reset to default configuration"""
        self._config = AlertEngineConfig()
        logger.info("Alert Engine config reset to defaults")
        return self._config

    def get_sla_window(self, severity: Severity) -> Optional[timedelta]:
        """SLA window by severity; None means the alert never breaches SLA"""
        severity = Severity(severity)
        if severity == Severity.CRITICAL:
            minutes = self._config.sla_critical_minutes
        elif severity == Severity.HIGH:
            minutes = self._config.sla_high_minutes
        elif severity == Severity.MEDIUM:
            minutes = self._config.sla_medium_minutes
        elif severity == Severity.LOW:
            minutes = self._config.sla_low_minutes
        else:
            raise ValueError(f"Unknown severity: {severity}")
        if minutes is None:
            return None
        return timedelta(minutes=minutes)

    def get_default_cooldown(self) -> timedelta:
        return timedelta(minutes=self._config.default_cooldown_minutes)

    def get_auto_resolve_grace(self) -> timedelta:
        return timedelta(minutes=self._config.auto_resolve_grace_minutes)

    def channel_enabled(self, channel_value: str) -> bool:
        return bool(getattr(self._config, f"{channel_value}_enabled", False))
