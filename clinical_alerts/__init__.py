"""Clinical alert engine: rule evaluation, alert lifecycle, escalation and notification."""

__version__ = "1.0.0"
