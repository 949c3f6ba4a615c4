"""
apiguard Core Library
=====================
Rate limiting, abuse and DDoS detection, IP access lists and automatic
response for data-ingestion and analytics APIs.
"""

__version__ = "0.1.0"

# Configuration
from apiguard_core.config import (
    GuardConfig,
    RateLimitConfig,
    AbuseConfig,
    DDoSConfig,
    EscalationConfig,
    DatabaseConfig,
    AlertingConfig,
    GeolocationConfig,
)

# Errors
from apiguard_core.exceptions import (
    GuardError,
    ValidationError,
    InvalidIPAddressError,
    ConfigurationError,
    StoreUnavailableError,
    GeolocationError,
    AlertDeliveryError,
)

# Results
from apiguard_core.models import (
    Decision,
    EventKind,
    ListType,
    AlertLevel,
    DetectionReason,
    RateLimitDecision,
    DetectionResult,
    ResponseOutcome,
    IPListEntry,
)

# Store
from apiguard_core.store import Database, EventStore

# Components
from apiguard_core.access_list import IPAccessListManager
from apiguard_core.rate_limit import SlidingWindowLimiter, LimitCheck
from apiguard_core.abuse import AbuseDetector, AbuseReport, is_anomalous
from apiguard_core.ddos import DDoSProtector, DDoSReport
from apiguard_core.responder import AutomaticResponder, block_duration, alert_level
from apiguard_core.guard import SecurityGuard
from apiguard_core.middleware import SecurityGuardMiddleware

# Collaborators
from apiguard_core.alerts import Alerter, LogAlertSink, MemoryAlertSink, WebhookAlertSink
from apiguard_core.geolocation import GeoLocator
from apiguard_core.metrics import MetricsRecorder, MetricNames
from apiguard_core.logging_config import setup_logging

__all__ = [
    "__version__",
    # Configuration
    "GuardConfig",
    "RateLimitConfig",
    "AbuseConfig",
    "DDoSConfig",
    "EscalationConfig",
    "DatabaseConfig",
    "AlertingConfig",
    "GeolocationConfig",
    # Errors
    "GuardError",
    "ValidationError",
    "InvalidIPAddressError",
    "ConfigurationError",
    "StoreUnavailableError",
    "GeolocationError",
    "AlertDeliveryError",
    # Results
    "Decision",
    "EventKind",
    "ListType",
    "AlertLevel",
    "DetectionReason",
    "RateLimitDecision",
    "DetectionResult",
    "ResponseOutcome",
    "IPListEntry",
    # Store
    "Database",
    "EventStore",
    # Components
    "IPAccessListManager",
    "SlidingWindowLimiter",
    "LimitCheck",
    "AbuseDetector",
    "AbuseReport",
    "is_anomalous",
    "DDoSProtector",
    "DDoSReport",
    "AutomaticResponder",
    "block_duration",
    "alert_level",
    "SecurityGuard",
    "SecurityGuardMiddleware",
    # Collaborators
    "Alerter",
    "LogAlertSink",
    "MemoryAlertSink",
    "WebhookAlertSink",
    "GeoLocator",
    "MetricsRecorder",
    "MetricNames",
    "setup_logging",
]
