"""
ST Status - SmartThings device status poller.

This package polls the SmartThings REST API for the status of configured
devices or rooms, normalizes the capability data into one primary state per
device, and publishes snapshots, errors and health alerts to a display layer.
OAuth credentials are kept encrypted at rest and refreshed automatically.
"""

__version__ = "0.1.0"
__author__ = "ST Status Team"

from st_status.exceptions import (
    StStatusError,
    ConfigurationError,
    NoCredentialsError,
    VaultKeyError,
    TokenRefreshError,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    ServerOutageError,
    ApiError,
    SchemaError,
    NetworkError,
    PersistenceError,
)
from st_status.enums import (
    LogLevel,
    ErrorCategory,
    AlertType,
    TokenState,
    AuthMode,
    VaultVersion,
    GatewayEventType,
)
from st_status.config import (
    DeviceConfig,
    OAuthConfig,
    RateLimitConfig,
    PersistenceConfig,
    LoggingConfig,
    ModuleConfig,
    config_hash,
)
from st_status.models import (
    CredentialRecord,
    EncryptedEnvelope,
    ResolvedDevice,
    NormalizedDevice,
    CacheSnapshot,
    AlertState,
    RateWindow,
)
from st_status.audit_logger import (
    AuditLogger,
    LogEntry,
)
from st_status.credential_vault import (
    CredentialVault,
    encrypt,
    decrypt,
    generate_key,
    derive_legacy_key,
)
from st_status.token_manager import (
    TokenManager,
    build_authorize_url,
    extract_code,
)
from st_status.rate_limiter import (
    RateLimiter,
    RateLimitStatus,
)
from st_status.scheduler import (
    Scheduler,
    ScheduledTask,
)
from st_status.api_client import (
    SmartThingsClient,
)
from st_status.device_resolver import (
    DeviceResolver,
)
from st_status.normalizer import (
    Normalizer,
    CAPABILITY_PRIORITY,
)
from st_status.cache_store import (
    CacheStore,
)
from st_status.alert_state import (
    AlertStateMachine,
)
from st_status.notifications import (
    GatewayEvent,
    NotificationResult,
    GatewayChannel,
    CallbackChannel,
    StreamChannel,
    WebhookChannel,
    NotificationGateway,
)
from st_status.i18n import (
    get_message,
    get_all_message_keys,
    has_translation,
    get_missing_translations,
    validate_translations,
    TRANSLATIONS,
    SUPPORTED_LANGUAGES,
    DEFAULT_LANGUAGE,
)
from st_status.poller import (
    PollingSession,
    mock_devices,
)
from st_status.self_test import (
    SelfTest,
    SelfTestResult,
    ProbeResult,
    ConfigValidationResult,
    run_self_test,
)
from st_status.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config,
    save_config_to_file,
)

__all__ = [
    # Exceptions
    "StStatusError",
    "ConfigurationError",
    "NoCredentialsError",
    "VaultKeyError",
    "TokenRefreshError",
    "AuthenticationError",
    "PermissionDeniedError",
    "RateLimitError",
    "ServerOutageError",
    "ApiError",
    "SchemaError",
    "NetworkError",
    "PersistenceError",
    # Enums
    "LogLevel",
    "ErrorCategory",
    "AlertType",
    "TokenState",
    "AuthMode",
    "VaultVersion",
    "GatewayEventType",
    # Configuration
    "DeviceConfig",
    "OAuthConfig",
    "RateLimitConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "ModuleConfig",
    "config_hash",
    # Models
    "CredentialRecord",
    "EncryptedEnvelope",
    "ResolvedDevice",
    "NormalizedDevice",
    "CacheSnapshot",
    "AlertState",
    "RateWindow",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Credential Vault
    "CredentialVault",
    "encrypt",
    "decrypt",
    "generate_key",
    "derive_legacy_key",
    # Token Manager
    "TokenManager",
    "build_authorize_url",
    "extract_code",
    # Rate Limiter
    "RateLimiter",
    "RateLimitStatus",
    # Scheduler
    "Scheduler",
    "ScheduledTask",
    # API Client
    "SmartThingsClient",
    # Device Resolver
    "DeviceResolver",
    # Normalizer
    "Normalizer",
    "CAPABILITY_PRIORITY",
    # Cache
    "CacheStore",
    # Alerts
    "AlertStateMachine",
    # Notifications
    "GatewayEvent",
    "NotificationResult",
    "GatewayChannel",
    "CallbackChannel",
    "StreamChannel",
    "WebhookChannel",
    "NotificationGateway",
    # i18n
    "get_message",
    "get_all_message_keys",
    "has_translation",
    "get_missing_translations",
    "validate_translations",
    "TRANSLATIONS",
    "SUPPORTED_LANGUAGES",
    "DEFAULT_LANGUAGE",
    # Polling session
    "PollingSession",
    "mock_devices",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "ProbeResult",
    "ConfigValidationResult",
    "run_self_test",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config",
    "save_config_to_file",
]
