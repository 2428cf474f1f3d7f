"""tachobridge - Async bridge between tachograph card readers and a remote authentication service."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tachobridge")
except PackageNotFoundError:
    __version__ = "0+local"
from tachobridge.app import BridgeApp
from tachobridge.cloud import CloudBridge, SessionState
from tachobridge.config import BridgeConfig
from tachobridge.dispatcher import EventDispatcher, NotificationChannel
from tachobridge.exceptions import (
    BridgeConfigError,
    BridgeConnectivityError,
    BridgeDeviceError,
    BridgeDuplicateError,
    BridgeError,
    BridgePersistenceError,
    BridgeProtocolError,
    BridgeValidationError,
)
from tachobridge.models import (
    CardConfigUpdated,
    CardRejected,
    CardsSync,
    ConfigSync,
    ManualSyncCards,
    Notice,
    NoticeKind,
    ReaderObservation,
    ReaderState,
    ReaderStatus,
    Reconnect,
    RemoveCard,
    ServerConfig,
    SmartCard,
    Theme,
    UpdateCard,
    UpdateServer,
    VersionNotice,
    validate_card_number,
)
from tachobridge.registry import CardRegistry
from tachobridge.storage import ConfigStore

__all__ = [
    "__version__",
    "BridgeApp",
    "BridgeConfig",
    "BridgeConfigError",
    "BridgeConnectivityError",
    "BridgeDeviceError",
    "BridgeDuplicateError",
    "BridgeError",
    "BridgePersistenceError",
    "BridgeProtocolError",
    "BridgeValidationError",
    "CardConfigUpdated",
    "CardRegistry",
    "CardRejected",
    "CardsSync",
    "CloudBridge",
    "ConfigStore",
    "ConfigSync",
    "EventDispatcher",
    "ManualSyncCards",
    "Notice",
    "NoticeKind",
    "NotificationChannel",
    "ReaderObservation",
    "ReaderState",
    "ReaderStatus",
    "Reconnect",
    "RemoveCard",
    "ServerConfig",
    "SessionState",
    "SmartCard",
    "Theme",
    "UpdateCard",
    "UpdateServer",
    "VersionNotice",
    "validate_card_number",
]
