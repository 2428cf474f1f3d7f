"""Data models for tachobridge."""

from tachobridge.models._base import BridgeBaseModel, BridgeEnum
from tachobridge.models.card import CardNumberCheck, SmartCard, normalize_identity, validate_card_number
from tachobridge.models.commands import (
    BROKER_COMMAND_ADAPTER,
    AuthRequest,
    AuthResponse,
    BrokerCommand,
    CardRejected,
    Command,
    ManualSyncCards,
    Reconnect,
    RemoveCard,
    UpdateCard,
    UpdateServer,
    VersionNotice,
)
from tachobridge.models.notifications import CardConfigUpdated, CardsSync, ConfigSync, Notice, NoticeKind, Notification
from tachobridge.models.reader import ReaderObservation, ReaderState, ReaderStatus
from tachobridge.models.server import ServerConfig, Theme, generate_ident, parse_broker_host

__all__ = [
    "BROKER_COMMAND_ADAPTER",
    "AuthRequest",
    "AuthResponse",
    "BridgeBaseModel",
    "BridgeEnum",
    "BrokerCommand",
    "CardConfigUpdated",
    "CardNumberCheck",
    "CardRejected",
    "CardsSync",
    "Command",
    "ConfigSync",
    "ManualSyncCards",
    "Notice",
    "NoticeKind",
    "Notification",
    "ReaderObservation",
    "ReaderState",
    "ReaderStatus",
    "Reconnect",
    "RemoveCard",
    "ServerConfig",
    "SmartCard",
    "Theme",
    "UpdateCard",
    "UpdateServer",
    "VersionNotice",
    "generate_ident",
    "normalize_identity",
    "parse_broker_host",
    "validate_card_number",
]
