"""Inbound commands.

Local commands come from the presentation layer; broker commands arrive on
``tba/<ident>/commands``. Both are closed tagged unions discriminated by the
``command`` key, so an unknown command name is a validation error rather than
a silently ignored message.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import Field, TypeAdapter

from tachobridge.models._base import BridgeBaseModel
from tachobridge.models.server import Theme


class UpdateServer(BridgeBaseModel):
    command: Literal["updateServer"] = "updateServer"
    host: str
    ident: str
    theme: Theme = Theme.AUTO


class ManualSyncCards(BridgeBaseModel):
    command: Literal["manualSyncCards"] = "manualSyncCards"
    reader_name: str | None = None
    restart: bool = False


class Reconnect(BridgeBaseModel):
    command: Literal["reconnect"] = "reconnect"


class UpdateCard(BridgeBaseModel):
    command: Literal["updateCard"] = "updateCard"
    identity: str
    card_number: str
    name: str = ""
    expire: int | None = None


class RemoveCard(BridgeBaseModel):
    command: Literal["removeCard"] = "removeCard"
    card_number: str


class CardRejected(BridgeBaseModel):
    """Server-side rejection of a card number (broker only)."""

    command: Literal["cardRejected"] = "cardRejected"
    card_number: str
    message: str = ""


class VersionNotice(BridgeBaseModel):
    """A newer application version is available (broker only)."""

    command: Literal["versionNotice"] = "versionNotice"
    version: str
    message: str = ""


Command = Annotated[
    UpdateServer | ManualSyncCards | Reconnect | UpdateCard | RemoveCard,
    Field(discriminator="command"),
]

BrokerCommand = Annotated[
    UpdateServer | ManualSyncCards | Reconnect | UpdateCard | RemoveCard | CardRejected | VersionNotice,
    Field(discriminator="command"),
]

BROKER_COMMAND_ADAPTER: TypeAdapter[BrokerCommand] = TypeAdapter(BrokerCommand)


class AuthRequest(BridgeBaseModel):
    """APDU relay request from the remote authentication service."""

    payload: str = ""
    finish: bool = False


class AuthResponse(BridgeBaseModel):
    payload: str = ""
