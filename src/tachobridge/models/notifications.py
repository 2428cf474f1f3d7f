"""Outbound notifications towards the presentation layer.

Each notification names the entity it describes (:attr:`entity_key`). The
dispatcher uses it to drop repeats and to coalesce unread updates.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import Field

from tachobridge.models._base import BridgeBaseModel, BridgeEnum
from tachobridge.models.card import SmartCard
from tachobridge.models.reader import ReaderStatus
from tachobridge.models.server import Theme


class NoticeKind(BridgeEnum):
    ACCESS = "access"
    VERSION = "version"
    DUPLICATE = "duplicate"


class CardsSync(BridgeBaseModel):
    """Reader/card state, also the body published per reader to the broker."""

    type: Literal["cardsSync"] = "cardsSync"
    reader_name: str
    identity: str | None = None
    status: ReaderStatus
    card_number: str = ""
    online: bool | None = None
    authenticating: bool | None = None

    @property
    def entity_key(self) -> str:
        return f"reader:{self.reader_name}"


class ConfigSync(BridgeBaseModel):
    type: Literal["configSync"] = "configSync"
    host: str
    ident: str
    theme: Theme

    @property
    def entity_key(self) -> str:
        return "server"


class CardConfigUpdated(BridgeBaseModel):
    """A registry record changed; ``record`` is ``None`` after removal."""

    type: Literal["cardConfigUpdated"] = "cardConfigUpdated"
    card_number: str
    record: SmartCard | None = None

    @property
    def entity_key(self) -> str:
        return f"card:{self.card_number}"


class Notice(BridgeBaseModel):
    """Fatal or advisory condition (storage inaccessible, new version, ...)."""

    type: Literal["notification"] = "notification"
    kind: NoticeKind
    message: str = ""

    @property
    def entity_key(self) -> str:
        return f"notice:{self.kind.value}"


Notification = Annotated[
    CardsSync | ConfigSync | CardConfigUpdated | Notice,
    Field(discriminator="type"),
]
