"""Reader state and the observations emitted by reader watchers."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import Field, field_validator

from tachobridge.models._base import BridgeBaseModel, BridgeEnum
from tachobridge.models.card import normalize_identity


class ReaderStatus(BridgeEnum):
    UNKNOWN = "UNKNOWN"
    NO_CARD = "EMPTY"
    CARD_PRESENT = "PRESENT"
    ERROR = "ERROR"


class ReaderObservation(BridgeBaseModel):
    """One detected transition of a single reader.

    Only the reader's own watcher produces these; the coordinator is the
    only consumer allowed to fold them into the shared state.
    """

    reader_name: str
    status: ReaderStatus
    identity: str | None = None
    atr: str | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("reader_name")
    @classmethod
    def _normalize_reader_name(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("reader_name must be non-empty")
        return name

    @field_validator("identity", mode="before")
    @classmethod
    def _normalize_identity(cls, value: object) -> str | None:
        identity = normalize_identity(value)
        return identity or None

    def same_state(self, other: ReaderObservation | None) -> bool:
        """Equal ignoring the observation time."""
        if other is None:
            return False
        return (
            self.reader_name == other.reader_name
            and self.status == other.status
            and self.identity == other.identity
            and self.atr == other.atr
        )


class ReaderState(BridgeBaseModel):
    """Current view of one physical reader slot."""

    name: str
    status: ReaderStatus = ReaderStatus.UNKNOWN
    identity: str | None = None
    atr: str | None = None
    online: bool = False
    authenticating: bool = False

    @property
    def has_card(self) -> bool:
        return self.status == ReaderStatus.CARD_PRESENT

    def apply(self, observation: ReaderObservation) -> ReaderState:
        """New state after *observation*. A removed card ends any exchange in progress."""
        authenticating = self.authenticating and observation.status == ReaderStatus.CARD_PRESENT
        return self.model_copy(
            update={
                "status": observation.status,
                "identity": observation.identity,
                "atr": observation.atr,
                "authenticating": authenticating and observation.identity == self.identity,
            }
        )
