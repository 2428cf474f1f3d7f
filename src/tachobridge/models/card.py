"""Company card records and card-number validation."""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import Field, field_validator

from tachobridge._constants import CARD_NUMBER_RE
from tachobridge.models._base import BridgeBaseModel


@dataclass(frozen=True)
class CardNumberCheck:
    """Outcome of :func:`validate_card_number`."""

    value: str
    valid: bool
    reason: str = ""


def validate_card_number(value: object) -> CardNumberCheck:
    """Check *value* against the regulatory company card number format.

    The format is exactly 16 uppercase ASCII letters or digits. No
    normalisation is applied: ``"aaaa111122223333"`` is rejected.
    """
    if not isinstance(value, str):
        return CardNumberCheck(value=str(value), valid=False, reason="card number must be a string")
    if len(value) != 16:
        return CardNumberCheck(value=value, valid=False, reason=f"card number must be 16 characters, got {len(value)}")
    if CARD_NUMBER_RE.fullmatch(value) is None:
        return CardNumberCheck(
            value=value,
            valid=False,
            reason="card number may only contain uppercase letters A-Z and digits 0-9",
        )
    return CardNumberCheck(value=value, valid=True)


def normalize_identity(value: object) -> str:
    """Canonical spelling of a card identity (uppercase hex, no separators)."""
    if value is None:
        return ""
    return "".join(str(value).split()).replace(":", "").upper()


class SmartCard(BridgeBaseModel):
    """A registered company card.

    The card number is the registry key. On disk it is the mapping key, so
    :meth:`to_record` leaves it out of the record body.
    """

    card_number: str
    """Regulator-assigned 16-character card number."""

    identity: str = ""
    """Chip serial read from EF_ICC. Empty until the physical card is bound."""

    name: str = ""
    """Free-form display name."""

    expire: int | None = None
    """Optional expiry date (epoch seconds)."""

    updated_at: float = Field(default_factory=time.time)
    """Last modification (epoch seconds). Newest wins in load-time deduplication."""

    @field_validator("identity", mode="before")
    @classmethod
    def _normalize_identity(cls, value: object) -> str:
        return normalize_identity(value)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @property
    def is_bound(self) -> bool:
        """Whether the record is tied to a physical card."""
        return bool(self.identity)

    def to_record(self) -> dict[str, object]:
        return self.to_wire(exclude={"card_number"})
