"""Base model and enum for tachobridge records.

Every record inherits from :class:`BridgeBaseModel` which provides:

* ``alias_generator=to_camel`` so the snake_case fields map to the camelCase
  keys used on disk, on the broker and towards the presentation layer.
* ``populate_by_name`` so callers may construct records with either spelling.
* Immutability; records are replaced, never mutated in place.

String enums inherit from :class:`BridgeEnum`, which matches values
case-insensitively and resolves unknown values to ``UNKNOWN`` (or the first
member when the enum has no ``UNKNOWN``) instead of raising ``ValueError``.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BridgeEnum(enum.StrEnum):
    """Base for string enums read from user- or broker-supplied data."""

    @classmethod
    def _missing_(cls, value: object) -> BridgeEnum:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        if "UNKNOWN" in cls.__members__:
            return cls["UNKNOWN"]
        # Fallback: return first member
        return next(iter(cls))


class BridgeBaseModel(BaseModel):
    """Base for all tachobridge records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self, **kwargs: Any) -> dict[str, Any]:
        """camelCase JSON-compatible dict."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)
