"""Content items and the inscriptions derived from them."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .fees import calculate_fee_sats
from .keys import EphemeralKey
from .scripts import TapLeaf, derive_inscription_leaf
from .transaction import estimate_reveal_vsize

MAX_PAYLOAD_BYTES = 350_000
DEFAULT_TEXT_MEDIA_TYPE = "text/plain;charset=utf-8"


class PayloadTooLarge(ValueError):
    """Raised when a content item exceeds the inscription size ceiling."""

    def __init__(self, name: str | None, size: int) -> None:
        label = name or "content item"
        super().__init__(
            f"{label} is {size} bytes; inscriptions must stay below {MAX_PAYLOAD_BYTES} bytes"
        )
        self.name = name
        self.size = size


def normalize_media_type(media_type: str) -> str:
    media_type = media_type.strip()
    if "text/plain" in media_type and "charset" not in media_type:
        media_type += ";charset=utf-8"
    return media_type


@dataclass(frozen=True)
class ContentItem:
    """Bytes to inscribe together with their media type.

    ``content_hash`` is the hex SHA-256 of the payload and is filled in when
    omitted.
    """

    payload: bytes = field(repr=False)
    media_type: str
    name: str | None = None
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_hash:
            object.__setattr__(self, "content_hash", hashlib.sha256(self.payload).hexdigest())

    @classmethod
    def from_text(cls, text: str, media_type: str = DEFAULT_TEXT_MEDIA_TYPE) -> "ContentItem":
        return cls(payload=text.encode("utf-8"), media_type=normalize_media_type(media_type))

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str, name: str | None = None) -> "ContentItem":
        return cls(payload=bytes(data), media_type=normalize_media_type(media_type), name=name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentItem":
        return cls(
            payload=bytes.fromhex(data["payload_hex"]),
            media_type=data["media_type"],
            name=data.get("name"),
            content_hash=data.get("content_hash") or "",
        )

    @property
    def payload_hex(self) -> str:
        return self.payload.hex()

    @property
    def size(self) -> int:
        return len(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload_hex": self.payload_hex,
            "media_type": self.media_type,
            "content_hash": self.content_hash,
            "name": self.name,
        }


def check_payload_size(item: ContentItem) -> ContentItem:
    if item.size >= MAX_PAYLOAD_BYTES:
        raise PayloadTooLarge(item.name, item.size)
    return item


def resolve_items(
    items: Iterable[ContentItem] = (),
    text: str | None = None,
    media_type: str | None = None,
) -> List[ContentItem]:
    """Return the items to inscribe, enforcing the size ceiling on each.

    A ``text`` + ``media_type`` pair takes precedence over ``items``.
    """

    if text and media_type:
        resolved = [ContentItem.from_text(text, media_type)]
    else:
        resolved = list(items)
    if not resolved:
        raise ValueError("Nothing to inscribe: supply at least one content item or a text")
    return [check_payload_size(item) for item in resolved]


@dataclass(frozen=True)
class Inscription:
    """An inscription leaf plus the fee its reveal transaction needs."""

    item: ContentItem
    leaf: TapLeaf
    vsize: int
    fee: int

    @property
    def address(self) -> str:
        return self.leaf.address

    def commit_value(self, padding: int) -> int:
        """Value the commit transaction must lock at this inscription's address."""

        return padding + self.fee


def derive_inscription(
    key: EphemeralKey, item: ContentItem, fee_rate: int, network: str = "mainnet"
) -> Inscription:
    check_payload_size(item)
    if fee_rate < 0:
        raise ValueError(f"Fee rate must not be negative, got {fee_rate}")
    leaf = derive_inscription_leaf(key.xonly, item.media_type, item.payload, network)
    vsize = estimate_reveal_vsize(leaf)
    return Inscription(item=item, leaf=leaf, vsize=vsize, fee=calculate_fee_sats(fee_rate, vsize))
