"""Tapscript leaves for the commit/reveal pipeline.

Two leaves are derived per job:

* the init leaf ``<pubkey> OP_CHECKSIG`` guarding the funding address, and
* one inscription leaf per content item, ``<pubkey> OP_CHECKSIG`` followed by
  the ``OP_0 OP_IF "ord" 0x01 <media type> OP_0 <payload> OP_ENDIF`` envelope.

The envelope sits in a branch that never executes; it only exists so that
the payload is committed into the leaf hash and therefore into the address.
Scripts are ``bitcoinutils`` token lists, which serialize every data token
with the smallest push opcode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from bitcoinutils.keys import PublicKey
from bitcoinutils.script import Script
from bitcoinutils.utils import ControlBlock

from .taproot import (
    create_taproot_address,
    p2tr_script_pubkey,
    taproot_leaf_hash,
    taproot_tweak_pubkey,
)

MAX_SCRIPT_ELEMENT_SIZE = 520

ORD_MARKER = b"ord"
# content-type tag, pushed as data rather than OP_1
CONTENT_TYPE_TAG = b"\x01"


def chunk_payload(payload: bytes, size: int = MAX_SCRIPT_ELEMENT_SIZE) -> List[bytes]:
    """Split ``payload`` into consecutive pushes of at most ``size`` bytes."""

    return [payload[offset : offset + size] for offset in range(0, len(payload), size)]


def build_init_script(xonly_pubkey: bytes) -> Script:
    return Script([xonly_pubkey.hex(), "OP_CHECKSIG"])


def build_inscription_script(xonly_pubkey: bytes, media_type: str, payload: bytes) -> Script:
    media = media_type.encode("utf-8")
    if len(media) > MAX_SCRIPT_ELEMENT_SIZE:
        raise ValueError(
            f"Media type of {len(media)} bytes exceeds the {MAX_SCRIPT_ELEMENT_SIZE}-byte push limit"
        )
    return Script(
        [
            xonly_pubkey.hex(),
            "OP_CHECKSIG",
            "OP_0",
            "OP_IF",
            ORD_MARKER.hex(),
            CONTENT_TYPE_TAG.hex(),
            media.hex(),
            "OP_0",
            *[chunk.hex() for chunk in chunk_payload(payload)],
            "OP_ENDIF",
        ]
    )


@dataclass(frozen=True)
class TapLeaf:
    """A single-leaf taproot commitment and the data needed to spend it."""

    script: Script
    leaf_hash: bytes
    internal_key: bytes
    output_key: bytes
    parity: int
    network: str

    @property
    def control_block(self) -> ControlBlock:
        internal = PublicKey(self.internal_key.hex())
        return ControlBlock(internal, [[self.script]], 0, is_odd=bool(self.parity))

    @property
    def script_pubkey(self) -> Script:
        return p2tr_script_pubkey(self.output_key)

    @property
    def address(self) -> str:
        return create_taproot_address(self.output_key, self.network)


def derive_leaf(internal_key: bytes, script: Script, network: str = "mainnet") -> TapLeaf:
    """Commit ``script`` as the only leaf under ``internal_key``."""

    leaf_hash = taproot_leaf_hash(script)
    # a single leaf is its own merkle root
    output_key, parity = taproot_tweak_pubkey(internal_key, leaf_hash)
    return TapLeaf(
        script=script,
        leaf_hash=leaf_hash,
        internal_key=internal_key,
        output_key=output_key,
        parity=parity,
        network=network,
    )


def derive_init_leaf(xonly_pubkey: bytes, network: str = "mainnet") -> TapLeaf:
    return derive_leaf(xonly_pubkey, build_init_script(xonly_pubkey), network)


def derive_inscription_leaf(
    xonly_pubkey: bytes, media_type: str, payload: bytes, network: str = "mainnet"
) -> TapLeaf:
    script = build_inscription_script(xonly_pubkey, media_type, payload)
    return derive_leaf(xonly_pubkey, script, network)
