"""Taproot outputs for single-leaf script trees.

Leaf hashing, the BIP341 key tweak and bech32m witness v1 addresses, built on
``bitcoinutils``. Addresses are always encoded with an explicit HRP so the
library's process-wide network setting never decides which chain an address
belongs to.
"""

from __future__ import annotations

from typing import Tuple

from bitcoinutils import bech32
from bitcoinutils.constants import LEAF_VERSION_TAPSCRIPT
from bitcoinutils.schnorr import lift_x
from bitcoinutils.script import Script
from bitcoinutils.utils import tagged_hash, tapleaf_tagged_hash, tweak_taproot_pubkey

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

TAPSCRIPT_LEAF_VERSION = LEAF_VERSION_TAPSCRIPT
TAPROOT_WITNESS_VERSION = 1

NETWORK_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
}


class InvalidAddress(ValueError):
    """Raised when an address cannot be decoded as a taproot output."""


def hrp_for_network(network: str) -> str:
    try:
        return NETWORK_HRPS[network]
    except KeyError as exc:
        raise ValueError(f"Unsupported network: {network}") from exc


def taproot_leaf_hash(script: Script) -> bytes:
    """TapLeaf hash of ``script`` under the tapscript leaf version."""

    return tapleaf_tagged_hash(script)


def taproot_tweak_pubkey(internal_key: bytes, merkle_root: bytes) -> Tuple[bytes, int]:
    """Tweak a 32-byte x-only internal key with ``merkle_root``.

    Returns the x-only output key and its y parity (1 when odd), the bit the
    control block carries.

    Raises:
        ValueError: If ``internal_key`` is not an x coordinate on the curve.
    """

    if len(internal_key) != 32:
        raise ValueError(f"Internal key must be 32 bytes, got {len(internal_key)}")
    point = lift_x(int.from_bytes(internal_key, "big"))
    if point is None:
        raise ValueError("Internal key is not a valid x-only public key")

    tweak = int.from_bytes(tagged_hash(internal_key + merkle_root, "TapTweak"), "big")
    if tweak >= SECP256K1_ORDER:
        raise ValueError("Tweak value exceeds curve order")

    # lift_x returns the even-y point, as BIP340 requires for x-only keys
    full_key = point[0].to_bytes(32, "big") + point[1].to_bytes(32, "big")
    output_key, is_odd = tweak_taproot_pubkey(full_key, tweak)
    return output_key[:32], int(is_odd)


def create_taproot_address(output_key: bytes, network: str = "mainnet") -> str:
    """Create a bech32m P2TR address for a 32-byte output key.

    Example:
        >>> create_taproot_address(bytes(range(32)), "testnet").startswith("tb1p")
        True
    """
    if len(output_key) != 32:
        raise ValueError(f"Output key must be 32 bytes, got {len(output_key)}")

    return bech32.encode(hrp_for_network(network), TAPROOT_WITNESS_VERSION, output_key)


def decode_taproot_address(address: str, network: str | None = None) -> bytes:
    """Return the 32-byte output key committed to by a P2TR address.

    When ``network`` is given the address HRP must belong to that network.

    Raises:
        InvalidAddress: On a malformed or mixed-case address, a bad checksum,
            an unknown or mismatched HRP, or any witness version other than 1.
    """
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddress("Address must be a non-empty string")
    candidate = address.strip()

    hrp, _, _ = bech32.bech32_decode(candidate)
    if hrp is None:
        raise InvalidAddress(f"{address} is not a valid bech32 address")
    if hrp not in NETWORK_HRPS.values():
        raise InvalidAddress(f"Unknown address prefix: {hrp}")
    if network is not None and hrp != hrp_for_network(network):
        raise InvalidAddress(f"Address {address} does not belong to {network}")

    # decode() also enforces the bech32/bech32m variant for the witness version
    witver, witprog = bech32.decode(hrp, candidate)
    if witver is None:
        raise InvalidAddress(f"{address} is not a valid segwit address")
    if witver != TAPROOT_WITNESS_VERSION or len(witprog) != 32:
        raise InvalidAddress(f"Address {address} is not a taproot (witness v1) address")
    return bytes(witprog)


def p2tr_script_pubkey(output_key: bytes) -> Script:
    """Return the ``OP_1 <32-byte key>`` scriptPubKey for an output key."""
    if len(output_key) != 32:
        raise ValueError(f"Output key must be 32 bytes, got {len(output_key)}")
    return Script(["OP_1", output_key.hex()])
