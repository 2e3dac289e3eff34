"""Commit and reveal transactions, script-path signing and size estimation.

Skeletons, the BIP341 signature digest, witnesses and virtual sizes come from
``bitcoinutils``. Signatures are produced by :class:`EphemeralKey`, which signs
with libsecp256k1; the library's own private-key operations are pure Python.
Every transaction built here has exactly one input, spent through a single
tapscript leaf.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from bitcoinutils.constants import TAPROOT_SIGHASH_ALL
from bitcoinutils.script import Script
from bitcoinutils.transactions import Transaction, TxInput, TxOutput, TxWitnessInput

from .keys import EphemeralKey, KeyValidationFailed, verify_schnorr
from .scripts import TapLeaf
from .taproot import p2tr_script_pubkey

if TYPE_CHECKING:
    from .inscription import Inscription
    from .watcher import FundingEvent

logger = logging.getLogger(__name__)

SCHNORR_SIGNATURE_SIZE = 64
# script-path spends set ext_flag=1 in the BIP341 digest
SCRIPT_PATH_EXT_FLAG = 1

# Placeholder outpoint for the signature self-test; never broadcast.
SELF_TEST_TXID = "a99d1112bcb35845fd44e703ef2c611f0360dd2bb28927625dbc13eab58cd968"
# bitcoinutils serializes an all-zero txid as a coinbase input
DUMMY_TXID = "11" * 32


def build_transaction(txid: str, vout: int, value: int, outputs: Sequence[TxOutput]) -> Transaction:
    """Build an unsigned segwit skeleton spending ``txid:vout`` (worth ``value``)."""

    if not outputs:
        raise ValueError("A transaction needs at least one output")
    for txout in outputs:
        if txout.amount < 0:
            raise ValueError(f"Output value must not be negative, got {txout.amount}")
    spent = sum(txout.amount for txout in outputs)
    if spent > value:
        raise ValueError(f"Outputs spend {spent} sats but the input only holds {value}")
    return Transaction([TxInput(txid, vout)], list(outputs), has_segwit=True)


def signature_hash(tx: Transaction, leaf: TapLeaf, amount: int) -> bytes:
    """BIP341 ``SIGHASH_DEFAULT`` digest for spending ``leaf``'s output of ``amount`` sats."""

    return tx.get_transaction_taproot_digest(
        0,
        [leaf.script_pubkey],
        [amount],
        SCRIPT_PATH_EXT_FLAG,
        script=leaf.script,
        sighash=TAPROOT_SIGHASH_ALL,
    )


def _witness(signature: bytes, leaf: TapLeaf) -> TxWitnessInput:
    return TxWitnessInput([signature.hex(), leaf.script.to_hex(), leaf.control_block.to_hex()])


def sign_script_path(tx: Transaction, key: EphemeralKey, leaf: TapLeaf, amount: int) -> bytes:
    """Sign the input through ``leaf`` and attach ``[signature, script, control block]``."""

    signature = key.sign(signature_hash(tx, leaf, amount))
    tx.witnesses = [_witness(signature, leaf)]
    return signature


def verify_script_path(tx: Transaction, xonly_pubkey: bytes, leaf: TapLeaf, amount: int) -> bool:
    if len(tx.witnesses) != 1:
        return False
    stack = tx.witnesses[0].stack
    if len(stack) != 3 or stack[1:] != [leaf.script.to_hex(), leaf.control_block.to_hex()]:
        return False
    try:
        signature = bytes.fromhex(stack[0])
    except ValueError:
        return False
    return verify_schnorr(xonly_pubkey, signature_hash(tx, leaf, amount), signature)


def self_test(key: EphemeralKey, init_leaf: TapLeaf) -> None:
    """Sign a throwaway skeleton and verify it before any funds are involved.

    Raises:
        KeyValidationFailed: If the signature does not verify against the
            key's public half.
    """

    tx = build_transaction(SELF_TEST_TXID, 0, 10_000, [TxOutput(8_000, init_leaf.script_pubkey)])
    try:
        sign_script_path(tx, key, init_leaf, 10_000)
    except ValueError as exc:
        raise KeyValidationFailed(f"Generated key could not sign: {exc}") from exc
    if not verify_script_path(tx, key.xonly, init_leaf, 10_000):
        raise KeyValidationFailed("Generated key could not be validated; start a new job")
    logger.debug("Signature self-test passed for %s", init_leaf.address)


def _measure(leaf: TapLeaf, output_count: int) -> int:
    placeholder = p2tr_script_pubkey(b"\x00" * 32)
    tx = build_transaction(
        DUMMY_TXID, 0, 0, [TxOutput(0, placeholder) for _ in range(output_count)]
    )
    tx.witnesses = [_witness(b"\x00" * SCHNORR_SIGNATURE_SIZE, leaf)]
    return tx.get_vsize()


def estimate_reveal_vsize(leaf: TapLeaf) -> int:
    """Virtual size of a reveal: one script-path input, one P2TR output."""

    return _measure(leaf, 1)


def estimate_commit_vsize(init_leaf: TapLeaf, output_count: int) -> int:
    """Virtual size of a commit: one init-leaf input, ``output_count`` P2TR outputs."""

    return _measure(init_leaf, output_count)


def build_commit_transaction(
    key: EphemeralKey,
    init_leaf: TapLeaf,
    funding: "FundingEvent",
    inscriptions: Sequence["Inscription"],
    padding: int,
    tip_output: TxOutput | None = None,
) -> Transaction:
    """Spend the funding output into one output per inscription address.

    Output ``i`` funds inscription ``i``; the tip output, if any, comes last.
    """

    outputs = [
        TxOutput(inscription.commit_value(padding), inscription.leaf.script_pubkey)
        for inscription in inscriptions
    ]
    if tip_output is not None:
        outputs.append(tip_output)
    tx = build_transaction(funding.txid, funding.vout, funding.amount, outputs)
    sign_script_path(tx, key, init_leaf, funding.amount)
    return tx


def build_reveal_transaction(
    key: EphemeralKey,
    inscription: "Inscription",
    funding: "FundingEvent",
    destination_script: Script,
) -> Transaction:
    """Spend an inscription's commit output to the destination, revealing the leaf."""

    output = TxOutput(funding.amount - inscription.fee, destination_script)
    tx = build_transaction(funding.txid, funding.vout, funding.amount, [output])
    sign_script_path(tx, key, inscription.leaf, funding.amount)
    return tx
