"""
Taproot single-leaf script-path commitments.

Given an x-only internal key and one tapscript leaf, derive the leaf hash,
the TapTweak, the tweaked output key with its parity, and the control block
that proves the leaf belongs to the output:

    leaf_hash     = TaggedHash("TapLeaf", 0xc0 || compact_size(len) || script)
    tweak         = TaggedHash("TapTweak", internal_key || leaf_hash)
    output_key    = x(lift_x(internal_key) + tweak * G)
    control_block = (0xc0 | parity) || internal_key

Two derivations of the output key are kept. ``tweak_output_key`` uses
libsecp256k1's x-only tweak-add; ``calculate_control_block`` recomputes the
point sum from a full public key and reads parity from the compressed
prefix. They must always agree.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from coincurve import PublicKey, PublicKeyXOnly

from bitcoin_address import BTCNetwork, p2tr_script, script_to_address
from spell_errors import InvalidTweak, OutputKeyMismatch, ScriptTooLarge
from witness import compact_size

logger = logging.getLogger(__name__)

TAPROOT_LEAF_TAPSCRIPT = 0xC0
TAPROOT_LEAF_MASK = 0xFE
# Leaf length must fit a 0xfd-prefixed compact size.
MAX_LEAF_SCRIPT_SIZE = 0xFFFF

SECP256K1_ORDER = int(
    "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16
)


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA-256(SHA-256(tag) || SHA-256(tag) || msg)"""
    tag_hash = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def tap_leaf_hash(leaf_script: bytes, leaf_version: int = TAPROOT_LEAF_TAPSCRIPT) -> bytes:
    if len(leaf_script) > MAX_LEAF_SCRIPT_SIZE:
        raise ScriptTooLarge(
            f"Leaf script is {len(leaf_script)} bytes; the maximum is {MAX_LEAF_SCRIPT_SIZE}.",
            size=len(leaf_script),
            limit=MAX_LEAF_SCRIPT_SIZE,
        )
    return tagged_hash(
        "TapLeaf", bytes([leaf_version]) + compact_size(len(leaf_script)) + leaf_script
    )


def tap_tweak(internal_key: bytes, leaf_hash: bytes) -> bytes:
    return tagged_hash("TapTweak", internal_key + leaf_hash)


def _check_internal_key(internal_key: bytes) -> None:
    if len(internal_key) != 32:
        raise InvalidTweak(
            f"Internal key must be 32 bytes, got {len(internal_key)}.",
            internal_key=internal_key,
        )


def tweak_output_key(internal_key: bytes, tweak: bytes) -> tuple[bytes, int]:
    """x-only tweak-add via libsecp256k1. Returns (output_key, parity)."""
    _check_internal_key(internal_key)
    try:
        point = PublicKeyXOnly(internal_key)
        point.tweak_add(tweak)
    except ValueError as exc:
        raise InvalidTweak(
            f"Cannot tweak internal key {internal_key.hex()}: {exc}",
            internal_key=internal_key,
            tweak=tweak,
        ) from exc
    return point.format(), int(point.parity)


def _tweak_output_key_manual(internal_key: bytes, tweak: bytes) -> tuple[bytes, int]:
    _check_internal_key(internal_key)
    if int.from_bytes(tweak, "big") >= SECP256K1_ORDER:
        raise InvalidTweak(
            "Tap tweak exceeds the curve order.", internal_key=internal_key, tweak=tweak
        )
    try:
        # lift_x: the even-y point with this x coordinate
        base = PublicKey(b"\x02" + internal_key)
        tweaked = base.add(tweak)
    except ValueError as exc:
        raise InvalidTweak(
            f"Cannot tweak internal key {internal_key.hex()}: {exc}",
            internal_key=internal_key,
            tweak=tweak,
        ) from exc
    compressed = tweaked.format(compressed=True)
    return compressed[1:], compressed[0] & 1


def taproot_output_key_from_script(script: bytes) -> bytes | None:
    """Return the x-only key of an ``OP_1 <32 bytes>`` script, else None."""
    if len(script) == 34 and script[0] == 0x51 and script[1] == 0x20:
        return bytes(script[2:])
    return None


def verify_output_key(output_key: bytes, expected_output_script: bytes) -> None:
    """Raise OutputKeyMismatch unless the script is P2TR paying ``output_key``."""
    embedded = taproot_output_key_from_script(expected_output_script)
    if embedded is None:
        raise OutputKeyMismatch(
            f"Expected output script {expected_output_script.hex()} is not a "
            "taproot (OP_1 <32-byte key>) script.",
            expected=expected_output_script,
            actual=output_key,
        )
    if embedded != output_key:
        raise OutputKeyMismatch(
            "Output key mismatch: internal key or leaf script does not match "
            "the taproot output script.",
            expected=embedded,
            actual=output_key,
        )


@dataclass(frozen=True)
class TapCommitment:
    """Derived single-leaf taproot commitment."""

    internal_key: bytes
    leaf_script: bytes
    leaf_hash: bytes
    tweak: bytes
    output_key: bytes
    parity: int
    control_block: bytes
    leaf_version: int = TAPROOT_LEAF_TAPSCRIPT

    @property
    def output_script(self) -> bytes:
        return p2tr_script(self.output_key)

    def address(self, network: BTCNetwork = "mainnet") -> str:
        return script_to_address(self.output_script, network)


def compute_tap_commitment(
    internal_key: bytes,
    leaf_script: bytes,
    expected_output_script: bytes | None = None,
) -> TapCommitment:
    """
    Commit ``leaf_script`` under ``internal_key`` as a single-leaf tree.

    When ``expected_output_script`` is given, the derived output key must be
    the key it pays to, otherwise OutputKeyMismatch is raised.
    """
    leaf_hash = tap_leaf_hash(leaf_script)
    tweak = tap_tweak(internal_key, leaf_hash)
    output_key, parity = tweak_output_key(internal_key, tweak)
    if expected_output_script is not None:
        verify_output_key(output_key, expected_output_script)
    control_block = bytes([TAPROOT_LEAF_TAPSCRIPT | parity]) + internal_key
    logger.debug(
        "Committed %d-byte leaf under %s -> output key %s (parity %d)",
        len(leaf_script),
        internal_key.hex(),
        output_key.hex(),
        parity,
    )
    return TapCommitment(
        internal_key=bytes(internal_key),
        leaf_script=bytes(leaf_script),
        leaf_hash=leaf_hash,
        tweak=tweak,
        output_key=output_key,
        parity=parity,
        control_block=control_block,
    )


def calculate_control_block(
    internal_key: bytes,
    leaf_script: bytes,
    taproot_output: bytes | None = None,
) -> bytes:
    """
    Recompute the control block by full point addition.

    Independent of ``compute_tap_commitment``'s tweak-add path; used to
    cross-check it. ``taproot_output`` is verified like
    ``expected_output_script``.
    """
    leaf_hash = tap_leaf_hash(leaf_script)
    tweak = tap_tweak(internal_key, leaf_hash)
    output_key, parity = _tweak_output_key_manual(internal_key, tweak)
    if taproot_output is not None:
        verify_output_key(output_key, taproot_output)
    return bytes([TAPROOT_LEAF_TAPSCRIPT | parity]) + internal_key


@dataclass(frozen=True)
class ControlBlock:
    """Parsed taproot control block."""

    leaf_version: int
    parity: int
    internal_key: bytes
    merkle_path: tuple[bytes, ...] = ()


def parse_control_block(control_block: bytes) -> ControlBlock:
    if len(control_block) < 33 or (len(control_block) - 33) % 32 != 0:
        raise ValueError(
            f"Control block must be 33 + 32*n bytes, got {len(control_block)}."
        )
    header = control_block[0]
    nodes = tuple(
        bytes(control_block[i : i + 32]) for i in range(33, len(control_block), 32)
    )
    return ControlBlock(
        leaf_version=header & TAPROOT_LEAF_MASK,
        parity=header & 0x01,
        internal_key=bytes(control_block[1:33]),
        merkle_path=nodes,
    )
