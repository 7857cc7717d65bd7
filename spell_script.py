"""
Spell tapscript envelope.

The payload is committed behind an unexecuted branch and the leaf is gated
by a single Schnorr key:

    OP_FALSE OP_IF
      OP_PUSH "spell"
      OP_PUSH <chunk_0> ... OP_PUSH <chunk_n>   (<= 520 bytes each)
    OP_ENDIF
    <x-only pubkey> OP_CHECKSIG
"""

from __future__ import annotations

from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_ENDIF,
    OP_FALSE,
    OP_IF,
    CScript,
    CScriptInvalidError,
)

from spell_errors import MarkerNotFound

SPELL_MARKER = b"spell"
# MAX_SCRIPT_ELEMENT_SIZE
MAX_CHUNK_SIZE = 520


def chunk_spell_data(spell_data: bytes) -> list[bytes]:
    return [
        spell_data[i : i + MAX_CHUNK_SIZE]
        for i in range(0, len(spell_data), MAX_CHUNK_SIZE)
    ]


def encode_spell_script(spell_data: bytes, public_key: bytes) -> bytes:
    """Build the spell tapscript for ``spell_data`` checksig-gated by ``public_key``."""
    if len(public_key) != 32:
        raise ValueError(f"x-only public key must be 32 bytes, got {len(public_key)}")
    return bytes(
        CScript(
            [
                OP_FALSE,
                OP_IF,
                SPELL_MARKER,
                *chunk_spell_data(bytes(spell_data)),
                OP_ENDIF,
                bytes(public_key),
                OP_CHECKSIG,
            ]
        )
    )


def decode_spell_script(script: bytes) -> bytes:
    """
    Recover the payload from a spell tapscript.

    Every push after the "spell" marker is concatenated, in order, up to
    OP_ENDIF. Anything before the marker is ignored.
    """
    chunks: list[bytes] = []
    collecting = False
    try:
        for op in CScript(script):
            if not collecting:
                if isinstance(op, bytes) and op == SPELL_MARKER:
                    collecting = True
                continue
            if not isinstance(op, bytes) and op == OP_ENDIF:
                break
            if isinstance(op, bytes):
                chunks.append(op)
    except CScriptInvalidError as exc:
        if not collecting:
            raise MarkerNotFound(
                f"Script could not be decompiled before a spell marker: {exc}",
                script_size=len(script),
            ) from exc
        raise MarkerNotFound(
            f"Spell payload is truncated: {exc}", script_size=len(script)
        ) from exc

    if not collecting:
        raise MarkerNotFound(
            "No 'spell' marker found in script.", script_size=len(script)
        )
    return b"".join(chunks)


def has_spell_marker(script: bytes) -> bool:
    """True when ``script`` decompiles and pushes the literal "spell" marker."""
    try:
        return any(isinstance(op, bytes) and op == SPELL_MARKER for op in CScript(script))
    except CScriptInvalidError:
        return False


def spell_public_key(script: bytes) -> bytes | None:
    """The 32-byte key pushed right before the trailing OP_CHECKSIG, if any."""
    try:
        ops = list(CScript(script))
    except CScriptInvalidError:
        return None
    if len(ops) < 2 or isinstance(ops[-1], bytes) or ops[-1] != OP_CHECKSIG:
        return None
    key = ops[-2]
    if isinstance(key, bytes) and len(key) == 32:
        return key
    return None
