"""
Minimal BIP-174 (version 0) PSBT container.

Only the fields a spell flow needs are modelled; every other key/value pair
is carried through untouched in ``unknown`` so a PSBT produced by another
wallet survives a parse/serialize round trip.

Global:  0x00 unsigned transaction
Input:   0x00 non-witness UTXO, 0x01 witness UTXO, 0x04 redeem script,
         0x08 final script witness, 0x15 tap leaf script, 0x17 tap internal key
"""

from __future__ import annotations

import base64
import struct
from dataclasses import dataclass, field

from bitcoin.core import (
    CMutableTransaction,
    CTransaction,
    CTxInWitness,
    CTxWitness,
    b2lx,
)
from bitcoin.core.script import CScriptWitness

from taproot import TAPROOT_LEAF_TAPSCRIPT
from witness import compact_size, deserialize_witness, read_compact_size, serialize_witness

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17


@dataclass
class WitnessUtxo:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + compact_size(len(self.script)) + self.script

    @classmethod
    def deserialize(cls, data: bytes) -> WitnessUtxo:
        if len(data) < 9:
            raise ValueError("Witness UTXO record is too short.")
        value = struct.unpack_from("<q", data, 0)[0]
        script_len, offset = read_compact_size(data, 8)
        script = bytes(data[offset : offset + script_len])
        if len(script) != script_len:
            raise ValueError("Witness UTXO script is truncated.")
        return cls(value=value, script=script)


@dataclass
class TapLeafScript:
    """A not-yet-finalized tapscript leaf and the control block proving it."""

    control_block: bytes
    script: bytes
    leaf_version: int = TAPROOT_LEAF_TAPSCRIPT


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: WitnessUtxo | None = None
    redeem_script: bytes | None = None
    final_script_witness: list[bytes] | None = None
    tap_leaf_scripts: list[TapLeafScript] = field(default_factory=list)
    tap_internal_key: bytes | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)


@dataclass
class PsbtOutput:
    unknown: dict[bytes, bytes] = field(default_factory=dict)


def _write_kv(parts: list[bytes], key: bytes, value: bytes) -> None:
    parts.append(compact_size(len(key)) + key + compact_size(len(value)) + value)


def _read_map(raw: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    """Read key/value pairs up to the 0x00 separator. Returns (pairs, new_offset)."""
    pairs: list[tuple[bytes, bytes]] = []
    while True:
        key_len, offset = read_compact_size(raw, offset)
        if key_len == 0:
            return pairs, offset
        key = raw[offset : offset + key_len]
        offset += key_len
        val_len, offset = read_compact_size(raw, offset)
        value = raw[offset : offset + val_len]
        offset += val_len
        if len(key) != key_len or len(value) != val_len:
            raise ValueError("Unexpected end of PSBT data.")
        pairs.append((bytes(key), bytes(value)))


@dataclass
class Psbt:
    tx: CMutableTransaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_unsigned_tx(cls, tx: CTransaction) -> Psbt:
        return cls(
            tx=CMutableTransaction.from_tx(tx),
            inputs=[PsbtInput() for _ in tx.vin],
            outputs=[PsbtOutput() for _ in tx.vout],
        )

    # -- encoding ---------------------------------------------------------

    def serialize(self) -> bytes:
        parts = [PSBT_MAGIC]
        _write_kv(
            parts,
            bytes([PSBT_GLOBAL_UNSIGNED_TX]),
            self.tx.serialize({"include_witness": False}),
        )
        for key, value in self.unknown.items():
            _write_kv(parts, key, value)
        parts.append(b"\x00")

        for inp in self.inputs:
            if inp.non_witness_utxo is not None:
                _write_kv(parts, bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo)
            if inp.witness_utxo is not None:
                _write_kv(parts, bytes([PSBT_IN_WITNESS_UTXO]), inp.witness_utxo.serialize())
            if inp.redeem_script is not None:
                _write_kv(parts, bytes([PSBT_IN_REDEEM_SCRIPT]), inp.redeem_script)
            if inp.final_script_witness is not None:
                _write_kv(
                    parts,
                    bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                    serialize_witness(inp.final_script_witness),
                )
            for leaf in inp.tap_leaf_scripts:
                _write_kv(
                    parts,
                    bytes([PSBT_IN_TAP_LEAF_SCRIPT]) + leaf.control_block,
                    leaf.script + bytes([leaf.leaf_version]),
                )
            if inp.tap_internal_key is not None:
                _write_kv(parts, bytes([PSBT_IN_TAP_INTERNAL_KEY]), inp.tap_internal_key)
            for key, value in inp.unknown.items():
                _write_kv(parts, key, value)
            parts.append(b"\x00")

        for out in self.outputs:
            for key, value in out.unknown.items():
                _write_kv(parts, key, value)
            parts.append(b"\x00")
        return b"".join(parts)

    @classmethod
    def deserialize(cls, raw: bytes) -> Psbt:
        if raw[:5] != PSBT_MAGIC:
            raise ValueError("Not a valid PSBT (missing magic bytes).")

        global_pairs, offset = _read_map(raw, 5)
        tx = None
        unknown: dict[bytes, bytes] = {}
        for key, value in global_pairs:
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = CMutableTransaction.from_tx(CTransaction.deserialize(value))
            else:
                unknown[key] = value
        if tx is None:
            raise ValueError("No unsigned transaction found in PSBT.")

        inputs = []
        for _ in tx.vin:
            pairs, offset = _read_map(raw, offset)
            inputs.append(_parse_input(pairs))

        outputs = []
        for _ in tx.vout:
            pairs, offset = _read_map(raw, offset)
            outputs.append(PsbtOutput(unknown=dict(pairs)))

        return cls(tx=tx, inputs=inputs, outputs=outputs, unknown=unknown)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def to_hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def from_base64(cls, b64_str: str) -> Psbt:
        return cls.deserialize(base64.b64decode(b64_str))

    @classmethod
    def parse(cls, psbt_input: str) -> Psbt:
        """Detect format (hex or base64) and parse."""
        psbt_input = psbt_input.strip()
        # PSBT magic bytes: 70736274ff (hex) = "cHNidP" (base64 prefix)
        if psbt_input.startswith("70736274"):
            return cls.deserialize(bytes.fromhex(psbt_input))
        try:
            raw = base64.b64decode(psbt_input, validate=True)
        except ValueError as exc:
            raise ValueError(
                "Invalid PSBT format. Provide hex or base64 encoded PSBT "
                "starting with magic bytes 70736274ff."
            ) from exc
        return cls.deserialize(raw)

    # -- accessors --------------------------------------------------------

    def txid(self) -> str:
        return b2lx(self.tx.GetTxid())

    def prevout(self, index: int) -> WitnessUtxo | None:
        """Value and script of the output spent by input ``index``, if known."""
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo
        if inp.non_witness_utxo is not None:
            prev_tx = CTransaction.deserialize(inp.non_witness_utxo)
            n = self.tx.vin[index].prevout.n
            if n < len(prev_tx.vout):
                txout = prev_tx.vout[n]
                return WitnessUtxo(value=txout.nValue, script=bytes(txout.scriptPubKey))
        return None

    def extract_transaction(self, require_complete: bool = True) -> CMutableTransaction:
        """
        Build the network transaction from finalized inputs.

        With ``require_complete`` every input needs a final script witness;
        otherwise unsigned inputs are left with an empty witness.
        """
        missing = [i for i, inp in enumerate(self.inputs) if inp.final_script_witness is None]
        if require_complete and missing:
            raise ValueError(f"Inputs {missing} are not finalized.")
        tx = CMutableTransaction.from_tx(self.tx)
        tx.wit = CTxWitness(
            [
                CTxInWitness(CScriptWitness(inp.final_script_witness or []))
                for inp in self.inputs
            ]
        )
        return tx


def _parse_input(pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
    inp = PsbtInput()
    for key, value in pairs:
        key_type = key[0]
        if key_type == PSBT_IN_NON_WITNESS_UTXO and len(key) == 1:
            inp.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO and len(key) == 1:
            inp.witness_utxo = WitnessUtxo.deserialize(value)
        elif key_type == PSBT_IN_REDEEM_SCRIPT and len(key) == 1:
            inp.redeem_script = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and len(key) == 1:
            inp.final_script_witness = deserialize_witness(value)
        elif key_type == PSBT_IN_TAP_LEAF_SCRIPT and len(key) > 1 and value:
            inp.tap_leaf_scripts.append(
                TapLeafScript(control_block=key[1:], script=value[:-1], leaf_version=value[-1])
            )
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY and len(key) == 1:
            inp.tap_internal_key = value
        else:
            inp.unknown[key] = value
    return inp
