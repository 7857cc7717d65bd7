"""
Script-path signing of spell inputs.

Signing runs in two explicit phases:

1. hash computation: the BIP-341 signature message for the input, with the
   tapleaf hash as script commitment (ext_flag = 1). The message commits to
   every previous output amount and script, binding the signature to the
   whole input set.
2. signing: a BIP-340 Schnorr signature over that hash, then the witness
   ``[signature, tapscript, control_block]``.

Key material comes from an explicitly passed ``SigningContext`` and is only
held for the duration of a call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    lx,
)
from bitcoin.core.script import CScript
from bitcointx.core import CTransaction as TxCTransaction, CTxOut as TxCTxOut
from bitcointx.core.script import (
    SIGHASH_ALL as TX_SIGHASH_ALL,
    SIGVERSION_TAPSCRIPT,
    CScript as TxCScript,
    SignatureHashSchnorr,
)
from coincurve import PrivateKey, PublicKeyXOnly
from coincurve.context import GLOBAL_CONTEXT, Context

from bitcoin_address import address_to_script
from psbt import Psbt
from spell_config import BTCNetwork
from spell_errors import IndexOutOfRange, InvalidPrivateKey, SighashError
from taproot import compute_tap_commitment, tap_leaf_hash
from witness import serialize_witness

logger = logging.getLogger(__name__)

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SUPPORTED_SIGHASH_TYPES = (SIGHASH_DEFAULT, SIGHASH_ALL)

# BIP-125 opt-in RBF sequence used when a draft input does not set one.
DEFAULT_SEQUENCE = 0xFFFFFFFD


class SigningContext:
    """
    Key-pair factory for Schnorr signing.

    ``aux_randomness`` follows coincurve: b"" draws fresh randomness per
    signature, None signs deterministically.
    """

    def __init__(
        self, context: Context = GLOBAL_CONTEXT, aux_randomness: bytes | None = b""
    ) -> None:
        self.context = context
        self.aux_randomness = aux_randomness

    def load_private_key(self, private_key: bytes | str) -> PrivateKey:
        if isinstance(private_key, str):
            raw = private_key.strip()
            if raw.startswith("0x"):
                raw = raw[2:]
            try:
                private_key = bytes.fromhex(raw)
            except ValueError as exc:
                raise InvalidPrivateKey("Private key is not valid hex.") from exc
        if len(private_key) != 32:
            raise InvalidPrivateKey(
                f"Private key must be 32 bytes, got {len(private_key)}.",
                length=len(private_key),
            )
        try:
            return PrivateKey(private_key, context=self.context)
        except ValueError as exc:
            raise InvalidPrivateKey(
                "Private key is not a scalar in the secp256k1 curve range."
            ) from exc

    def x_only_public_key(self, key: PrivateKey) -> bytes:
        return key.public_key.format(compressed=True)[1:]

    def sign_schnorr(self, key: PrivateKey, message: bytes) -> bytes:
        return key.sign_schnorr(message, self.aux_randomness)


@dataclass
class SigningInput:
    txid: str
    vout: int
    value: int | None = None
    script: bytes | None = None
    sequence: int = DEFAULT_SEQUENCE


@dataclass
class SigningOutput:
    value: int
    script: bytes


@dataclass
class TxDraft:
    """Transaction being signed plus the data of every output it spends."""

    inputs: list[SigningInput] = field(default_factory=list)
    outputs: list[SigningOutput] = field(default_factory=list)
    sign_index: int = 0
    version: int = 2
    locktime: int = 0

    @classmethod
    def from_dict(cls, tx_info: dict[str, Any], network: BTCNetwork = "mainnet") -> TxDraft:
        """
        Build a draft from ``{inputs: [{txid, vout, value, script, sequence}],
        outputs: [{address | script, value}], signIndex}``.
        """
        inputs = []
        for item in tx_info.get("inputs") or []:
            script = item.get("script")
            value = item.get("value")
            sequence = item.get("sequence")
            inputs.append(
                SigningInput(
                    txid=item["txid"],
                    vout=int(item["vout"]),
                    value=int(value) if value is not None else None,
                    script=bytes.fromhex(script) if script else None,
                    sequence=int(sequence) if sequence is not None else DEFAULT_SEQUENCE,
                )
            )
        outputs = []
        for item in tx_info.get("outputs") or []:
            if item.get("address"):
                script = address_to_script(item["address"], network)
            elif item.get("script"):
                script = bytes.fromhex(item["script"])
            else:
                raise ValueError("Each output needs an address or a script.")
            outputs.append(SigningOutput(value=int(item["value"]), script=script))
        return cls(
            inputs=inputs,
            outputs=outputs,
            sign_index=int(tx_info.get("signIndex") or 0),
        )

    @classmethod
    def from_psbt(cls, psbt: Psbt, sign_index: int) -> TxDraft:
        inputs = []
        for i, txin in enumerate(psbt.tx.vin):
            prevout = psbt.prevout(i)
            inputs.append(
                SigningInput(
                    txid=txin.prevout.hash[::-1].hex(),
                    vout=txin.prevout.n,
                    value=prevout.value if prevout else None,
                    script=prevout.script if prevout else None,
                    sequence=txin.nSequence,
                )
            )
        outputs = [
            SigningOutput(value=txout.nValue, script=bytes(txout.scriptPubKey))
            for txout in psbt.tx.vout
        ]
        return cls(
            inputs=inputs,
            outputs=outputs,
            sign_index=sign_index,
            version=psbt.tx.nVersion,
            locktime=psbt.tx.nLockTime,
        )

    def to_transaction(self) -> CMutableTransaction:
        vin = [
            CMutableTxIn(COutPoint(lx(i.txid), i.vout), nSequence=i.sequence)
            for i in self.inputs
        ]
        vout = [CMutableTxOut(o.value, CScript(o.script)) for o in self.outputs]
        return CMutableTransaction(vin, vout, nLockTime=self.locktime, nVersion=self.version)


@dataclass(frozen=True)
class SpellWitness:
    signature: bytes
    tapscript: bytes
    control_block: bytes
    public_key: bytes
    sighash: bytes

    @property
    def stack(self) -> list[bytes]:
        return [self.signature, self.tapscript, self.control_block]

    def serialize(self) -> bytes:
        return serialize_witness(self.stack)

    def to_dict(self) -> dict[str, str]:
        return {
            "signature": self.signature.hex(),
            "tapscript": self.tapscript.hex(),
            "controlBlock": self.control_block.hex(),
        }


def taproot_signature_hash(
    tx: CTransaction,
    input_index: int,
    prevout_values: Sequence[int | None],
    prevout_scripts: Sequence[bytes | None],
    leaf_hash: bytes,
    hash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """BIP-341 script-path signature hash (ext_flag 1, no annex)."""
    n_inputs = len(tx.vin)
    if len(prevout_values) != n_inputs or len(prevout_scripts) != n_inputs:
        raise SighashError(
            f"Transaction has {n_inputs} inputs but {len(prevout_values)} previous "
            f"amounts and {len(prevout_scripts)} previous scripts were supplied.",
            expected=n_inputs,
            amounts=len(prevout_values),
            scripts=len(prevout_scripts),
        )
    if not 0 <= input_index < n_inputs:
        raise SighashError(
            f"Input index {input_index} is out of range for {n_inputs} inputs.",
            index=input_index,
            inputs=n_inputs,
        )
    if hash_type not in SUPPORTED_SIGHASH_TYPES:
        raise SighashError(
            f"Unsupported sighash type 0x{hash_type:02x}.", hash_type=hash_type
        )
    for i, (value, script) in enumerate(zip(prevout_values, prevout_scripts)):
        if value is None or script is None:
            raise SighashError(
                f"Previous output of input {i} is missing its "
                f"{'amount' if value is None else 'script'}.",
                index=i,
            )

    spending_tx = TxCTransaction.deserialize(tx.serialize())
    spent_outputs = [
        TxCTxOut(value, TxCScript(script))
        for value, script in zip(prevout_values, prevout_scripts)
    ]
    # SIGHASH_DEFAULT is signalled by omitting the hash type
    return SignatureHashSchnorr(
        spending_tx,
        input_index,
        spent_outputs,
        hashtype=None if hash_type == SIGHASH_DEFAULT else TX_SIGHASH_ALL,
        sigversion=SIGVERSION_TAPSCRIPT,
        tapleaf_hash=leaf_hash,
    )


def compute_spell_sighash(
    draft: TxDraft, tapscript: bytes, hash_type: int = SIGHASH_DEFAULT
) -> bytes:
    leaf_hash = tap_leaf_hash(tapscript)
    return taproot_signature_hash(
        draft.to_transaction(),
        draft.sign_index,
        [i.value for i in draft.inputs],
        [i.script for i in draft.inputs],
        leaf_hash,
        hash_type,
    )


def sign_script_path(
    draft: TxDraft,
    tapscript: bytes,
    private_key: bytes | str,
    signing_context: SigningContext,
    control_block: bytes | None = None,
    hash_type: int = SIGHASH_DEFAULT,
) -> SpellWitness:
    """
    Sign input ``draft.sign_index`` through the ``tapscript`` leaf.

    A caller-supplied ``control_block`` is used as-is; otherwise it is
    recomputed with the signing key as internal key.
    """
    sighash = compute_spell_sighash(draft, tapscript, hash_type)

    key = signing_context.load_private_key(private_key)
    signature = signing_context.sign_schnorr(key, sighash)
    # SIGHASH_DEFAULT signatures carry no type byte
    if hash_type != SIGHASH_DEFAULT:
        signature += bytes([hash_type])

    if control_block is None:
        x_only = signing_context.x_only_public_key(key)
        control_block = compute_tap_commitment(x_only, tapscript).control_block

    logger.debug(
        "Signed input %d with a %d-byte signature over %s",
        draft.sign_index,
        len(signature),
        sighash.hex(),
    )
    return SpellWitness(
        signature=signature,
        tapscript=bytes(tapscript),
        control_block=bytes(control_block),
        public_key=key.public_key.format(compressed=True),
        sighash=sighash,
    )


def verify_spell_signature(signature: bytes, sighash: bytes, public_key: bytes) -> bool:
    """Schnorr-verify a 64/65-byte witness signature against an x-only key."""
    if len(signature) not in (64, 65) or len(public_key) != 32:
        return False
    try:
        return PublicKeyXOnly(public_key).verify(signature[:64], sighash)
    except ValueError:
        return False


def generate_final_script_witness(
    private_key_hex: str,
    tapscript_hex: str,
    tx_info: TxDraft | dict[str, Any],
    control_block_hex: str | None = None,
    signing_context: SigningContext | None = None,
    network: BTCNetwork = "mainnet",
) -> str:
    """Sign and return the serialized ``[sig, tapscript, control_block]`` witness hex."""
    draft = tx_info if isinstance(tx_info, TxDraft) else TxDraft.from_dict(tx_info, network)
    spell_witness = sign_script_path(
        draft,
        bytes.fromhex(tapscript_hex),
        private_key_hex,
        signing_context or SigningContext(),
        control_block=bytes.fromhex(control_block_hex) if control_block_hex else None,
    )
    return spell_witness.serialize().hex()


def _leaf_control_block(psbt: Psbt, input_index: int, tapscript: bytes) -> bytes | None:
    for leaf in psbt.inputs[input_index].tap_leaf_scripts:
        if leaf.script == tapscript:
            return leaf.control_block
    return None


def sign_psbt_spell_input(
    psbt_str: str,
    input_index: int,
    private_key_hex: str,
    tapscript_hex: str,
    signing_context: SigningContext | None = None,
) -> dict[str, Any]:
    """
    Sign one spell input of a PSBT and store the witness as its final
    script witness. Other inputs are left untouched.
    """
    psbt = Psbt.parse(psbt_str)
    if not 0 <= input_index < len(psbt.inputs):
        raise IndexOutOfRange(
            f"Input {input_index} does not exist; PSBT has {len(psbt.inputs)} inputs.",
            index=input_index,
            inputs=len(psbt.inputs),
        )

    tapscript = bytes.fromhex(tapscript_hex)
    draft = TxDraft.from_psbt(psbt, input_index)
    spell_witness = sign_script_path(
        draft,
        tapscript,
        private_key_hex,
        signing_context or SigningContext(),
        control_block=_leaf_control_block(psbt, input_index, tapscript),
    )
    psbt.inputs[input_index].final_script_witness = spell_witness.stack

    return {
        "success": True,
        "signedPsbt": psbt.to_base64(),
        "signature": spell_witness.signature.hex(),
        "pubkey": spell_witness.public_key.hex(),
        "witness": spell_witness.to_dict(),
        "inputIndex": input_index,
    }


def generate_final_script_witness_from_psbt(
    psbt_str: str,
    input_index: int,
    private_key_hex: str,
    tapscript_hex: str,
    signing_context: SigningContext | None = None,
) -> str:
    psbt = Psbt.parse(psbt_str)
    draft = TxDraft.from_psbt(psbt, input_index)
    spell_witness = sign_script_path(
        draft,
        bytes.fromhex(tapscript_hex),
        private_key_hex,
        signing_context or SigningContext(),
    )
    return spell_witness.serialize().hex()


def finalize_and_extract(psbt_str: str, require_complete: bool = True) -> str:
    """Extract the network transaction hex from a (fully) finalized PSBT."""
    tx = Psbt.parse(psbt_str).extract_transaction(require_complete=require_complete)
    return tx.serialize().hex()
