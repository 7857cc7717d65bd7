"""
Unsigned PSBT construction with fee/change reconciliation.

Inputs whose value or script is unknown are resolved through a
``ChainDataProvider`` one at a time, in input order. The fee is estimated
over the declared outputs plus one hypothetical change output; change above
the dust threshold becomes a real output, anything at or below it is left to
the miner.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Sequence

from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    b2lx,
    lx,
)
from bitcoin.core.script import CScript

from bitcoin_address import (
    P2MS,
    P2PK,
    P2PKH,
    P2SH,
    P2TR,
    P2WPKH,
    P2WSH,
    WITNESS_SCRIPT_TYPES,
    address_to_script,
    classify_script,
    p2wpkh_script,
    script_to_address,
)
from mempool_provider import ChainDataProvider
from psbt import Psbt, PsbtInput, PsbtOutput, TapLeafScript, WitnessUtxo
from spell_config import BTCNetwork
from spell_errors import EmptyOutputs, InsufficientFunds, UtxoResolutionFailed
from witness import compact_size, serialize_witness

logger = logging.getLogger(__name__)

DUST_THRESHOLD = 546
# First pass sizes the fee, second pass finalizes with the change output.
MAX_FEE_PASSES = 2

TX_VERSION = 2
INPUT_SEQUENCE = 0xFFFFFFFF

# version + locktime
_TX_FIXED_BYTES = 8
# outpoint + sequence
_TXIN_FIXED_BYTES = 36 + 4
# DER signature with sighash byte, upper bound
_ECDSA_SIG_BYTES = 73
_SCHNORR_SIG_BYTES = 64


@dataclass
class Utxo:
    """
    A previous output to spend.

    Only ``txid`` and ``vout`` are mandatory. A missing ``value``, or a missing
    ``address`` and ``script``, is filled in from the funding transaction.
    """

    txid: str
    vout: int
    value: int | None = None
    address: str | None = None
    script: bytes | None = None
    pubkey: bytes | None = None
    internal_key: bytes | None = None
    raw_tx_hex: str | None = None
    tap_leaf_script: TapLeafScript | None = None
    script_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Utxo:
        def _hex(*keys: str) -> bytes | None:
            for key in keys:
                if data.get(key):
                    return bytes.fromhex(data[key])
            return None

        tap_leaf = None
        tapscript = _hex("tapscript", "tapScript")
        control_block = _hex("controlBlock", "control_block")
        if tapscript is not None and control_block is not None:
            tap_leaf = TapLeafScript(control_block=control_block, script=tapscript)

        value = data.get("value")
        return cls(
            txid=data["txid"],
            vout=int(data["vout"]),
            value=int(value) if value is not None else None,
            address=data.get("address") or None,
            script=_hex("script", "scriptPubKey"),
            pubkey=_hex("pubkey"),
            internal_key=_hex("tapInternalKey", "internalKey", "internal_key"),
            raw_tx_hex=data.get("txHex") or data.get("rawTxHex") or None,
            tap_leaf_script=tap_leaf,
        )

    @property
    def signer(self) -> str:
        """Address that must sign this input (script hex for address-less scripts)."""
        if self.address:
            return self.address
        return self.script.hex() if self.script else ""


@dataclass
class TxOutputSpec:
    value: int
    address: str | None = None
    script: bytes | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TxOutputSpec:
        script = data.get("script")
        return cls(
            value=int(data["value"]),
            address=data.get("address") or None,
            script=bytes.fromhex(script) if script else None,
        )

    def resolve_script(self, network: BTCNetwork) -> bytes:
        if self.script is not None:
            return self.script
        if not self.address:
            raise ValueError("Each output needs an address or a script.")
        self.script = address_to_script(self.address, network)
        return self.script


@dataclass
class UnsignedTxResult:
    fee: int
    txid: str
    psbt: Psbt
    unsigned_tx_hex: str
    signing_indexes: dict[str, list[int]] = field(default_factory=dict)
    inputs_to_sign: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fee": self.fee,
            "txid": self.txid,
            "hex": self.psbt.to_hex(),
            "base64": self.psbt.to_base64(),
            "unsignedTxHex": self.unsigned_tx_hex,
            "signingIndexes": [
                {"address": address, "indexes": indexes}
                for address, indexes in self.signing_indexes.items()
            ],
            "inputsToSign": [
                {"address": address, "index": index}
                for address, index in self.inputs_to_sign
            ],
        }


# -- size estimation ---------------------------------------------------------


def _input_weight(utxo: Utxo) -> int:
    """Weight units of one signed input, by script type."""
    kind = utxo.script_type or classify_script(utxo.script or b"")
    base = _TXIN_FIXED_BYTES

    if kind == P2PKH:
        # sig + compressed pubkey
        script_sig = 1 + _ECDSA_SIG_BYTES + 1 + 33
        return 4 * (base + len(compact_size(script_sig)) + script_sig)
    if kind == P2PK:
        script_sig = 1 + _ECDSA_SIG_BYTES
        return 4 * (base + 1 + script_sig)
    if kind == P2MS:
        m = (utxo.script or b"\x51")[0] - 0x50
        # OP_0 dummy, then m signatures
        script_sig = 1 + m * (1 + _ECDSA_SIG_BYTES)
        return 4 * (base + len(compact_size(script_sig)) + script_sig)
    if kind == P2SH:
        # nested P2WPKH: redeem script push in scriptSig, sig + pubkey in witness
        script_sig = 1 + 22
        witness = 1 + 1 + _ECDSA_SIG_BYTES + 1 + 33
        return 4 * (base + 1 + script_sig) + witness
    if kind == P2WPKH:
        witness = 1 + 1 + _ECDSA_SIG_BYTES + 1 + 33
        return 4 * (base + 1) + witness
    if kind == P2WSH:
        # assume a 2-of-3 multisig witness script
        witness_script = 1 + 3 * 34 + 1 + 1
        witness = 1 + 1 + 2 * (1 + _ECDSA_SIG_BYTES) + 1 + witness_script
        return 4 * (base + 1) + witness
    if kind == P2TR:
        leaf = utxo.tap_leaf_script
        if leaf is not None:
            witness = serialize_witness(
                [b"\x00" * _SCHNORR_SIG_BYTES, leaf.script, leaf.control_block]
            )
            return 4 * (base + 1) + len(witness)
        return 4 * (base + 1) + 1 + 1 + _SCHNORR_SIG_BYTES
    raise ValueError(f"Cannot size input of type {kind!r}")


def estimate_tx_vsize(inputs: Sequence[Utxo], output_scripts: Sequence[bytes]) -> int:
    """Virtual size in vbytes of the transaction once every input is signed."""
    weight = 4 * (
        _TX_FIXED_BYTES + len(compact_size(len(inputs))) + len(compact_size(len(output_scripts)))
    )
    segwit = False
    for utxo in inputs:
        weight += _input_weight(utxo)
        kind = utxo.script_type or classify_script(utxo.script or b"")
        segwit = segwit or kind in WITNESS_SCRIPT_TYPES or kind == P2SH
    if segwit:
        # marker + flag, plus an empty witness count for each non-witness input
        weight += 2 + sum(
            1
            for utxo in inputs
            if (utxo.script_type or classify_script(utxo.script or b""))
            not in WITNESS_SCRIPT_TYPES + (P2SH,)
        )
    for script in output_scripts:
        weight += 4 * (8 + len(compact_size(len(script))) + len(script))
    return math.ceil(weight / 4)


# -- input resolution --------------------------------------------------------


def _fetch_raw_tx(utxo: Utxo, provider: ChainDataProvider | None) -> str:
    if utxo.raw_tx_hex:
        return utxo.raw_tx_hex
    if provider is None:
        raise UtxoResolutionFailed(
            f"Input {utxo.txid}:{utxo.vout} needs chain data but no provider is configured.",
            txid=utxo.txid,
            vout=utxo.vout,
        )
    utxo.raw_tx_hex = provider.get_raw_transaction(utxo.txid)
    return utxo.raw_tx_hex


def _funding_tx(utxo: Utxo, provider: ChainDataProvider | None) -> CTransaction:
    raw_hex = _fetch_raw_tx(utxo, provider)
    try:
        tx = CTransaction.deserialize(bytes.fromhex(raw_hex))
    except Exception as exc:  # noqa: BLE001
        raise UtxoResolutionFailed(
            f"Raw transaction for {utxo.txid} could not be decoded: {exc}",
            txid=utxo.txid,
        ) from exc
    actual = b2lx(tx.GetTxid())
    if actual != utxo.txid.lower():
        raise UtxoResolutionFailed(
            f"Raw transaction hashes to {actual}, expected {utxo.txid}.",
            txid=utxo.txid,
            actual=actual,
        )
    return tx


def resolve_utxo(
    utxo: Utxo, network: BTCNetwork = "mainnet", provider: ChainDataProvider | None = None
) -> Utxo:
    """Fill in value, script, address and script type of ``utxo`` in place."""
    if utxo.value is None or (utxo.address is None and utxo.script is None):
        tx = _funding_tx(utxo, provider)
        if not 0 <= utxo.vout < len(tx.vout):
            raise UtxoResolutionFailed(
                f"Transaction {utxo.txid} has no output {utxo.vout}.",
                txid=utxo.txid,
                vout=utxo.vout,
                outputs=len(tx.vout),
            )
        txout = tx.vout[utxo.vout]
        utxo.value = txout.nValue
        utxo.script = bytes(txout.scriptPubKey)
        utxo.address = script_to_address(utxo.script, network)
        logger.debug(
            "Resolved %s:%d -> %d sats (%s)", utxo.txid, utxo.vout, utxo.value, utxo.address
        )
    elif utxo.script is None:
        utxo.script = address_to_script(utxo.address, network)
    elif utxo.address is None:
        utxo.address = script_to_address(utxo.script, network)

    utxo.script_type = classify_script(utxo.script)
    return utxo


def _x_only(pubkey: bytes) -> bytes:
    return pubkey[1:] if len(pubkey) == 33 else pubkey


def utxo_to_psbt_input(utxo: Utxo, provider: ChainDataProvider | None = None) -> PsbtInput:
    """PSBT input fields for a resolved UTXO, chosen by its script type."""
    inp = PsbtInput()
    kind = utxo.script_type or classify_script(utxo.script)

    if kind in WITNESS_SCRIPT_TYPES:
        inp.witness_utxo = WitnessUtxo(value=utxo.value, script=utxo.script)
        if kind == P2TR:
            if utxo.pubkey:
                inp.tap_internal_key = _x_only(utxo.pubkey)
            elif utxo.internal_key:
                inp.tap_internal_key = utxo.internal_key
            else:
                # key-path only; script-path spends must pass the internal key
                inp.tap_internal_key = utxo.script[2:]
            if utxo.tap_leaf_script is not None:
                inp.tap_leaf_scripts.append(utxo.tap_leaf_script)
    elif kind == P2SH:
        inp.witness_utxo = WitnessUtxo(value=utxo.value, script=utxo.script)
        if utxo.pubkey:
            inp.redeem_script = p2wpkh_script(utxo.pubkey)
    else:
        inp.non_witness_utxo = bytes.fromhex(_fetch_raw_tx(utxo, provider))
    return inp


# -- builder -----------------------------------------------------------------


def _build_tx(utxos: Sequence[Utxo], outputs: Sequence[tuple[int, bytes]]) -> CMutableTransaction:
    vin = [
        CMutableTxIn(COutPoint(lx(u.txid), u.vout), nSequence=INPUT_SEQUENCE) for u in utxos
    ]
    vout = [CMutableTxOut(value, CScript(script)) for value, script in outputs]
    return CMutableTransaction(vin, vout, nLockTime=0, nVersion=TX_VERSION)


def create_unsigned_psbt(
    inputs: Sequence[Utxo | dict[str, Any]],
    outputs: Sequence[TxOutputSpec | dict[str, Any]],
    change_address: str,
    fee_rate: Decimal | float | int | str,
    reconcile_fee: bool = True,
    *,
    network: BTCNetwork = "mainnet",
    provider: ChainDataProvider | None = None,
    size_estimator: Callable[[Sequence[Utxo], Sequence[bytes]], int] = estimate_tx_vsize,
) -> UnsignedTxResult:
    """
    Build an unsigned PSBT spending ``inputs`` to ``outputs``.

    With ``reconcile_fee`` the fee is ``ceil(vsize * fee_rate)`` and change
    above the dust threshold goes to ``change_address``. Without it the
    outputs are used as given. The reported fee is always inputs minus
    outputs; outputs above the inputs raise InsufficientFunds either way.
    """
    utxos = [u if isinstance(u, Utxo) else Utxo.from_dict(u) for u in inputs]
    specs = [o if isinstance(o, TxOutputSpec) else TxOutputSpec.from_dict(o) for o in outputs]

    psbt_inputs = []
    for utxo in utxos:
        resolve_utxo(utxo, network, provider)
        psbt_inputs.append(utxo_to_psbt_input(utxo, provider))

    if not specs:
        raise EmptyOutputs("The output list is empty.")

    drafted = [(spec.value, spec.resolve_script(network)) for spec in specs]
    total_in = sum(u.value for u in utxos)
    rate = Decimal(str(fee_rate))

    for fee_pass in range(1, MAX_FEE_PASSES + 1):
        if not reconcile_fee:
            break
        change_script = address_to_script(change_address, network)
        vsize = size_estimator(utxos, [script for _, script in drafted] + [change_script])
        fee = math.ceil(Decimal(vsize) * rate)
        change_value = total_in - sum(value for value, _ in drafted) - fee
        logger.debug(
            "Fee pass %d: vsize=%d rate=%s fee=%d change=%d",
            fee_pass,
            vsize,
            rate,
            fee,
            change_value,
        )
        if change_value < 0:
            raise InsufficientFunds(
                f"Inputs total {total_in} sats, short by {-change_value} sats "
                f"for outputs plus a {fee} sat fee.",
                inputs=total_in,
                outputs=total_in - fee - change_value,
                fee=fee,
                shortfall=-change_value,
            )
        if change_value > DUST_THRESHOLD:
            drafted.append((change_value, change_script))
        reconcile_fee = False

    fee = total_in - sum(value for value, _ in drafted)
    if fee < 0:
        raise InsufficientFunds(
            f"Outputs exceed inputs by {-fee} sats.",
            inputs=total_in,
            outputs=total_in - fee,
            fee=fee,
            shortfall=-fee,
        )

    tx = _build_tx(utxos, drafted)
    psbt = Psbt(tx=tx, inputs=psbt_inputs, outputs=[PsbtOutput() for _ in drafted])

    signing_indexes: dict[str, list[int]] = {}
    inputs_to_sign = []
    for index, utxo in enumerate(utxos):
        signing_indexes.setdefault(utxo.signer, []).append(index)
        inputs_to_sign.append((utxo.signer, index))

    txid = psbt.txid()
    logger.info(
        "Built unsigned PSBT %s: %d inputs, %d outputs, fee %d sats",
        txid,
        len(utxos),
        len(drafted),
        fee,
    )
    return UnsignedTxResult(
        fee=fee,
        txid=txid,
        psbt=psbt,
        unsigned_tx_hex=tx.serialize().hex(),
        signing_indexes=signing_indexes,
        inputs_to_sign=inputs_to_sign,
    )
