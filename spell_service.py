"""
High-level spell operations: address generation, extraction, PSBT signing.

Each function takes and returns plain hex / base64 / dict values so the MCP
layer can pass tool arguments straight through.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Sequence

from bitcoin_address import script_to_address
from mempool_provider import ChainDataProvider, MempoolProvider
from psbt import Psbt
from spell_config import BTCNetwork, SpellConfig
from spell_errors import InvalidPrivateKey, OutputKeyMismatch, SpellError, UnknownScriptType
from spell_extractor import extract_spell
from spell_script import encode_spell_script
from spell_signer import (
    SigningContext,
    finalize_and_extract,
    generate_final_script_witness,
    generate_final_script_witness_from_psbt,
    sign_psbt_spell_input,
)
from taproot import calculate_control_block, compute_tap_commitment
from tx_builder import TxOutputSpec, Utxo, create_unsigned_psbt

__all__ = [
    "build_unsigned_psbt",
    "extract_script_from_spell_tx",
    "extract_tx_info_from_psbt",
    "finalize_and_extract",
    "generate_final_script_witness",
    "generate_final_script_witness_from_psbt",
    "generate_script_address",
    "process_spell_workflow",
    "sign_psbt_spell_input",
    "validate_private_key",
]

logger = logging.getLogger(__name__)


def generate_script_address(
    private_key_hex: str,
    spell_data_hex: str,
    network: BTCNetwork = "mainnet",
    signing_context: SigningContext | None = None,
) -> dict[str, str]:
    """
    Derive the taproot address committing to ``spell_data_hex``.

    The signing key is both the internal key and the key checked by the leaf,
    so the output stays spendable through the key path too.
    """
    ctx = signing_context or SigningContext()
    key = ctx.load_private_key(private_key_hex)
    x_only = ctx.x_only_public_key(key)

    tapscript = encode_spell_script(bytes.fromhex(spell_data_hex), x_only)
    commitment = compute_tap_commitment(x_only, tapscript)

    control_block = calculate_control_block(x_only, tapscript, commitment.output_script)
    if control_block != commitment.control_block:
        raise OutputKeyMismatch(
            "Control block derivations disagree.",
            expected=commitment.control_block,
            actual=control_block,
        )

    return {
        "address": commitment.address(network),
        "tapscript": tapscript.hex(),
        "controlBlock": commitment.control_block.hex(),
        "publicKey": key.public_key.format(compressed=True).hex(),
        "xOnlyPubkey": x_only.hex(),
        "taprootOutput": commitment.output_script.hex(),
    }


def extract_script_from_spell_tx(
    spell_tx_hex: str, target_input_index: int | None = None
) -> dict[str, Any]:
    return extract_spell(spell_tx_hex, target_input_index).to_dict()


def validate_private_key(private_key_hex: str) -> bool:
    """True for a 32-byte hex scalar in curve range (optional 0x prefix)."""
    if not isinstance(private_key_hex, str):
        return False
    try:
        SigningContext().load_private_key(private_key_hex)
    except InvalidPrivateKey:
        return False
    return True


def _safe_address(script: bytes, network: BTCNetwork) -> str | None:
    try:
        return script_to_address(script, network)
    except UnknownScriptType:
        return None


def extract_tx_info_from_psbt(psbt_str: str, network: BTCNetwork = "mainnet") -> dict[str, Any]:
    """Summarize a PSBT's inputs and outputs."""
    psbt = Psbt.parse(psbt_str)
    inputs = []
    for i, txin in enumerate(psbt.tx.vin):
        prevout = psbt.prevout(i)
        psbt_in = psbt.inputs[i]
        inputs.append(
            {
                "index": i,
                "txid": txin.prevout.hash[::-1].hex(),
                "vout": txin.prevout.n,
                "sequence": txin.nSequence,
                "script": prevout.script.hex() if prevout else None,
                "value": prevout.value if prevout else None,
                "address": _safe_address(prevout.script, network) if prevout else None,
                "finalized": psbt_in.final_script_witness is not None,
            }
        )
    outputs = []
    for i, txout in enumerate(psbt.tx.vout):
        script = bytes(txout.scriptPubKey)
        outputs.append(
            {
                "index": i,
                "script": script.hex(),
                "value": txout.nValue,
                "address": _safe_address(script, network),
            }
        )
    return {"txid": psbt.txid(), "inputs": inputs, "outputs": outputs}


def build_unsigned_psbt(
    inputs: Sequence[Utxo | dict[str, Any]],
    outputs: Sequence[TxOutputSpec | dict[str, Any]],
    change_address: str,
    fee_rate: Decimal | float | str | None = None,
    reconcile_fee: bool = True,
    cfg: SpellConfig | None = None,
    provider: ChainDataProvider | None = None,
) -> dict[str, Any]:
    cfg = cfg or SpellConfig.from_env()
    provider = provider or MempoolProvider.from_config(cfg)
    result = create_unsigned_psbt(
        inputs,
        outputs,
        change_address,
        fee_rate if fee_rate is not None else cfg.fee_rate_sat_per_vb,
        reconcile_fee,
        network=cfg.network,
        provider=provider,
    )
    return result.to_dict()


def process_spell_workflow(
    params: dict[str, Any], signing_context: SigningContext | None = None
) -> dict[str, Any]:
    """
    Run extraction, address generation and PSBT signing in sequence,
    each step only when its inputs are present.

    Steps completed before a failure are kept in ``results``.
    """
    results: dict[str, Any] = {}
    try:
        if params.get("spellTxHex"):
            results["extraction"] = extract_script_from_spell_tx(
                params["spellTxHex"], params.get("inputIndex")
            )
            logger.info(
                "Extracted %d-byte spell", len(results["extraction"]["spellData"]) // 2
            )

        spell_data = params.get("spellData") or results.get("extraction", {}).get("spellData")
        if params.get("privateKey") and spell_data:
            results["address"] = generate_script_address(
                params["privateKey"],
                spell_data,
                params.get("network") or "mainnet",
                signing_context,
            )
            logger.info("Generated spell address %s", results["address"]["address"])

        if params.get("psbtBase64") and params.get("privateKey") and params.get("tapscript"):
            results["signature"] = sign_psbt_spell_input(
                params["psbtBase64"],
                int(params.get("inputIndex") or 0),
                params["privateKey"],
                params["tapscript"],
                signing_context,
            )
    except SpellError as exc:
        return {"success": False, "error": exc.message, "code": exc.code, "results": results}
    except ValueError as exc:
        return {"success": False, "error": str(exc), "results": results}

    return {"success": True, "results": results}
