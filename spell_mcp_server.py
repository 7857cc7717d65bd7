#!/usr/bin/env python3
"""
MCP server for spell taproot operations.

Wraps spell_service.py as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from spell_config import SpellConfig
from spell_errors import SpellError
from spell_service import (
    build_unsigned_psbt,
    extract_script_from_spell_tx,
    extract_tx_info_from_psbt,
    finalize_and_extract,
    generate_final_script_witness,
    generate_final_script_witness_from_psbt,
    generate_script_address,
    sign_psbt_spell_input,
    validate_private_key,
)

logger = logging.getLogger(__name__)

app = Server("spell")

_PRIVATE_KEY_PROP = {
    "type": "string",
    "description": "Hex private key. Defaults to SPELL_PRIVATE_KEY.",
}


def _error_response(message: str, code: str | None = None) -> List[TextContent]:
    payload: dict[str, Any] = {"success": False, "error": message}
    if code:
        payload["code"] = code
    return [TextContent(type="text", text=json.dumps(payload))]


def _ok(result: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": True, **result}))]


def _require_str(arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing {name}.")
    return value.strip()


def _optional_index(arguments: dict[str, Any], name: str) -> int | None:
    value = arguments.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Invalid {name}. Must be an integer.")
    return value


def _private_key(arguments: dict[str, Any], cfg: SpellConfig) -> str:
    key = arguments.get("private_key") or cfg.private_key_hex
    if not key:
        raise ValueError("Missing private_key and SPELL_PRIVATE_KEY is not set.")
    return key


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="spell_generate_address",
            description=(
                "Build the spell tapscript for spell_data and return the taproot "
                "address, tapscript and control block committing to it."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "spell_data": {"type": "string", "description": "Spell payload (hex)"},
                    "private_key": _PRIVATE_KEY_PROP,
                },
                "required": ["spell_data"],
            },
        ),
        Tool(
            name="spell_extract",
            description=(
                "Extract the tapscript, control block and spell payload from a "
                "spell transaction."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tx_hex": {"type": "string", "description": "Raw transaction hex"},
                    "input_index": {
                        "type": "integer",
                        "description": "Input to read. Scans all inputs if omitted.",
                    },
                },
                "required": ["tx_hex"],
            },
        ),
        Tool(
            name="spell_build_unsigned_psbt",
            description=(
                "Build an unsigned PSBT from UTXOs and outputs, adding a change "
                "output when it exceeds the dust threshold."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "inputs": {
                        "type": "array",
                        "items": {"type": "object"},
                        "description": (
                            "UTXOs: {txid, vout, value?, address?, script?, pubkey?, "
                            "tapInternalKey?, txHex?, tapscript?, controlBlock?}"
                        ),
                    },
                    "outputs": {
                        "type": "array",
                        "items": {"type": "object"},
                        "description": "Outputs: {address | script, value}",
                    },
                    "change_address": {"type": "string", "description": "Change address"},
                    "fee_rate": {
                        "type": "number",
                        "description": "Fee rate in sat/vB. Defaults to SPELL_FEE_RATE_SAT_PER_VB.",
                    },
                    "reconcile_fee": {
                        "type": "boolean",
                        "description": "Compute fee and change (default true)",
                    },
                },
                "required": ["inputs", "outputs", "change_address"],
            },
        ),
        Tool(
            name="spell_sign_psbt_input",
            description=(
                "Sign one spell input of a PSBT through the tapscript leaf and "
                "store its final script witness."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "PSBT (base64 or hex)"},
                    "input_index": {"type": "integer", "description": "Input to sign"},
                    "tapscript": {"type": "string", "description": "Spell tapscript (hex)"},
                    "private_key": _PRIVATE_KEY_PROP,
                },
                "required": ["psbt", "input_index", "tapscript"],
            },
        ),
        Tool(
            name="spell_generate_witness",
            description=(
                "Sign a spell input and return the serialized final script witness. "
                "Provide either psbt + input_index, or tx_info."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tapscript": {"type": "string", "description": "Spell tapscript (hex)"},
                    "psbt": {"type": "string", "description": "PSBT (base64 or hex)"},
                    "input_index": {"type": "integer", "description": "Input to sign"},
                    "tx_info": {
                        "type": "object",
                        "description": (
                            "{inputs: [{txid, vout, value, script}], "
                            "outputs: [{address | script, value}], signIndex}"
                        ),
                    },
                    "control_block": {
                        "type": "string",
                        "description": "Control block (hex). Derived from the key if omitted.",
                    },
                    "private_key": _PRIVATE_KEY_PROP,
                },
                "required": ["tapscript"],
            },
        ),
        Tool(
            name="spell_decode_psbt",
            description="Summarize the inputs and outputs of a PSBT.",
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "PSBT (base64 or hex)"},
                },
                "required": ["psbt"],
            },
        ),
        Tool(
            name="spell_finalize_psbt",
            description=(
                "Extract the network transaction hex from a PSBT whose inputs "
                "carry final script witnesses."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "PSBT (base64 or hex)"},
                    "allow_incomplete": {
                        "type": "boolean",
                        "description": "Leave unfinalized inputs with empty witnesses",
                    },
                },
                "required": ["psbt"],
            },
        ),
        Tool(
            name="spell_validate_private_key",
            description="Check whether a hex string is a valid secp256k1 private key.",
            inputSchema={
                "type": "object",
                "properties": {
                    "private_key": {"type": "string", "description": "Hex private key"},
                },
                "required": ["private_key"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    handler = _HANDLERS.get(name)
    if handler is None:
        return _error_response(f"Unknown tool: {name}")

    try:
        return await handler(arguments)
    except SpellError as exc:
        return _error_response(exc.message, exc.code)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Tool %s failed", name, exc_info=True)
        return _error_response(str(exc))


async def _handle_generate_address(arguments: dict[str, Any]) -> List[TextContent]:
    spell_data = _require_str(arguments, "spell_data")
    cfg = await asyncio.to_thread(SpellConfig.from_env)
    result = await asyncio.to_thread(
        generate_script_address, _private_key(arguments, cfg), spell_data, cfg.network
    )
    return _ok({**result, "network": cfg.network})


async def _handle_extract(arguments: dict[str, Any]) -> List[TextContent]:
    tx_hex = _require_str(arguments, "tx_hex")
    input_index = _optional_index(arguments, "input_index")
    result = await asyncio.to_thread(extract_script_from_spell_tx, tx_hex, input_index)
    return _ok(result)


async def _handle_build_unsigned_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    inputs = arguments.get("inputs")
    outputs = arguments.get("outputs")
    if not isinstance(inputs, list) or not inputs:
        raise ValueError("Missing inputs. Provide a non-empty list of UTXOs.")
    if not isinstance(outputs, list):
        raise ValueError("Invalid outputs. Expected a list.")
    change_address = _require_str(arguments, "change_address")

    fee_rate = arguments.get("fee_rate")
    reconcile_fee = arguments.get("reconcile_fee")
    if reconcile_fee is None:
        reconcile_fee = True

    cfg = await asyncio.to_thread(SpellConfig.from_env)
    result = await asyncio.to_thread(
        build_unsigned_psbt,
        inputs,
        outputs,
        change_address,
        str(fee_rate) if fee_rate is not None else None,
        bool(reconcile_fee),
        cfg,
    )
    return _ok({**result, "network": cfg.network})


async def _handle_sign_psbt_input(arguments: dict[str, Any]) -> List[TextContent]:
    psbt = _require_str(arguments, "psbt")
    tapscript = _require_str(arguments, "tapscript")
    input_index = _optional_index(arguments, "input_index")
    if input_index is None:
        raise ValueError("Missing input_index.")
    cfg = await asyncio.to_thread(SpellConfig.from_env)
    result = await asyncio.to_thread(
        sign_psbt_spell_input, psbt, input_index, _private_key(arguments, cfg), tapscript
    )
    return [TextContent(type="text", text=json.dumps(result))]


async def _handle_generate_witness(arguments: dict[str, Any]) -> List[TextContent]:
    tapscript = _require_str(arguments, "tapscript")
    cfg = await asyncio.to_thread(SpellConfig.from_env)
    private_key = _private_key(arguments, cfg)

    psbt = arguments.get("psbt")
    tx_info = arguments.get("tx_info")
    if psbt:
        input_index = _optional_index(arguments, "input_index") or 0
        witness_hex = await asyncio.to_thread(
            generate_final_script_witness_from_psbt, psbt, input_index, private_key, tapscript
        )
    elif isinstance(tx_info, dict):
        witness_hex = await asyncio.to_thread(
            generate_final_script_witness,
            private_key,
            tapscript,
            tx_info,
            arguments.get("control_block"),
            None,
            cfg.network,
        )
    else:
        raise ValueError("Provide either psbt or tx_info.")
    return _ok({"finalScriptWitness": witness_hex})


async def _handle_decode_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt = _require_str(arguments, "psbt")
    cfg = await asyncio.to_thread(SpellConfig.from_env)
    result = await asyncio.to_thread(extract_tx_info_from_psbt, psbt, cfg.network)
    return _ok(result)


async def _handle_finalize_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt = _require_str(arguments, "psbt")
    require_complete = not arguments.get("allow_incomplete")
    tx_hex = await asyncio.to_thread(finalize_and_extract, psbt, require_complete)
    return _ok({"hex": tx_hex})


async def _handle_validate_private_key(arguments: dict[str, Any]) -> List[TextContent]:
    private_key = arguments.get("private_key")
    return _ok({"valid": validate_private_key(private_key)})


_HANDLERS = {
    "spell_generate_address": _handle_generate_address,
    "spell_extract": _handle_extract,
    "spell_build_unsigned_psbt": _handle_build_unsigned_psbt,
    "spell_sign_psbt_input": _handle_sign_psbt_input,
    "spell_generate_witness": _handle_generate_witness,
    "spell_decode_psbt": _handle_decode_psbt,
    "spell_finalize_psbt": _handle_finalize_psbt,
    "spell_validate_private_key": _handle_validate_private_key,
}


async def main() -> None:
    # stdout carries the MCP transport
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
