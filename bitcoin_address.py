"""
Output script classification and address <-> scriptPubKey conversion.

Covers the standard script templates a spell transaction can spend from or
pay to: P2TR (bech32m), P2WPKH / P2WSH (bech32), P2SH / P2PKH (base58check)
and the bare P2PK / P2MS templates, which classify but have no address.
"""

from __future__ import annotations

from bip_utils import (
    Base58Decoder,
    Base58Encoder,
    SegwitBech32Decoder,
    SegwitBech32Encoder,
)
from bitcoin.core import Hash160
from bitcoin.core.script import CScript, CScriptInvalidError

from spell_config import BTCNetwork
from spell_errors import UnknownScriptType

P2TR = "p2tr"
P2WPKH = "p2wpkh"
P2SH = "p2sh"
P2PKH = "p2pkh"
P2WSH = "p2wsh"
P2MS = "p2ms"
P2PK = "p2pk"

WITNESS_SCRIPT_TYPES = (P2TR, P2WPKH, P2WSH)

_NETWORK_PARAMS = {
    "mainnet": {"hrp": "bc", "p2pkh": 0x00, "p2sh": 0x05},
    "testnet": {"hrp": "tb", "p2pkh": 0x6F, "p2sh": 0xC4},
}


def _network_params(network: str) -> dict:
    try:
        return _NETWORK_PARAMS[network]
    except KeyError:
        raise ValueError(
            f"Unsupported network {network!r}. Expected 'mainnet' or 'testnet'."
        ) from None


def _is_p2pk(script: bytes) -> bool:
    if len(script) == 35:
        return script[0] == 0x21 and script[-1] == 0xAC
    if len(script) == 67:
        return script[0] == 0x41 and script[-1] == 0xAC
    return False


def _is_p2ms(script: bytes) -> bool:
    # OP_m <pubkey>... OP_n OP_CHECKMULTISIG
    if len(script) < 37 or script[-1] != 0xAE:
        return False
    m_op, n_op = script[0], script[-2]
    if not (0x51 <= m_op <= 0x60 and 0x51 <= n_op <= 0x60):
        return False
    try:
        keys = list(CScript(script[1:-2]))
    except CScriptInvalidError:
        return False
    n = n_op - 0x50
    if len(keys) != n or m_op > n_op:
        return False
    return all(isinstance(k, bytes) and len(k) in (33, 65) for k in keys)


def classify_script(script: bytes) -> str:
    """Return the standard template name of an output script."""
    n = len(script)
    if n == 34 and script[0] == 0x51 and script[1] == 0x20:
        return P2TR
    if n == 22 and script[0] == 0x00 and script[1] == 0x14:
        return P2WPKH
    if n == 23 and script[0] == 0xA9 and script[1] == 0x14 and script[22] == 0x87:
        return P2SH
    if n == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return P2PKH
    if n == 34 and script[0] == 0x00 and script[1] == 0x20:
        return P2WSH
    if _is_p2ms(script):
        return P2MS
    if _is_p2pk(script):
        return P2PK
    raise UnknownScriptType(
        f"Unrecognised output script {script.hex()}.", script=script.hex()
    )


def script_to_address(script: bytes, network: BTCNetwork = "mainnet") -> str | None:
    """
    Encode an output script as an address.

    Returns None for bare P2PK / P2MS scripts, which have no address form.
    Raises UnknownScriptType for non-standard scripts.
    """
    params = _network_params(network)
    kind = classify_script(script)
    if kind == P2TR:
        return SegwitBech32Encoder.Encode(params["hrp"], 1, script[2:])
    if kind in (P2WPKH, P2WSH):
        return SegwitBech32Encoder.Encode(params["hrp"], 0, script[2:])
    if kind == P2SH:
        return Base58Encoder.CheckEncode(bytes([params["p2sh"]]) + script[2:22])
    if kind == P2PKH:
        return Base58Encoder.CheckEncode(bytes([params["p2pkh"]]) + script[3:23])
    return None


def address_to_script(address: str, network: BTCNetwork = "mainnet") -> bytes:
    """Decode an address into its scriptPubKey."""
    params = _network_params(network)
    hrp = params["hrp"]

    if address.lower().startswith(hrp + "1"):
        try:
            wit_ver, wit_prog = SegwitBech32Decoder.Decode(hrp, address)
        except Exception as exc:  # noqa: BLE001
            raise UnknownScriptType(
                f"Invalid segwit address {address!r}: {exc}", address=address
            ) from exc
        wit_prog = bytes(wit_prog)
        if wit_ver == 0 and len(wit_prog) in (20, 32):
            return bytes([0x00, len(wit_prog)]) + wit_prog
        if wit_ver == 1 and len(wit_prog) == 32:
            return b"\x51\x20" + wit_prog
        raise UnknownScriptType(
            f"Unsupported witness program v{wit_ver} ({len(wit_prog)} bytes) in {address!r}.",
            address=address,
        )

    try:
        payload = Base58Decoder.CheckDecode(address)
    except Exception as exc:  # noqa: BLE001
        raise UnknownScriptType(
            f"Invalid address {address!r} for {network}: {exc}", address=address
        ) from exc
    if len(payload) == 21:
        version, digest = payload[0], payload[1:]
        if version == params["p2pkh"]:
            return b"\x76\xa9\x14" + digest + b"\x88\xac"
        if version == params["p2sh"]:
            return b"\xa9\x14" + digest + b"\x87"
    raise UnknownScriptType(
        f"Address {address!r} is not a {network} P2PKH or P2SH address.",
        address=address,
    )


def p2wpkh_script(pubkey: bytes) -> bytes:
    """OP_0 <hash160(pubkey)> for a compressed public key."""
    return b"\x00\x14" + Hash160(pubkey)


def p2tr_script(output_key: bytes) -> bytes:
    """OP_1 <32-byte x-only output key>."""
    if len(output_key) != 32:
        raise ValueError("x-only output key must be 32 bytes")
    return b"\x51\x20" + output_key
