import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import spell_service  # noqa: E402
from psbt import Psbt, WitnessUtxo  # noqa: E402
from spell_config import SpellConfig  # noqa: E402
from spell_errors import OutputKeyMismatch  # noqa: E402
from spell_script import decode_spell_script  # noqa: E402
from spell_signer import SigningContext, SigningInput, SigningOutput, TxDraft  # noqa: E402

SECRET_HEX = "7d706117cadf0908e21144ae8d96d77c6b8a0fda38658e72530f016dbf9eff9b"
SPELL_TX_HEX = (Path(__file__).parent / "data" / "spell_tx.hex").read_text().strip()
P2WPKH_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
P2WPKH_SCRIPT = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
P2TR_ADDRESS = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"


def _spell_psbt(generated):
    output_script = bytes.fromhex(generated["taprootOutput"])
    draft = TxDraft(
        inputs=[SigningInput(txid="bb" * 32, vout=0, value=10_000, script=output_script)],
        outputs=[SigningOutput(value=9_000, script=P2WPKH_SCRIPT)],
    )
    psbt = Psbt.from_unsigned_tx(draft.to_transaction())
    psbt.inputs[0].witness_utxo = WitnessUtxo(10_000, output_script)
    return psbt


def test_generate_script_address():
    generated = spell_service.generate_script_address(SECRET_HEX, "deadbeef")

    assert generated["address"].startswith("bc1p")
    assert generated["taprootOutput"].startswith("5120")
    assert generated["publicKey"][2:] == generated["xOnlyPubkey"]
    assert generated["controlBlock"][2:] == generated["xOnlyPubkey"]
    assert "057370656c6c04deadbeef68" in generated["tapscript"]


def test_generate_script_address_testnet():
    generated = spell_service.generate_script_address(SECRET_HEX, "00", "testnet")
    assert generated["address"].startswith("tb1p")


def test_generate_script_address_detects_derivation_disagreement(monkeypatch):
    monkeypatch.setattr(
        spell_service, "calculate_control_block", lambda *args: b"\xc0" + b"\x00" * 32
    )
    with pytest.raises(OutputKeyMismatch):
        spell_service.generate_script_address(SECRET_HEX, "00")


def test_extract_script_from_spell_tx():
    extracted = spell_service.extract_script_from_spell_tx(SPELL_TX_HEX)
    assert extracted["inputIndex"] == 1
    assert extracted["spellData"].startswith("82a36776657273696f6e")


@pytest.mark.parametrize(
    "candidate, valid",
    [
        (SECRET_HEX, True),
        ("0x" + SECRET_HEX, True),
        (SECRET_HEX[:-2], False),
        ("00" * 32, False),
        ("not hex", False),
        (None, False),
    ],
)
def test_validate_private_key(candidate, valid):
    assert spell_service.validate_private_key(candidate) is valid


def test_extract_tx_info_from_psbt():
    generated = spell_service.generate_script_address(SECRET_HEX, "00")
    info = spell_service.extract_tx_info_from_psbt(_spell_psbt(generated).to_base64())

    assert info["inputs"][0]["value"] == 10_000
    assert info["inputs"][0]["address"] == generated["address"]
    assert info["inputs"][0]["finalized"] is False
    assert info["inputs"][0]["txid"] == "bb" * 32
    assert info["outputs"] == [
        {"index": 0, "script": P2WPKH_SCRIPT.hex(), "value": 9_000, "address": P2WPKH_ADDRESS}
    ]


def test_build_unsigned_psbt_uses_config_fee_rate():
    cfg = SpellConfig(fee_rate_sat_per_vb=2)

    class NoLookups:
        def get_raw_transaction(self, txid):
            raise AssertionError("no lookup expected")

    result = spell_service.build_unsigned_psbt(
        [{"txid": "aa" * 32, "vout": 0, "value": 50_000, "address": P2WPKH_ADDRESS}],
        [{"address": P2TR_ADDRESS, "value": 10_000}],
        P2WPKH_ADDRESS,
        cfg=cfg,
        provider=NoLookups(),
    )
    # 1 p2wpkh in, p2tr + p2wpkh change out: 153 vB at 2 sat/vB
    assert result["fee"] == 306
    assert result["signingIndexes"] == [{"address": P2WPKH_ADDRESS, "indexes": [0]}]


def test_process_spell_workflow_extracts_then_commits():
    outcome = spell_service.process_spell_workflow(
        {"spellTxHex": SPELL_TX_HEX, "privateKey": SECRET_HEX}
    )

    assert outcome["success"] is True
    results = outcome["results"]
    assert set(results) == {"extraction", "address"}
    payload = results["extraction"]["spellData"]
    assert decode_spell_script(bytes.fromhex(results["address"]["tapscript"])).hex() == payload


def test_process_spell_workflow_signs_psbt():
    generated = spell_service.generate_script_address(SECRET_HEX, "cafe")
    outcome = spell_service.process_spell_workflow(
        {
            "privateKey": SECRET_HEX,
            "spellData": "cafe",
            "psbtBase64": _spell_psbt(generated).to_base64(),
            "tapscript": generated["tapscript"],
            "inputIndex": 0,
        },
        SigningContext(aux_randomness=None),
    )

    assert outcome["success"] is True
    results = outcome["results"]
    assert results["address"] == generated
    assert results["signature"]["inputIndex"] == 0
    signed = Psbt.parse(results["signature"]["signedPsbt"])
    assert signed.inputs[0].final_script_witness[2].hex() == generated["controlBlock"]


def test_process_spell_workflow_keeps_completed_steps():
    outcome = spell_service.process_spell_workflow(
        {"spellTxHex": SPELL_TX_HEX, "privateKey": "00" * 32}
    )

    assert outcome["success"] is False
    assert outcome["code"] == "InvalidPrivateKey"
    assert outcome["results"]["extraction"]["inputIndex"] == 1
