import sys
from pathlib import Path

import pytest
from bitcoin.core import CMutableTransaction, CTransaction, CTxInWitness, CTxWitness
from bitcoin.core.script import CScriptWitness

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from spell_errors import IndexOutOfRange, NoSpellInput  # noqa: E402
from spell_extractor import extract_spell, find_spell_input  # noqa: E402
from spell_script import spell_public_key  # noqa: E402
from spell_signer import (  # noqa: E402
    SigningContext,
    SigningInput,
    SigningOutput,
    TxDraft,
    compute_spell_sighash,
    sign_script_path,
    verify_spell_signature,
)
from spell_service import generate_script_address  # noqa: E402
from taproot import calculate_control_block, compute_tap_commitment  # noqa: E402

# Mainnet spell transaction: input 0 is a plain key-path spend with an empty
# witness here, input 1 reveals the spell leaf.
SPELL_TX_HEX = (Path(__file__).parent / "data" / "spell_tx.hex").read_text().strip()
SPELL_CONTROL_BLOCK = "c1b011824283fd0c13202af0e0f255006953a59e066a216c67347c0f78c73c2759"
SECRET_HEX = "7d706117cadf0908e21144ae8d96d77c6b8a0fda38658e72530f016dbf9eff9b"
P2WPKH_SCRIPT = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")


def test_scan_finds_spell_input():
    extracted = extract_spell(SPELL_TX_HEX)

    assert extracted.input_index == 1
    assert extracted.control_block.hex() == SPELL_CONTROL_BLOCK
    assert len(extracted.tapscript) == 727
    assert len(extracted.spell_data) == 679
    assert extracted.spell_data.hex().startswith("82a36776657273696f6e")


def test_explicit_index_matches_scan():
    assert extract_spell(SPELL_TX_HEX, 1) == extract_spell(SPELL_TX_HEX)


def test_to_dict_is_hex():
    data = extract_spell(SPELL_TX_HEX).to_dict()
    assert data["inputIndex"] == 1
    assert data["controlBlock"] == SPELL_CONTROL_BLOCK
    assert len(data["spellData"]) == 679 * 2


def test_extracted_leaf_is_committed_by_its_control_block():
    extracted = extract_spell(SPELL_TX_HEX)
    internal_key = extracted.control_block[1:]

    # the leaf checks the same key the output was built on
    assert spell_public_key(extracted.tapscript) == internal_key
    commitment = compute_tap_commitment(internal_key, extracted.tapscript)
    assert commitment.control_block == extracted.control_block
    assert calculate_control_block(internal_key, extracted.tapscript) == extracted.control_block


def test_explicit_index_without_spell_witness():
    with pytest.raises(NoSpellInput) as excinfo:
        extract_spell(SPELL_TX_HEX, 0)
    assert excinfo.value.context["index"] == 0


@pytest.mark.parametrize("index", [2, -1])
def test_explicit_index_out_of_range(index):
    with pytest.raises(IndexOutOfRange):
        extract_spell(SPELL_TX_HEX, index)


def test_no_spell_input_anywhere():
    tx = CMutableTransaction.from_tx(CTransaction.deserialize(bytes.fromhex(SPELL_TX_HEX)))
    tx.wit = CTxWitness([CTxInWitness(), CTxInWitness(CScriptWitness([b"\x01", b"\x51", b"\xc0"]))])

    with pytest.raises(NoSpellInput):
        find_spell_input(tx)
    with pytest.raises(NoSpellInput):
        extract_spell(tx.serialize())


def test_sign_then_extract_round_trip():
    payload = bytes.fromhex("82a36776657273696f6e02") * 100
    generated = generate_script_address(SECRET_HEX, payload.hex())
    tapscript = bytes.fromhex(generated["tapscript"])
    output_script = bytes.fromhex(generated["taprootOutput"])

    draft = TxDraft(
        inputs=[
            SigningInput(txid="aa" * 32, vout=0, value=5000, script=P2WPKH_SCRIPT),
            SigningInput(txid="bb" * 32, vout=2, value=20000, script=output_script),
        ],
        outputs=[SigningOutput(value=24000, script=P2WPKH_SCRIPT)],
        sign_index=1,
    )
    spell_witness = sign_script_path(
        draft,
        tapscript,
        SECRET_HEX,
        SigningContext(),
        control_block=bytes.fromhex(generated["controlBlock"]),
    )

    tx = draft.to_transaction()
    tx.wit = CTxWitness([CTxInWitness(), CTxInWitness(CScriptWitness(spell_witness.stack))])
    extracted = extract_spell(tx.serialize().hex())

    assert extracted.input_index == 1
    assert extracted.spell_data == payload
    assert extracted.tapscript == tapscript
    assert extracted.control_block.hex() == generated["controlBlock"]

    internal_key = extracted.control_block[1:]
    assert compute_tap_commitment(internal_key, extracted.tapscript).output_script == output_script
    assert verify_spell_signature(
        spell_witness.signature,
        compute_spell_sighash(draft, extracted.tapscript),
        bytes.fromhex(generated["xOnlyPubkey"]),
    )
