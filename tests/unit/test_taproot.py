import hashlib
import sys
from pathlib import Path

import pytest
from coincurve import PrivateKey

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from spell_errors import OutputKeyMismatch, ScriptTooLarge  # noqa: E402
from spell_script import encode_spell_script  # noqa: E402
from taproot import (  # noqa: E402
    MAX_LEAF_SCRIPT_SIZE,
    SECP256K1_ORDER,
    _tweak_output_key_manual,
    calculate_control_block,
    compute_tap_commitment,
    parse_control_block,
    tagged_hash,
    tap_leaf_hash,
    tap_tweak,
    tweak_output_key,
)

# Single-leaf trees from the BIP-341 wallet test vectors.
BIP341_SINGLE_LEAF = [
    {
        "internal_key": "187791b6f712a8ea41c8ecdd0ee77fab3e85263b37e1ec18a3651926b3a6cf27",
        "script": "20d85a959b0290bf19bb89ed43c916be835475d013da4b362117393e25a48229b8ac",
        "leaf_hash": "5b75adecf53548f3ec6ad7d78383bf84cc57b55a3127c72b9a2481752dd88b21",
        "tweak": "cbd8679ba636c1110ea247542cfbd964131a6be84f873f7f3b62a777528ed001",
        "output_key": "147c9c57132f6e7ecddba9800bb0c4449251c92a1e60371ee77557b6620f3ea3",
        "address": "bc1pz37fc4cn9ah8anwm4xqqhvxygjf9rjf2resrw8h8w4tmvcs0863sa2e586",
        "control_block": "c1187791b6f712a8ea41c8ecdd0ee77fab3e85263b37e1ec18a3651926b3a6cf27",
    },
    {
        "internal_key": "93478e9488f956df2396be2ce6c5cced75f900dfa18e7dabd2428aae78451820",
        "script": "20b617298552a72ade070667e86ca63b8f5789a9fe8731ef91202a91c9f3459007ac",
        "leaf_hash": "c525714a7f49c28aedbbba78c005931a81c234b2f6c99a73e4d06082adc8bf2b",
        "tweak": "6af9e28dbf9d6aaf027696e2598a5b3d056f5fd2355a7fd5a37a0e5008132d30",
        "output_key": "e4d810fd50586274face62b8a807eb9719cef49c04177cc6b76a9a4251d5450e",
        "address": "bc1punvppl2stp38f7kwv2u2spltjuvuaayuqsthe34hd2dyy5w4g58qqfuag5",
        "control_block": "c093478e9488f956df2396be2ce6c5cced75f900dfa18e7dabd2428aae78451820",
    },
]

SECRET = bytes.fromhex("7d706117cadf0908e21144ae8d96d77c6b8a0fda38658e72530f016dbf9eff9b")


def test_tagged_hash_definition():
    tag = hashlib.sha256(b"TapLeaf").digest()
    expected = hashlib.sha256(tag + tag + b"abc").digest()
    assert tagged_hash("TapLeaf", b"abc") == expected


@pytest.mark.parametrize("vector", BIP341_SINGLE_LEAF)
def test_bip341_single_leaf_vectors(vector):
    internal_key = bytes.fromhex(vector["internal_key"])
    script = bytes.fromhex(vector["script"])

    commitment = compute_tap_commitment(internal_key, script)

    assert commitment.leaf_hash.hex() == vector["leaf_hash"]
    assert commitment.tweak.hex() == vector["tweak"]
    assert commitment.output_key.hex() == vector["output_key"]
    assert commitment.control_block.hex() == vector["control_block"]
    assert commitment.output_script.hex() == "5120" + vector["output_key"]
    assert commitment.address("mainnet") == vector["address"]


@pytest.mark.parametrize("vector", BIP341_SINGLE_LEAF)
def test_manual_control_block_matches_vectors(vector):
    internal_key = bytes.fromhex(vector["internal_key"])
    script = bytes.fromhex(vector["script"])
    output_script = bytes.fromhex("5120" + vector["output_key"])

    control_block = calculate_control_block(internal_key, script, output_script)

    assert control_block.hex() == vector["control_block"]


@pytest.mark.parametrize("payload_len", [0, 1, 520, 521, 4000])
def test_both_derivation_paths_agree(payload_len):
    x_only = PrivateKey(SECRET).public_key.format(compressed=True)[1:]
    script = encode_spell_script(b"\x42" * payload_len, x_only)
    leaf_hash = tap_leaf_hash(script)
    tweak = tap_tweak(x_only, leaf_hash)

    assert tweak_output_key(x_only, tweak) == _tweak_output_key_manual(x_only, tweak)
    assert (
        calculate_control_block(x_only, script)
        == compute_tap_commitment(x_only, script).control_block
    )


def test_tweaked_secret_controls_output_key():
    key = PrivateKey(SECRET)
    compressed = key.public_key.format(compressed=True)
    x_only = compressed[1:]
    script = encode_spell_script(b"spell payload", x_only)
    commitment = compute_tap_commitment(x_only, script)

    d = int.from_bytes(SECRET, "big")
    if compressed[0] == 0x03:
        d = SECP256K1_ORDER - d
    t = (d + int.from_bytes(commitment.tweak, "big")) % SECP256K1_ORDER
    tweaked = PrivateKey(t.to_bytes(32, "big")).public_key.format(compressed=True)

    assert tweaked[1:] == commitment.output_key
    assert tweaked[0] & 1 == commitment.parity
    assert commitment.control_block[0] == 0xC0 | commitment.parity


def test_expected_output_script_mismatch():
    vector = BIP341_SINGLE_LEAF[0]
    internal_key = bytes.fromhex(vector["internal_key"])
    script = bytes.fromhex(vector["script"])
    wrong = bytes.fromhex("5120" + BIP341_SINGLE_LEAF[1]["output_key"])

    with pytest.raises(OutputKeyMismatch) as excinfo:
        compute_tap_commitment(internal_key, script, expected_output_script=wrong)
    assert excinfo.value.context["actual"].hex() == vector["output_key"]

    with pytest.raises(OutputKeyMismatch):
        calculate_control_block(internal_key, script, wrong)


def test_non_taproot_expected_script_is_a_mismatch():
    vector = BIP341_SINGLE_LEAF[0]
    p2wpkh = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
    with pytest.raises(OutputKeyMismatch):
        compute_tap_commitment(
            bytes.fromhex(vector["internal_key"]),
            bytes.fromhex(vector["script"]),
            expected_output_script=p2wpkh,
        )


def test_leaf_script_size_limit():
    tap_leaf_hash(b"\x00" * MAX_LEAF_SCRIPT_SIZE)
    with pytest.raises(ScriptTooLarge) as excinfo:
        tap_leaf_hash(b"\x00" * (MAX_LEAF_SCRIPT_SIZE + 1))
    assert excinfo.value.context["size"] == 65536


def test_parse_control_block():
    parsed = parse_control_block(bytes.fromhex(BIP341_SINGLE_LEAF[0]["control_block"]))
    assert parsed.leaf_version == 0xC0
    assert parsed.parity == 1
    assert parsed.internal_key.hex() == BIP341_SINGLE_LEAF[0]["internal_key"]
    assert parsed.merkle_path == ()

    with pytest.raises(ValueError):
        parse_control_block(b"\xc0" + b"\x00" * 40)
