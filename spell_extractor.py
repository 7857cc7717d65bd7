"""
Locate and decode the spell carried by a broadcast transaction.

A spell input spends a taproot output through the spell leaf, so its witness
is ``[signature, tapscript, control_block]`` and the tapscript pushes the
"spell" marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bitcoin.core import CTransaction

from spell_errors import IndexOutOfRange, MarkerNotFound, NoSpellInput
from spell_script import decode_spell_script, has_spell_marker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedSpell:
    input_index: int
    tapscript: bytes
    control_block: bytes
    spell_data: bytes

    def to_dict(self) -> dict:
        return {
            "inputIndex": self.input_index,
            "tapscript": self.tapscript.hex(),
            "controlBlock": self.control_block.hex(),
            "spellData": self.spell_data.hex(),
        }


def _witness_stack(tx: CTransaction, index: int) -> list[bytes]:
    vtxinwit = tx.wit.vtxinwit
    if index >= len(vtxinwit):
        return []
    return list(vtxinwit[index].scriptWitness.stack)


def find_spell_input(tx: CTransaction) -> int:
    """Index of the first input whose witness reveals a spell tapscript."""
    for index in range(len(tx.vin)):
        stack = _witness_stack(tx, index)
        if len(stack) >= 3 and has_spell_marker(stack[1]):
            return index
    raise NoSpellInput(
        f"None of the {len(tx.vin)} inputs carries a spell witness.",
        inputs=len(tx.vin),
    )


def extract_spell(
    tx: CTransaction | bytes | str, target_input_index: int | None = None
) -> ExtractedSpell:
    """
    Extract tapscript, control block and payload from a spell transaction.

    ``tx`` may be a transaction object, raw bytes, or hex. Without
    ``target_input_index`` the inputs are scanned and the first spell input
    wins.
    """
    if isinstance(tx, str):
        tx = bytes.fromhex(tx.strip())
    if isinstance(tx, (bytes, bytearray)):
        tx = CTransaction.deserialize(bytes(tx))

    if target_input_index is None:
        index = find_spell_input(tx)
    else:
        index = target_input_index
        if not 0 <= index < len(tx.vin):
            raise IndexOutOfRange(
                f"Input {index} does not exist; transaction has {len(tx.vin)} inputs.",
                index=index,
                inputs=len(tx.vin),
            )

    stack = _witness_stack(tx, index)
    if len(stack) < 3:
        raise NoSpellInput(
            f"Input {index} has {len(stack)} witness items; a spell witness needs 3.",
            index=index,
            witness_items=len(stack),
        )
    tapscript, control_block = bytes(stack[1]), bytes(stack[2])
    try:
        spell_data = decode_spell_script(tapscript)
    except MarkerNotFound as exc:
        raise NoSpellInput(
            f"Input {index} does not reveal a spell tapscript: {exc.message}",
            index=index,
        ) from exc

    logger.debug("Extracted %d-byte spell from input %d", len(spell_data), index)
    return ExtractedSpell(
        input_index=index,
        tapscript=tapscript,
        control_block=control_block,
        spell_data=spell_data,
    )
