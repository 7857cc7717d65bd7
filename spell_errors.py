"""
Error taxonomy for spell construction, signing and extraction.

Every failure raised by the spell modules derives from ``SpellError`` and
carries a stable ``code`` plus a ``context`` dict (offending index, expected
vs. actual values) so callers can diagnose a failure without re-deriving
intermediate state. None of these are retried internally.
"""

from __future__ import annotations

from typing import Any


class SpellError(Exception):
    """Base class for all spell toolkit errors."""

    code = "SpellError"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        ctx = {}
        for key, value in self.context.items():
            ctx[key] = value.hex() if isinstance(value, (bytes, bytearray)) else value
        return {"code": self.code, "error": self.message, "context": ctx}


class ScriptTooLarge(SpellError):
    code = "ScriptTooLarge"


class InvalidTweak(SpellError):
    code = "InvalidTweak"


class OutputKeyMismatch(SpellError):
    """Derived output key differs from the key embedded in a P2TR script."""

    code = "OutputKeyMismatch"


class MarkerNotFound(SpellError):
    code = "MarkerNotFound"


class TruncatedWitness(SpellError):
    code = "TruncatedWitness"


class SighashError(SpellError):
    code = "SighashError"


class InvalidPrivateKey(SpellError):
    code = "InvalidPrivateKey"


class NoSpellInput(SpellError):
    code = "NoSpellInput"


class IndexOutOfRange(SpellError):
    code = "IndexOutOfRange"


class EmptyOutputs(SpellError):
    code = "EmptyOutputs"


class InsufficientFunds(SpellError):
    code = "InsufficientFunds"


class UnknownScriptType(SpellError):
    code = "UnknownScriptType"


class UtxoResolutionFailed(SpellError):
    """The chain-data provider could not supply a referenced transaction."""

    code = "UtxoResolutionFailed"
