# analysis/assertions.py
"""
Classification of failed paths.

Solidity ``assert`` failures revert with ``Panic(uint256)``; only the panic
codes listed in the configuration count as assertion failures, every other
revert is an ordinary revert.
"""

from typing import Dict, Optional, Sequence, Union

from ..core.bytevec import ByteSequence
from ..core.state import CallOutput
from ..core.word import Predicate, Word

# bytes4(keccak256("Panic(uint256)"))
PANIC_SELECTOR = 0x4E487B71

ASSERTION_FAILURE = "ASSERTION_FAILURE"
REVERT = "REVERT"


def _as_sequence(data: Union[bytes, ByteSequence]) -> ByteSequence:
    return data if isinstance(data, ByteSequence) else ByteSequence(bytes(data))


def panic_code(data: Union[bytes, ByteSequence]) -> Optional[Word]:
    """The Panic code carried by revert data, or None when it is not a Panic."""
    data = _as_sequence(data)
    if len(data) < 36:
        return None
    selector = data.slice(0, 4).unwrap()
    if not isinstance(selector, bytes) or int.from_bytes(selector, "big") != PANIC_SELECTOR:
        return None
    return data.get_word(4)


def assertion_condition(data: Union[bytes, ByteSequence], panic_codes: Optional[Sequence[int]]) -> Predicate:
    """
    Condition under which the revert data is a counted assertion failure.
    ``panic_codes=None`` counts every Panic code.
    """
    code = panic_code(data)
    if code is None:
        return Predicate(False)
    if panic_codes is None:
        return Predicate(True)
    cond = Predicate(False)
    for expected in panic_codes:
        cond = cond.or_(code.eq(expected))
    return cond


def classify_revert(output: Union[CallOutput, bytes, ByteSequence], panic_codes: Optional[Sequence[int]] = (0x01,)) -> str:
    data = output.data if isinstance(output, CallOutput) else output
    if data is None:
        return REVERT
    cond = assertion_condition(data, panic_codes)
    # a symbolic code may still match; the solver decides later
    return REVERT if cond.is_false() else ASSERTION_FAILURE


def format_counterexample(model: Dict) -> Dict[str, str]:
    """Variable name -> 0x-prefixed hex value, sorted by name."""
    result = {}
    for name in sorted(model):
        value = model[name]
        value = getattr(value, "value", value)
        result[name] = hex(value)
    return result
