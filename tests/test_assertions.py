from symbolic_evm.analysis.assertions import (
    ASSERTION_FAILURE,
    PANIC_SELECTOR,
    REVERT,
    assertion_condition,
    classify_revert,
    format_counterexample,
    panic_code,
)
from symbolic_evm.core.bytevec import ByteSequence
from symbolic_evm.core.state import CallOutput
from symbolic_evm.core.word import Word
from symbolic_evm.solver.bridge import ModelVariable


def panic(code: int) -> bytes:
    return PANIC_SELECTOR.to_bytes(4, "big") + code.to_bytes(32, "big")


def test_panic_code_decoding():
    assert panic_code(panic(0x01)) == Word(1)
    assert panic_code(b"") is None
    assert panic_code(b"\x08\xc3\x79\xa0" + bytes(64)) is None  # Error(string)
    assert panic_code(panic(0x11)[:20]) is None


def test_only_configured_panic_codes_count():
    assert classify_revert(panic(0x01)) == ASSERTION_FAILURE
    assert classify_revert(panic(0x11)) == REVERT
    assert classify_revert(panic(0x11), panic_codes=[0x01, 0x11]) == ASSERTION_FAILURE
    assert classify_revert(panic(0x32), panic_codes=None) == ASSERTION_FAILURE
    assert classify_revert(b"") == REVERT


def test_classify_call_output():
    assert classify_revert(CallOutput(data=ByteSequence(panic(0x01)))) == ASSERTION_FAILURE
    assert classify_revert(CallOutput()) == REVERT


def test_symbolic_panic_code_is_left_to_the_solver():
    data = ByteSequence(PANIC_SELECTOR.to_bytes(4, "big"))
    data.append(Word.symbol("p_code_uint256"))
    cond = assertion_condition(data, [0x01])
    assert cond.is_symbolic
    assert classify_revert(data) == ASSERTION_FAILURE


def test_format_counterexample_is_sorted_hex():
    model = {
        "p_y_uint256": ModelVariable("p_y_uint256", "BitVec 256", 256, 255),
        "p_x_uint256": 10,
    }
    formatted = format_counterexample(model)
    assert list(formatted) == ["p_x_uint256", "p_y_uint256"]
    assert formatted == {"p_x_uint256": "0xa", "p_y_uint256": "0xff"}
