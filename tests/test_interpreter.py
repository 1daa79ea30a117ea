import pytest

from symbolic_evm.config import EngineConfig
from symbolic_evm.core.bytevec import ByteSequence
from symbolic_evm.core.cheatcodes import Cheatcodes
from symbolic_evm.core.contract import Contract
from symbolic_evm.core.interpreter import Interpreter
from symbolic_evm.core.path import PathState
from symbolic_evm.core.state import Message, ExecutionState
from symbolic_evm.core.word import Word
from symbolic_evm.core.worklist import RunContext
from symbolic_evm.exceptions import (
    InvalidJump,
    InvalidOpcode,
    PathInfeasible,
    StackOverflow,
    StackUnderflow,
    StaticCallViolation,
    UnimplementedOpcode,
)

TARGET = 0xAAAA
CALLER = 0xCA11
INNER = 0xBEEF

# PUSH1 42, PUSH1 0, MSTORE, PUSH1 32, PUSH1 0, RETURN
RETURN_42 = "602a60005260206000f3"
# CALL(gas, 0xbeef, 0, 0, 0, 0, 32)
CALL_INNER = "60206000600060006000" + "61beef" + "5a" + "f1"


def make_interpreter(**overrides):
    overrides.setdefault("solver_timeout_branching", 0)
    return Interpreter(RunContext(EngineConfig(**overrides)))


def run(code, calldata=b"", extra_code=None, **overrides):
    interpreter = make_interpreter(**overrides)
    data = calldata if isinstance(calldata, ByteSequence) else ByteSequence(calldata)
    state = interpreter.new_state(Contract(code), data, TARGET, CALLER)
    for address, other in (extra_code or {}).items():
        state.code[address] = Contract(other)
    return interpreter, interpreter.run(state)


def returned_word(state):
    return state.output.data.get_word(0)


def test_add_and_return():
    _, terminals = run("600160010160005260206000f3")
    assert len(terminals) == 1
    state = terminals[0]
    assert state.is_success()
    assert returned_word(state) == Word(2)


def test_sstore_then_sload_records_trace():
    # SSTORE(1, 42); MSTORE(0, SLOAD(1)); RETURN(0, 32)
    _, terminals = run("602a600155600154" + "60005260206000f3")
    state = terminals[0]
    assert returned_word(state) == Word(42)
    writes = state.context.storage_writes()
    reads = state.context.storage_reads()
    assert len(writes) == 1 and len(reads) == 1
    assert writes[0].slot == Word(1)
    assert writes[0].value == Word(42)
    assert not writes[0].transient
    assert reads[0].value == Word(42)


def test_tstore_is_separate_from_storage():
    # TSTORE(1, 7); MSTORE(0, SLOAD(1)); RETURN(0, 32)
    _, terminals = run("600760015d600154" + "60005260206000f3", symbolic_storage=False)
    state = terminals[0]
    assert returned_word(state) == Word(0)
    assert state.context.storage_writes()[0].transient


def test_stack_underflow_ends_path_with_error():
    _, terminals = run("01")
    assert isinstance(terminals[0].error, StackUnderflow)
    assert not terminals[0].is_success()


def test_stack_overflow():
    _, terminals = run("5f" * 1025)
    assert isinstance(terminals[0].error, StackOverflow)


def test_jump_to_non_jumpdest():
    _, terminals = run("600356")
    assert isinstance(terminals[0].error, InvalidJump)


def test_undefined_and_invalid_opcodes():
    _, terminals = run("0c")
    assert isinstance(terminals[0].error, InvalidOpcode)
    _, terminals = run("fe")
    assert isinstance(terminals[0].error, InvalidOpcode)


def test_callcode_is_unimplemented():
    _, terminals = run("6000" * 7 + "f2")
    assert isinstance(terminals[0].error, UnimplementedOpcode)


def test_sstore_in_static_frame():
    interpreter = make_interpreter()
    message = Message(TARGET, CALLER, CALLER, Word(0), ByteSequence(), is_static=True)
    state = ExecutionState(Contract("6001600055"), message, PathState(interpreter.context.new_solver()))
    terminals = interpreter.run(state)
    assert isinstance(terminals[0].error, StaticCallViolation)


def test_symbolic_jumpi_forks_both_ways():
    # if calldata[0:32] != 0 goto 7 (revert) else stop
    code = "600035600757005b60006000fd"
    calldata = ByteSequence(Word.symbol("p_x_uint256"))
    _, terminals = run(code, calldata)
    assert len(terminals) == 2
    assert sum(state.is_success() for state in terminals) == 1
    assert sum(state.is_revert() for state in terminals) == 1
    for state in terminals:
        assert len(state.path) == 1


def test_concrete_jumpi_takes_one_branch():
    code = "600035600757005b60006000fd"
    _, terminals = run(code, b"")
    assert len(terminals) == 1
    assert terminals[0].is_success()
    _, terminals = run(code, (1).to_bytes(32, "big"))
    assert terminals[0].is_revert()


def test_mod_by_zero_is_zero():
    # MSTORE(0, 5 % 0); RETURN(0, 32)
    _, terminals = run("6000600506" + "60005260206000f3")
    assert returned_word(terminals[0]) == Word(0)


def test_sha3_of_concrete_memory():
    # MSTORE(0, 1); MSTORE(0, SHA3(0, 32)); RETURN(0, 32)
    interpreter, terminals = run("600160005260206000206000" + "5260206000f3")
    digest = returned_word(terminals[0])
    assert digest.is_concrete
    assert interpreter.context.hashes.preimage(digest.value) == (1).to_bytes(32, "big")


def test_call_returns_inner_output():
    outer = CALL_INNER + "50" + "60206000f3"
    _, terminals = run(outer, extra_code={INNER: RETURN_42})
    assert len(terminals) == 1
    state = terminals[0]
    assert returned_word(state) == Word(42)
    assert len(state.context.subcalls()) == 1
    assert state.context.subcalls()[0].depth == 2


def test_call_depth_limit_pushes_zero():
    outer = CALL_INNER + "600052" + "60206000f3"
    _, terminals = run(outer, extra_code={INNER: RETURN_42})
    assert returned_word(terminals[0]) == Word(1)
    _, terminals = run(outer, extra_code={INNER: RETURN_42}, max_call_depth=1)
    assert returned_word(terminals[0]) == Word(0)


def test_reverted_call_rolls_back_storage():
    # inner: SSTORE(0, 1); REVERT(0, 0)
    inner = "6001600055" + "60006000fd"
    # outer: MSTORE(0, CALL inner); RETURN(0, 32)
    outer = CALL_INNER + "600052" + "60206000f3"
    _, terminals = run(outer, extra_code={INNER: inner}, symbolic_storage=False)
    state = terminals[0]
    assert returned_word(state) == Word(0)
    assert INNER not in state.storage or not state.storage[INNER].entries


def test_call_to_account_without_code_succeeds():
    outer = CALL_INNER + "600052" + "60206000f3"
    _, terminals = run(outer)
    assert returned_word(terminals[0]) == Word(1)


def test_create2_address():
    address = Interpreter.create2_address(0, Word(0), ByteSequence(b"\x00"))
    assert address == 0x4D1A2E2BB4F88F0250F26FFFF098B0B30B26BF38


def test_create_deploys_returned_code():
    # init code returns RETURN_42's 10 bytes as runtime code:
    # PUSH10 <RETURN_42>, PUSH1 0, MSTORE, PUSH1 10, PUSH1 22, RETURN
    init = "69" + RETURN_42 + "600052" + "600a6016f3"
    init_bytes = bytes.fromhex(init)
    # store init code in memory with CODECOPY from the outer contract's tail, then CREATE
    size = len(init_bytes)
    # CODECOPY(0, tail_offset, size); CREATE(0, 0, size); MSTORE(0, addr); RETURN(0, 32)
    prefix_len = 2 + 2 + 2 + 1 + 2 + 2 + 2 + 1 + 2 + 1 + 2 + 2 + 1 + 1
    prefix = (
        f"60{size:02x}" + f"60{prefix_len:02x}" + "6000" + "39"
        + f"60{size:02x}" + "6000" + "6000" + "f0"
        + "6000" + "52" + "6020" + "6000" + "f3" + "00"
    )
    assert len(bytes.fromhex(prefix)) == prefix_len
    interpreter, terminals = run(prefix + init)
    state = terminals[0]
    address = returned_word(state).value
    assert address == 0xAAAA0001
    assert state.code[address].concrete_code() == bytes.fromhex(RETURN_42)


def test_assume_cheatcode():
    interpreter = make_interpreter()
    state = interpreter.new_state(Contract(b""), ByteSequence(), TARGET, CALLER)
    with pytest.raises(PathInfeasible):
        Cheatcodes.assume(state, Word(0))
    x = Word.symbol("p_x_uint256")
    Cheatcodes.assume(state, x.ugt(5).to_word())
    assert len(state.path) == 1
    assert state.path.needs_check
    assert not state.path.check_feasibility(x.ult(3))


# hash cd[0] and cd[32], return keccak(cd[0]) == keccak(cd[32])
HASH_COMPARE = "600035600052602060002060203560005260206000201460005260206000f3"


def test_hash_axioms_reach_every_path():
    # branch on cd[64] first, then both sides run the same comparison
    code = "604035602557" + HASH_COMPARE + "5b" + HASH_COMPARE
    x, y = Word.symbol("p_x_uint256"), Word.symbol("p_y_uint256")
    calldata = ByteSequence(x)
    calldata.append(y)
    calldata.append(Word.symbol("p_c_uint256"))
    _, terminals = run(code, calldata)
    assert len(terminals) == 2
    for state in terminals:
        equal = returned_word(state).ne(0)
        assert not state.path.check_feasibility(equal.and_(x.ne(y)))
