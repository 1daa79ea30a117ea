import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from symbolic_evm.core.bytevec import ByteSequence
from symbolic_evm.core.contract import Contract
from symbolic_evm.core.opcodes import (
    Opcode,
    disassemble,
    immediate_size,
    instruction_length,
    jump_destinations,
    opcode_name,
)
from symbolic_evm.core.word import Word
from symbolic_evm.exceptions import NotConcrete


@composite
def bytecode_sequence(draw):
    elements = []
    for _ in range(draw(st.integers(min_value=0, max_value=60))):
        opcode = draw(st.integers(min_value=0x00, max_value=0xFF))
        elements.append(bytes([opcode]))
        size = immediate_size(opcode)
        if size:
            elements.append(draw(st.binary(min_size=size, max_size=size)))
    return b"".join(elements)


@settings(max_examples=200, deadline=None)
@given(code=st.binary(min_size=0, max_size=300))
def test_disassemble_random_bytes_covers_code(code):
    operations = disassemble(code)
    if operations:
        offset, opcode, push_data = operations[-1]
        assert offset < len(code)
        assert offset + 1 + (len(push_data) if push_data is not None else 0) <= len(code)


@settings(max_examples=200, deadline=None)
@given(code=bytecode_sequence())
def test_decoded_instructions_follow_disassembly(code):
    contract = Contract(code)
    pc = 0
    for offset, opcode, push_data in disassemble(code):
        assert pc == offset
        instruction = contract.decode_instruction(pc)
        assert instruction.opcode == opcode
        if push_data is not None:
            assert instruction.operand.value == int.from_bytes(push_data, "big")
            assert instruction.operand.width == 256
        pc = instruction.next_pc
    assert set(jump_destinations(code)) == contract.valid_jump_destinations()


def test_push_operand_and_length():
    contract = Contract.from_hex("0x61123456")
    push2 = contract.decode_instruction(0)
    assert push2.opcode == Opcode.PUSH2
    assert push2.operand == Word(0x1234)
    assert push2.length == 3
    assert push2.next_pc == 3
    assert instruction_length(Opcode.PUSH32) == 33
    assert opcode_name(0x5F) == "PUSH0"


def test_push0_pushes_zero():
    assert Contract(b"\x5f").decode_instruction(0).operand == Word(0)


def test_past_end_is_stop():
    contract = Contract(b"\x01")
    assert contract.decode_instruction(10).opcode == Opcode.STOP


def test_truncated_push_is_zero_padded():
    contract = Contract(b"\x62\xab")
    assert contract.decode_instruction(0).operand.value == 0xAB0000


def test_jumpdest_inside_push_data_is_not_valid():
    # PUSH1 0x5b, JUMPDEST
    contract = Contract(bytes([0x60, 0x5B, 0x5B]))
    assert contract.valid_jump_destinations() == frozenset({2})
    assert not contract.is_jumpdest(1)
    assert contract.is_jumpdest(2)


def test_symbolic_opcode_is_not_decodable():
    code = ByteSequence(b"\x00")
    code.append(Word.symbol("b", 8))
    contract = Contract(code)
    assert contract.decode_instruction(0).opcode == Opcode.STOP
    with pytest.raises(NotConcrete):
        contract.decode_instruction(1)
    # symbolic bytes are skipped when scanning for jump destinations
    assert contract.valid_jump_destinations() == frozenset()
