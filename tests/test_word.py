import pytest
import z3
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from symbolic_evm.core.word import AbstractionFunctions, Predicate, Word, to_signed
from symbolic_evm.exceptions import NotConcrete, WidthMismatch

WIDTHS = [8, 160, 256]


@composite
def sized_pair(draw):
    width = draw(st.sampled_from(WIDTHS))
    a = draw(st.integers(min_value=0, max_value=(1 << width) - 1))
    b = draw(st.integers(min_value=0, max_value=(1 << width) - 1))
    return width, a, b


def prove(claim):
    """True if claim holds for every assignment."""
    solver = z3.Solver()
    solver.add(z3.Not(claim))
    return solver.check() == z3.unsat


@settings(max_examples=200, deadline=None)
@given(sized_pair())
def test_add_sub_round_trip(pair):
    width, a, b = pair
    x, y = Word(a, width), Word(b, width)
    assert x.add(y).sub(y) == x
    assert x.add(y).value == (a + b) % (1 << width)


@settings(max_examples=200, deadline=None)
@given(sized_pair())
def test_concrete_arithmetic_matches_modular_integers(pair):
    width, a, b = pair
    mod = 1 << width
    x, y = Word(a, width), Word(b, width)
    assert x.mul(y).value == (a * b) % mod
    assert x.udiv(y).value == (a // b if b else 0)
    assert x.urem(y).value == (a % b if b else a)
    assert x.ult(y).concrete_value() == (a < b)
    assert x.slt(y).concrete_value() == (to_signed(a, width) < to_signed(b, width))
    assert x.xor(y).xor(y) == x


@settings(max_examples=100, deadline=None)
@given(st.integers(min_value=0, max_value=(1 << 256) - 1))
def test_symbolic_add_agrees_with_concrete(value):
    x = Word.symbol("x")
    result = x.add(value)
    assert result.is_symbolic
    assert prove(z3.Implies(x.as_z3() == 5, result.as_z3() == (5 + value) % (1 << 256)))


def test_ints_are_masked():
    assert Word(-1).value == (1 << 256) - 1
    assert Word(0x1FF, 8).value == 0xFF


def test_mul_identities_on_symbols():
    x = Word.symbol("x")
    assert x.mul(0) == Word(0)
    assert x.mul(1) is x
    assert Word(1).mul(x) is x
    doubled = x.mul(8)
    assert prove(doubled.as_z3() == x.as_z3() * 8)


def test_symbolic_division_by_zero_yields_zero():
    x = Word.symbol("x")
    y = Word.symbol("y")
    q = x.udiv(y)
    assert prove(z3.Implies(y.as_z3() == 0, q.as_z3() == 0))
    assert x.udiv(0) == Word(0)
    assert x.urem(0) is x


def test_division_by_power_of_two_is_a_shift():
    x = Word.symbol("x")
    assert prove(x.udiv(16).as_z3() == z3.LShR(x.as_z3(), 4))
    assert prove(x.urem(16).as_z3() == x.as_z3() & 15)


def test_sdiv_and_smod_signs():
    minus_seven = Word(-7)
    two = Word(2)
    assert minus_seven.sdiv(two).signed_value() == -3
    assert minus_seven.smod(two).signed_value() == -1
    assert Word(7).smod(Word(-2)).signed_value() == 1


def test_exp_unrolls_small_exponents_and_abstracts_the_rest():
    x = Word.symbol("x")
    abstractions = AbstractionFunctions()
    squared = x.exp(2, unroll_bound=2, abstractions=abstractions)
    assert prove(squared.as_z3() == x.as_z3() * x.as_z3())
    cubed = x.exp(3, unroll_bound=2, abstractions=abstractions)
    assert "f_evm_exp_256" in str(cubed.as_z3())
    with pytest.raises(NotConcrete):
        x.exp(3, unroll_bound=2)
    assert Word(3).exp(Word(4)).value == 81


def test_addmod_mulmod_use_full_precision():
    big = Word((1 << 256) - 1)
    assert big.addmod(big, Word(10)).value == (2 * ((1 << 256) - 1)) % 10
    assert big.mulmod(big, Word(7)).value == (((1 << 256) - 1) ** 2) % 7
    assert big.addmod(Word(1), Word(0)).value == 0


def test_shifts():
    assert Word(1).shl(255).value == 1 << 255
    assert Word(1).shl(256).value == 0
    assert Word(1 << 255).shr(255).value == 1
    assert Word(1 << 255).sar(255).signed_value() == -1
    x = Word.symbol("x")
    assert x.shl(0) is x
    assert x.shr(300) == Word(0)


def test_byte_and_signextend():
    word = Word(0x1234)
    assert word.evm_byte(Word(31)).value == 0x34
    assert word.evm_byte(Word(30)).value == 0x12
    assert word.evm_byte(Word(32)).value == 0
    assert Word(0xFF).signextend(Word(0)).value == (1 << 256) - 1
    assert Word(0x7F).signextend(Word(0)).value == 0x7F
    assert Word(0xFF).signextend(Word(31)).value == 0xFF


def test_extract_concat():
    word = Word(0xAABB, 16)
    assert word.byte(0) == Word(0xAA, 8)
    assert word.extract(7, 0) == Word(0xBB, 8)
    assert Word(0xAA, 8).concat(Word(0xBB, 8)) == word
    with pytest.raises(ValueError):
        word.extract(16, 0)


def test_width_mismatch():
    with pytest.raises(WidthMismatch):
        Word(1, 8).add(Word(1, 16))
    assert Word(1, 8).eq(Word(1, 16)).is_false()
    assert Word(1, 8).ne(Word(1, 16)).is_true()


def test_symbolic_equality_is_structural_for_python_eq():
    x = Word.symbol("x")
    assert x == Word.symbol("x")
    assert x != Word.symbol("y")
    assert x.eq(x).is_true()
    assert x.eq(Word.symbol("y")).is_symbolic


def test_predicate_short_circuits():
    p = Word.symbol("x").ult(10)
    assert p.and_(Predicate(True)) is p
    assert p.and_(Predicate(False)).is_false()
    assert p.or_(Predicate(True)).is_true()
    assert Predicate(True).xor(p) == p.not_()
    assert Predicate(z3.BoolVal(True)).is_true()


def test_predicate_to_word():
    assert Predicate(True).to_word() == Word(1)
    p = Word.symbol("x").eq(3)
    word = p.to_word()
    assert prove(z3.Implies(p.as_z3(), word.as_z3() == 1))
    assert Predicate.from_word(Word(0)).is_false()


def test_signextend_with_symbolic_byte_index():
    size = Word.symbol("b")
    extended = Word(0x80FF).signextend(size)
    assert extended.is_symbolic
    top = (1 << 256) - 1
    assert prove(z3.Implies(size.as_z3() == 0, extended.as_z3() == top))
    assert prove(z3.Implies(size.as_z3() == 1, extended.as_z3() == top ^ 0x7F00))
    assert prove(z3.Implies(size.as_z3() == 2, extended.as_z3() == 0x80FF))
    assert prove(z3.Implies(z3.UGE(size.as_z3(), 31), extended.as_z3() == 0x80FF))
