# core/word.py
"""
Concrete-or-symbolic machine values.

A ``Word`` is either a Python int (always reduced modulo 2**width) or a z3
bitvector expression of the same width. Operations on two concrete words are
computed exactly and masked; as soon as one side is symbolic a z3 expression
is built, but the common identities (multiply by 0/1/2**k, divide or reduce by
2**k, and/or/xor with neutral elements) are rewritten first so the solver
never sees them.

Division and modulo never raise on a zero divisor: udiv/sdiv give 0 and
urem/smod give the dividend back, which is also what the bitvector theory
says for bvurem/bvsrem.

Python ``==`` on two words is *structural* (same width, same value or the
same z3 term). Use ``eq()`` to build an EVM equality predicate.
"""

from typing import Dict, Optional, Tuple, Union

import structlog
import z3

from ..exceptions import NotConcrete, WidthMismatch

logger = structlog.get_logger()

WORD_BITS = 256


def _mask(width: int) -> int:
    return (1 << width) - 1


def to_signed(value: int, width: int) -> int:
    return value - (1 << width) if value >> (width - 1) else value


def power_of_two(value: int) -> Optional[int]:
    """Return k if value == 2**k, else None."""
    if value > 0 and value & (value - 1) == 0:
        return value.bit_length() - 1
    return None


class AbstractionFunctions:
    """
    Uninterpreted functions standing in for operations that are too costly to
    encode precisely (exponentiation with a large or symbolic exponent, and
    optionally multiplication/division of two symbolic operands).

    Every symbol is named ``f_evm_<op>_<width>``. A solver model that still
    mentions one of them reflects the abstraction, not a real execution.
    """

    PREFIX = "f_evm_"

    def __init__(self, nonlinear: bool = False):
        self.nonlinear = nonlinear
        self._functions: Dict[Tuple[str, int], z3.FuncDeclRef] = {}

    def get(self, op: str, width: int) -> z3.FuncDeclRef:
        key = (op, width)
        if key not in self._functions:
            sort = z3.BitVecSort(width)
            self._functions[key] = z3.Function(f"{self.PREFIX}{op}_{width}", sort, sort, sort)
            logger.debug("Declared abstraction function", op=op, width=width)
        return self._functions[key]

    def apply(self, op: str, a: "Word", b: "Word") -> "Word":
        return Word(self.get(op, a.width)(a.as_z3(), b.as_z3()), a.width)

    def __len__(self) -> int:
        return len(self._functions)


class Predicate:
    """A concrete Python bool or a symbolic z3 boolean."""

    __slots__ = ("value",)

    def __init__(self, value: Union[bool, z3.BoolRef]):
        if isinstance(value, z3.BoolRef):
            if z3.is_true(value):
                value = True
            elif z3.is_false(value):
                value = False
        elif not isinstance(value, bool):
            raise TypeError(f"Predicate expects bool or z3.BoolRef, got {type(value)}")
        self.value = value

    @property
    def is_concrete(self) -> bool:
        return isinstance(self.value, bool)

    @property
    def is_symbolic(self) -> bool:
        return not self.is_concrete

    def is_true(self) -> bool:
        return self.value is True

    def is_false(self) -> bool:
        return self.value is False

    def concrete_value(self) -> bool:
        if not self.is_concrete:
            raise NotConcrete(f"symbolic predicate: {self.value}")
        return self.value

    def as_z3(self) -> z3.BoolRef:
        if self.is_concrete:
            return z3.BoolVal(self.value)
        return self.value

    def key(self) -> Tuple[str, Union[bool, int]]:
        """Identity used to detect syntactically identical predicates."""
        if self.is_concrete:
            return ("c", self.value)
        return ("s", self.value.get_id())

    # --- Logical operations ---

    def not_(self) -> "Predicate":
        if self.is_concrete:
            return Predicate(not self.value)
        return Predicate(z3.Not(self.value))

    def and_(self, other: "Predicate") -> "Predicate":
        if self.is_concrete:
            return other if self.value else self
        if other.is_concrete:
            return self if other.value else other
        return Predicate(z3.And(self.value, other.value))

    def or_(self, other: "Predicate") -> "Predicate":
        if self.is_concrete:
            return self if self.value else other
        if other.is_concrete:
            return other if other.value else self
        return Predicate(z3.Or(self.value, other.value))

    def xor(self, other: "Predicate") -> "Predicate":
        if self.is_concrete and other.is_concrete:
            return Predicate(self.value != other.value)
        if self.is_concrete:
            return other.not_() if self.value else other
        if other.is_concrete:
            return self.not_() if other.value else self
        return Predicate(z3.Xor(self.value, other.value))

    # --- Word conversion ---

    def to_word(self, width: int = WORD_BITS) -> "Word":
        if self.is_concrete:
            return Word(int(self.value), width)
        return Word(z3.If(self.value, z3.BitVecVal(1, width), z3.BitVecVal(0, width)), width)

    @classmethod
    def from_word(cls, word: "Word") -> "Predicate":
        """Non-zero means true."""
        return word.ne(0)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Predicate):
            return NotImplemented
        if self.is_concrete or other.is_concrete:
            return self.value is other.value
        return self.value.eq(other.value)

    def __hash__(self) -> int:
        return hash(self.key())

    def __repr__(self) -> str:
        return f"Predicate({self.value})"


class Word:
    """Fixed-width EVM value, concrete (int) or symbolic (z3 bitvector)."""

    __slots__ = ("value", "width")

    def __init__(self, value: Union[int, z3.BitVecRef], width: Optional[int] = None):
        if isinstance(value, bool):
            value = int(value)
        if isinstance(value, z3.BitVecRef):
            if width is not None and value.size() != width:
                raise WidthMismatch(width, value.size(), "Word")
            width = value.size()
            if z3.is_bv_value(value):
                value = value.as_long()
        elif isinstance(value, int):
            width = WORD_BITS if width is None else width
            value &= _mask(width)
        else:
            raise TypeError(f"Word expects int or z3.BitVecRef, got {type(value)}")
        if width <= 0:
            raise ValueError(f"invalid width {width}")
        self.value = value
        self.width = width

    # --- Construction ---

    @classmethod
    def const(cls, value: int, width: int = WORD_BITS) -> "Word":
        return cls(value, width)

    @classmethod
    def symbol(cls, name: str, width: int = WORD_BITS) -> "Word":
        return cls(z3.BitVec(name, width), width)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Word":
        if not data:
            raise ValueError("cannot build a Word from empty bytes")
        return cls(int.from_bytes(data, "big"), len(data) * 8)

    # --- Inspection ---

    @property
    def is_concrete(self) -> bool:
        return isinstance(self.value, int)

    @property
    def is_symbolic(self) -> bool:
        return not self.is_concrete

    def concrete_value(self) -> int:
        if not self.is_concrete:
            raise NotConcrete(f"symbolic value: {self.value}")
        return self.value

    def signed_value(self) -> int:
        return to_signed(self.concrete_value(), self.width)

    def is_zero(self) -> bool:
        """True only for a concrete zero."""
        return self.is_concrete and self.value == 0

    def as_z3(self) -> z3.BitVecRef:
        if self.is_concrete:
            return z3.BitVecVal(self.value, self.width)
        return self.value

    def to_bytes(self) -> bytes:
        if self.width % 8:
            raise ValueError(f"width {self.width} is not a whole number of bytes")
        return self.concrete_value().to_bytes(self.width // 8, "big")

    def simplify(self) -> "Word":
        if self.is_concrete:
            return self
        return Word(z3.simplify(self.value), self.width)

    def _coerce(self, other: Union["Word", int], op: str) -> "Word":
        if isinstance(other, Word):
            if other.width != self.width:
                raise WidthMismatch(self.width, other.width, op)
            return other
        if isinstance(other, int):
            return Word(other, self.width)
        raise TypeError(f"cannot combine Word with {type(other)}")

    def _both_concrete(self, other: "Word") -> bool:
        return self.is_concrete and other.is_concrete

    # --- Arithmetic ---

    def add(self, other: Union["Word", int]) -> "Word":
        other = self._coerce(other, "add")
        if self._both_concrete(other):
            return Word(self.value + other.value, self.width)
        if other.is_zero():
            return self
        if self.is_zero():
            return other
        return Word(self.as_z3() + other.as_z3(), self.width)

    def sub(self, other: Union["Word", int]) -> "Word":
        other = self._coerce(other, "sub")
        if self._both_concrete(other):
            return Word(self.value - other.value, self.width)
        if other.is_zero():
            return self
        if self.is_symbolic and other.is_symbolic and self.value.eq(other.value):
            return Word(0, self.width)
        return Word(self.as_z3() - other.as_z3(), self.width)

    def mul(self, other: Union["Word", int], abstractions: Optional[AbstractionFunctions] = None) -> "Word":
        other = self._coerce(other, "mul")
        if self._both_concrete(other):
            return Word(self.value * other.value, self.width)
        for fixed, free in ((self, other), (other, self)):
            if not fixed.is_concrete:
                continue
            if fixed.value == 0:
                return Word(0, self.width)
            if fixed.value == 1:
                return free
            k = power_of_two(fixed.value)
            if k is not None:
                return Word(free.as_z3() << k, self.width)
        if abstractions is not None and abstractions.nonlinear:
            return abstractions.apply("bvmul", self, other)
        return Word(self.as_z3() * other.as_z3(), self.width)

    def udiv(self, other: Union["Word", int], abstractions: Optional[AbstractionFunctions] = None) -> "Word":
        other = self._coerce(other, "udiv")
        if self._both_concrete(other):
            return Word(0 if other.value == 0 else self.value // other.value, self.width)
        if other.is_concrete:
            if other.value == 0:
                return Word(0, self.width)
            if other.value == 1:
                return self
            k = power_of_two(other.value)
            if k is not None:
                return Word(z3.LShR(self.as_z3(), k), self.width)
            return Word(z3.UDiv(self.as_z3(), other.as_z3()), self.width)
        if self.is_zero():
            return self
        if abstractions is not None and abstractions.nonlinear:
            return abstractions.apply("bvudiv", self, other)
        b = other.as_z3()
        return Word(z3.If(b == 0, z3.BitVecVal(0, self.width), z3.UDiv(self.as_z3(), b)), self.width)

    def urem(self, other: Union["Word", int], abstractions: Optional[AbstractionFunctions] = None) -> "Word":
        other = self._coerce(other, "urem")
        if self._both_concrete(other):
            return self if other.value == 0 else Word(self.value % other.value, self.width)
        if other.is_concrete:
            if other.value == 0:
                return self
            if other.value == 1:
                return Word(0, self.width)
            k = power_of_two(other.value)
            if k is not None:
                return Word(self.as_z3() & (other.value - 1), self.width)
            return Word(z3.URem(self.as_z3(), other.as_z3()), self.width)
        if self.is_zero():
            return self
        if abstractions is not None and abstractions.nonlinear:
            return abstractions.apply("bvurem", self, other)
        return Word(z3.URem(self.as_z3(), other.as_z3()), self.width)

    def sdiv(self, other: Union["Word", int], abstractions: Optional[AbstractionFunctions] = None) -> "Word":
        other = self._coerce(other, "sdiv")
        if self._both_concrete(other):
            if other.value == 0:
                return Word(0, self.width)
            a, b = to_signed(self.value, self.width), to_signed(other.value, self.width)
            quotient = abs(a) // abs(b)
            return Word(-quotient if (a < 0) != (b < 0) else quotient, self.width)
        if other.is_concrete:
            if other.value == 0:
                return Word(0, self.width)
            if other.value == 1:
                return self
            return Word(self.as_z3() / other.as_z3(), self.width)
        if self.is_zero():
            return self
        if abstractions is not None and abstractions.nonlinear:
            return abstractions.apply("bvsdiv", self, other)
        b = other.as_z3()
        return Word(z3.If(b == 0, z3.BitVecVal(0, self.width), self.as_z3() / b), self.width)

    def smod(self, other: Union["Word", int], abstractions: Optional[AbstractionFunctions] = None) -> "Word":
        other = self._coerce(other, "smod")
        if self._both_concrete(other):
            if other.value == 0:
                return self
            a, b = to_signed(self.value, self.width), to_signed(other.value, self.width)
            remainder = abs(a) % abs(b)
            return Word(-remainder if a < 0 else remainder, self.width)
        if other.is_concrete:
            if other.value == 0:
                return self
            if other.value == 1:
                return Word(0, self.width)
            return Word(z3.SRem(self.as_z3(), other.as_z3()), self.width)
        if self.is_zero():
            return self
        if abstractions is not None and abstractions.nonlinear:
            return abstractions.apply("bvsrem", self, other)
        return Word(z3.SRem(self.as_z3(), other.as_z3()), self.width)

    def exp(
        self,
        exponent: Union["Word", int],
        unroll_bound: int = 2,
        abstractions: Optional[AbstractionFunctions] = None,
    ) -> "Word":
        """
        Modular exponentiation. A concrete exponent up to ``unroll_bound`` is
        expanded into multiplications; anything else is handed to the
        ``f_evm_exp`` abstraction.
        """
        exponent = self._coerce(exponent, "exp")
        if self._both_concrete(exponent):
            return Word(pow(self.value, exponent.value, 1 << self.width), self.width)
        if exponent.is_concrete:
            n = exponent.value
            if n == 0:
                return Word(1, self.width)
            if n == 1:
                return self
            if n <= unroll_bound:
                result = self
                for _ in range(n - 1):
                    result = result.mul(self, abstractions)
                return result
        elif self.is_concrete and self.value == 1:
            return self
        if abstractions is None:
            raise NotConcrete("exponentiation needs an abstraction function for this operand")
        return abstractions.apply("exp", self, exponent)

    def addmod(self, other: Union["Word", int], modulus: Union["Word", int]) -> "Word":
        other = self._coerce(other, "addmod")
        modulus = self._coerce(modulus, "addmod")
        if self._both_concrete(other) and modulus.is_concrete:
            if modulus.value == 0:
                return Word(0, self.width)
            return Word((self.value + other.value) % modulus.value, self.width)
        return self._widened_mod(other, modulus, 1, lambda a, b: a + b)

    def mulmod(self, other: Union["Word", int], modulus: Union["Word", int]) -> "Word":
        other = self._coerce(other, "mulmod")
        modulus = self._coerce(modulus, "mulmod")
        if self._both_concrete(other) and modulus.is_concrete:
            if modulus.value == 0:
                return Word(0, self.width)
            return Word((self.value * other.value) % modulus.value, self.width)
        return self._widened_mod(other, modulus, self.width, lambda a, b: a * b)

    def _widened_mod(self, other: "Word", modulus: "Word", extra: int, op) -> "Word":
        if modulus.is_zero():
            return Word(0, self.width)
        a = z3.ZeroExt(extra, self.as_z3())
        b = z3.ZeroExt(extra, other.as_z3())
        n = z3.ZeroExt(extra, modulus.as_z3())
        result = z3.Extract(self.width - 1, 0, z3.URem(op(a, b), n))
        if modulus.is_concrete:
            return Word(result, self.width)
        return Word(z3.If(modulus.as_z3() == 0, z3.BitVecVal(0, self.width), result), self.width)

    # --- Bitwise ---

    def and_(self, other: Union["Word", int]) -> "Word":
        other = self._coerce(other, "and")
        if self._both_concrete(other):
            return Word(self.value & other.value, self.width)
        for fixed, free in ((self, other), (other, self)):
            if fixed.is_concrete:
                if fixed.value == 0:
                    return fixed
                if fixed.value == _mask(self.width):
                    return free
        return Word(self.as_z3() & other.as_z3(), self.width)

    def or_(self, other: Union["Word", int]) -> "Word":
        other = self._coerce(other, "or")
        if self._both_concrete(other):
            return Word(self.value | other.value, self.width)
        for fixed, free in ((self, other), (other, self)):
            if fixed.is_concrete:
                if fixed.value == 0:
                    return free
                if fixed.value == _mask(self.width):
                    return fixed
        return Word(self.as_z3() | other.as_z3(), self.width)

    def xor(self, other: Union["Word", int]) -> "Word":
        other = self._coerce(other, "xor")
        if self._both_concrete(other):
            return Word(self.value ^ other.value, self.width)
        if other.is_zero():
            return self
        if self.is_zero():
            return other
        return Word(self.as_z3() ^ other.as_z3(), self.width)

    def not_(self) -> "Word":
        return Word(~self.value, self.width)

    def shl(self, shift: Union["Word", int]) -> "Word":
        """self << shift; shifts of width or more give 0."""
        shift = self._coerce(shift, "shl")
        if shift.is_concrete:
            s = shift.value
            if s >= self.width:
                return Word(0, self.width)
            if s == 0 or self.is_zero():
                return self
            return Word(self.value << s, self.width)
        return Word(self.as_z3() << shift.as_z3(), self.width)

    def shr(self, shift: Union["Word", int]) -> "Word":
        """Logical right shift."""
        shift = self._coerce(shift, "shr")
        if shift.is_concrete:
            s = shift.value
            if s >= self.width:
                return Word(0, self.width)
            if s == 0 or self.is_zero():
                return self
            if self.is_concrete:
                return Word(self.value >> s, self.width)
            return Word(z3.LShR(self.value, s), self.width)
        return Word(z3.LShR(self.as_z3(), shift.as_z3()), self.width)

    def sar(self, shift: Union["Word", int]) -> "Word":
        """Arithmetic right shift."""
        shift = self._coerce(shift, "sar")
        if self._both_concrete(shift):
            s = min(shift.value, self.width)
            return Word(to_signed(self.value, self.width) >> s, self.width)
        if shift.is_concrete and shift.value == 0:
            return self
        return Word(self.as_z3() >> shift.as_z3(), self.width)

    # --- Comparison ---

    def eq(self, other: Union["Word", int]) -> Predicate:
        """Words of different widths are never equal."""
        if isinstance(other, Word) and other.width != self.width:
            return Predicate(False)
        other = self._coerce(other, "eq")
        if self._both_concrete(other):
            return Predicate(self.value == other.value)
        if self.is_symbolic and other.is_symbolic and self.value.eq(other.value):
            return Predicate(True)
        return Predicate(self.as_z3() == other.as_z3())

    def ne(self, other: Union["Word", int]) -> Predicate:
        return self.eq(other).not_()

    def iszero(self) -> Predicate:
        return self.eq(0)

    def _compare(self, other, op: str, concrete, symbolic) -> Predicate:
        other = self._coerce(other, op)
        if self._both_concrete(other):
            return Predicate(concrete(self.value, other.value))
        return Predicate(symbolic(self.as_z3(), other.as_z3()))

    def ult(self, other: Union["Word", int]) -> Predicate:
        return self._compare(other, "ult", lambda a, b: a < b, z3.ULT)

    def ugt(self, other: Union["Word", int]) -> Predicate:
        return self._compare(other, "ugt", lambda a, b: a > b, z3.UGT)

    def ule(self, other: Union["Word", int]) -> Predicate:
        return self._compare(other, "ule", lambda a, b: a <= b, z3.ULE)

    def uge(self, other: Union["Word", int]) -> Predicate:
        return self._compare(other, "uge", lambda a, b: a >= b, z3.UGE)

    def slt(self, other: Union["Word", int]) -> Predicate:
        w = self.width
        return self._compare(
            other, "slt", lambda a, b: to_signed(a, w) < to_signed(b, w), lambda a, b: a < b
        )

    def sgt(self, other: Union["Word", int]) -> Predicate:
        w = self.width
        return self._compare(
            other, "sgt", lambda a, b: to_signed(a, w) > to_signed(b, w), lambda a, b: a > b
        )

    # --- Width changes and extraction ---

    def zero_extend(self, width: int) -> "Word":
        if width < self.width:
            raise WidthMismatch(self.width, width, "zero_extend")
        if width == self.width:
            return self
        if self.is_concrete:
            return Word(self.value, width)
        return Word(z3.ZeroExt(width - self.width, self.value), width)

    def sign_extend(self, width: int) -> "Word":
        if width < self.width:
            raise WidthMismatch(self.width, width, "sign_extend")
        if width == self.width:
            return self
        if self.is_concrete:
            return Word(to_signed(self.value, self.width), width)
        return Word(z3.SignExt(width - self.width, self.value), width)

    def truncate(self, width: int) -> "Word":
        if width > self.width:
            raise WidthMismatch(self.width, width, "truncate")
        if width == self.width:
            return self
        return self.extract(width - 1, 0)

    def extract(self, hi: int, lo: int) -> "Word":
        """Bits hi..lo inclusive, lo being the least significant."""
        if not 0 <= lo <= hi < self.width:
            raise ValueError(f"invalid extract [{hi}:{lo}] of a {self.width}-bit word")
        width = hi - lo + 1
        if width == self.width:
            return self
        if self.is_concrete:
            return Word(self.value >> lo, width)
        return Word(z3.Extract(hi, lo, self.value), width)

    def concat(self, other: "Word") -> "Word":
        """self becomes the high part."""
        width = self.width + other.width
        if self._both_concrete(other):
            return Word((self.value << other.width) | other.value, width)
        return Word(z3.Concat(self.as_z3(), other.as_z3()), width)

    def byte(self, index: int) -> "Word":
        """The index-th byte counting from the most significant one, as an 8-bit word."""
        nbytes = self.width // 8
        if not 0 <= index < nbytes:
            raise ValueError(f"byte index {index} out of range for {self.width}-bit word")
        lo = (nbytes - 1 - index) * 8
        return self.extract(lo + 7, lo)

    def evm_byte(self, index: "Word") -> "Word":
        """BYTE opcode: byte ``index`` of self, zero-extended; 0 when index >= 32."""
        nbytes = self.width // 8
        if index.is_concrete:
            if index.value >= nbytes:
                return Word(0, self.width)
            return self.byte(index.value).zero_extend(self.width)
        shift = (nbytes - 1 - index.as_z3()) * 8
        picked = z3.LShR(self.as_z3(), shift) & 0xFF
        return Word(z3.If(z3.UGE(index.as_z3(), nbytes), z3.BitVecVal(0, self.width), picked), self.width)

    def signextend(self, size_minus_one: "Word") -> "Word":
        """SIGNEXTEND opcode: extend from byte ``size_minus_one`` (0 = lowest byte)."""
        nbytes = self.width // 8
        if size_minus_one.is_symbolic:
            b = size_minus_one.as_z3()
            result = self.as_z3()
            for k in range(nbytes - 1):
                extended = self.truncate(8 * (k + 1)).sign_extend(self.width)
                result = z3.If(b == k, extended.as_z3(), result)
            return Word(result, self.width)
        b = size_minus_one.concrete_value()
        if b >= nbytes - 1:
            return self
        bits = 8 * (b + 1)
        return self.truncate(bits).sign_extend(self.width)

    # --- Python protocol ---

    __add__ = add
    __sub__ = sub
    __mul__ = mul
    __and__ = and_
    __or__ = or_
    __xor__ = xor
    __invert__ = not_

    def __eq__(self, other) -> bool:
        if not isinstance(other, Word):
            return NotImplemented
        if self.width != other.width:
            return False
        if self.is_concrete or other.is_concrete:
            return self.value == other.value if self._both_concrete(other) else False
        return self.value.eq(other.value)

    def __hash__(self) -> int:
        if self.is_concrete:
            return hash((self.width, self.value))
        return hash((self.width, self.value.hash()))

    def __repr__(self) -> str:
        if self.is_concrete:
            return f"Word(0x{self.value:x}, {self.width})"
        return f"Word({self.value}, {self.width})"


def con(value: int, width: int = WORD_BITS) -> Word:
    return Word(value, width)


ZERO = Word(0)
ONE = Word(1)
