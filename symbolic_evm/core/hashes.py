# core/hashes.py
"""
Keccak-256 over concrete and symbolic data.

Concrete inputs are hashed with eth_utils and remembered together with their
preimage, so that a concrete storage location can later be traced back to the
mapping key and slot it was derived from. Symbolic inputs become applications
of an uninterpreted ``f_sha3_<bits>`` function; each hash comes with
injectivity axioms against every other hash of the same input width.
"""

from typing import Dict, List, Optional, Tuple, Union

import structlog
import z3
from eth_utils import keccak

from .word import Predicate, Word

logger = structlog.get_logger()

SHA3_PREFIX = "f_sha3_"


def keccak256(data: bytes) -> int:
    return int.from_bytes(keccak(data), "big")


class KeccakRegistry:
    # largest offset added to a hash that is still traced back (array index, struct field)
    MAX_DELTA = 1 << 16

    def __init__(self):
        self._preimages: Dict[int, bytes] = {}
        self._functions: Dict[int, z3.FuncDeclRef] = {}
        # output term id -> (input, output), for symbolic applications
        self._applications: Dict[int, Tuple[Word, Word]] = {}

    def function(self, bits: int) -> z3.FuncDeclRef:
        if bits not in self._functions:
            self._functions[bits] = z3.Function(
                f"{SHA3_PREFIX}{bits}", z3.BitVecSort(bits), z3.BitVecSort(256)
            )
        return self._functions[bits]

    def hash(self, data: Union[bytes, Word]) -> Tuple[Word, List[Predicate]]:
        """
        Return keccak256(data) and the axioms the caller must add to its path.

        The registry is shared by every path of a run, so the axioms are
        rebuilt on each call: a path that repeats a hash another path computed
        first still needs them.
        """
        if isinstance(data, Word) and data.is_concrete:
            data = data.to_bytes()
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data)
            value = keccak256(data)
            self._preimages.setdefault(value, data)
            axioms = [
                self._preimage_axiom(app_input, app_output, value, data)
                for app_input, app_output in self._applications.values()
                if app_input.width == len(data) * 8
            ]
            return Word(value), axioms

        output = Word(self.function(data.width)(data.as_z3()))
        key = output.value.get_id()
        if key not in self._applications:
            self._applications[key] = (data, output)
            logger.debug("Symbolic keccak", bits=data.width, applications=len(self._applications))

        axioms = []
        for other, (prev_input, prev_output) in self._applications.items():
            if other == key or prev_input.width != data.width:
                continue
            axioms.append(
                Predicate(z3.Implies(output.as_z3() == prev_output.as_z3(), data.as_z3() == prev_input.as_z3()))
            )
        for value, preimage in self._preimages.items():
            if len(preimage) * 8 == data.width:
                axioms.append(self._preimage_axiom(data, output, value, preimage))
        return output, axioms

    @staticmethod
    def _preimage_axiom(data: Word, output: Word, value: int, preimage: bytes) -> Predicate:
        return Predicate(z3.Implies(output.as_z3() == value, data.as_z3() == Word.from_bytes(preimage).as_z3()))

    def preimage(self, value: int) -> Optional[bytes]:
        return self._preimages.get(value)

    def find(self, value: int) -> Optional[Tuple[bytes, int]]:
        """Find (preimage, delta) with value == keccak(preimage) + delta."""
        exact = self._preimages.get(value)
        if exact is not None:
            return exact, 0
        best = None
        for base, preimage in self._preimages.items():
            delta = value - base
            if 0 < delta < self.MAX_DELTA and (best is None or delta < best[1]):
                best = (preimage, delta)
        return best

    def __len__(self) -> int:
        return len(self._preimages) + len(self._applications)


def is_sha3_application(expr: z3.ExprRef) -> bool:
    return z3.is_app(expr) and expr.decl().name().startswith(SHA3_PREFIX)
