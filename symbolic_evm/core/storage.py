# core/storage.py
"""
Solidity storage layout over SMT arrays.

A storage location is decoded into a base slot plus a tuple of keys:

    x            -> (x, ())                  scalar
    m[k]         -> keccak(k . m)            -> (m, (k, 0))
    a[i]         -> keccak(a) + i            -> (a, (i,))
    m[k1][k2]    -> keccak(k2 . keccak(k1 . m)) -> (m, (k1, 0, k2, 0))

Each (slot, number of keys, total key width) gets its own value: a Word for
scalars, a z3 array indexed by the concatenated keys otherwise. Stores are
functional (z3.Store), so a state that was forked earlier keeps seeing its own
array value.
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union

import structlog
import z3

from .hashes import KeccakRegistry, is_sha3_application
from .word import Word

logger = structlog.get_logger()

StorageKey = Tuple[int, int, int]
StorageValue = Union[Word, z3.ArrayRef]


class _Undecodable(Exception):
    pass


class StorageData:
    def __init__(self, address: int, transient: bool = False):
        self.address = address
        self.transient = transient
        self.entries: Dict[StorageKey, StorageValue] = {}

    def copy(self) -> "StorageData":
        clone = StorageData(self.address, self.transient)
        clone.entries = dict(self.entries)
        return clone

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        kind = "transient" if self.transient else "storage"
        return f"StorageData({kind}, 0x{self.address:040x}, entries={len(self.entries)})"


class StorageModel:
    def __init__(self, hashes: KeccakRegistry, symbolic_default: bool = True):
        self.hashes = hashes
        self.symbolic_default = symbolic_default

    # --- Keyed access ---

    @staticmethod
    def storage_key(slot: int, keys: Sequence[Word]) -> StorageKey:
        return (slot, len(keys), sum(key.width for key in keys))

    @staticmethod
    def _index(keys: Sequence[Word]) -> z3.BitVecRef:
        if len(keys) == 1:
            return keys[0].as_z3()
        return z3.Concat(*[key.as_z3() for key in keys])

    def _initial(self, data: StorageData, key: StorageKey) -> StorageValue:
        slot, arity, width = key
        symbolic = self.symbolic_default and not data.transient
        if arity == 0:
            if not symbolic:
                return Word(0)
            return Word.symbol(f"storage_{data.address:040x}_{slot}_00")
        if not symbolic:
            return z3.K(z3.BitVecSort(width), z3.BitVecVal(0, 256))
        return z3.Array(
            f"storage_{data.address:040x}_{slot}_{arity}_{width}",
            z3.BitVecSort(width),
            z3.BitVecSort(256),
        )

    def _current(self, data: StorageData, key: StorageKey) -> StorageValue:
        value = data.entries.get(key)
        if value is None:
            value = self._initial(data, key)
            data.entries[key] = value
        return value

    def load(self, data: StorageData, slot: int, keys: Sequence[Word] = ()) -> Word:
        key = self.storage_key(slot, keys)
        value = self._current(data, key)
        if not keys:
            return value
        return Word(z3.Select(value, self._index(keys)), 256)

    def store(self, data: StorageData, slot: int, keys: Sequence[Word], value: Word) -> StorageValue:
        """Write value and return the new scalar or array value for that slot."""
        key = self.storage_key(slot, keys)
        if not keys:
            data.entries[key] = value
            return value
        updated = z3.Store(self._current(data, key), self._index(keys), value.as_z3())
        data.entries[key] = updated
        return updated

    # --- Location decoding ---

    def decode(self, loc: Word) -> Tuple[int, Tuple[Word, ...]]:
        """
        Split a storage location into (slot, keys). Unrecognized shapes fall
        back to slot 0 with the whole location as a single opaque key.
        """
        try:
            parts = self._decode(loc.as_z3())
            if not z3.is_bv_value(parts[0]):
                raise _Undecodable()
        except _Undecodable:
            logger.debug("Storage location not decoded, using opaque key", loc=str(loc))
            return 0, (loc,)
        slot = parts[0].as_long()
        keys = tuple(Word(z3.simplify(part)) for part in parts[1:])
        return slot, keys

    def _decode(self, expr: z3.BitVecRef) -> List[z3.BitVecRef]:
        if z3.is_bv_value(expr):
            found = self.hashes.find(expr.as_long())
            if found is None:
                return [expr]
            preimage, delta = found
            base = self._decode_preimage(preimage)
            if base is None:
                return [expr]
            return self._add_offset(base, z3.BitVecVal(delta, 256))

        if is_sha3_application(expr):
            return self._decode_hash_input(z3.simplify(expr.arg(0)))

        if z3.is_app_of(expr, z3.Z3_OP_BADD):
            base = None
            offsets = []
            for child in expr.children():
                if base is None:
                    candidate = self._decode_hash_derived(child)
                    if candidate is not None:
                        base = candidate
                        continue
                offsets.append(child)
            if base is None or not offsets:
                raise _Undecodable()
            offset = offsets[0]
            for extra in offsets[1:]:
                offset = offset + extra
            return self._add_offset(base, offset)

        raise _Undecodable()

    def _decode_hash_derived(self, expr: z3.BitVecRef) -> Optional[List[z3.BitVecRef]]:
        """Decode expr only if it is a keccak output (symbolic or known concrete)."""
        if is_sha3_application(expr):
            return self._decode_hash_input(z3.simplify(expr.arg(0)))
        if z3.is_bv_value(expr):
            decoded = self._decode(expr)
            return decoded if len(decoded) > 1 else None
        return None

    def _decode_hash_input(self, data: z3.BitVecRef) -> List[z3.BitVecRef]:
        bits = data.size()
        if bits == 256:
            # dynamic array: keccak(slot) + index
            return self._decode(data) + [z3.BitVecVal(0, 256)]
        if bits > 256:
            # mapping: keccak(key . slot)
            key = z3.simplify(z3.Extract(bits - 1, 256, data))
            base = z3.simplify(z3.Extract(255, 0, data))
            return self._decode(base) + [key, z3.BitVecVal(0, 256)]
        raise _Undecodable()

    def _decode_preimage(self, preimage: bytes) -> Optional[List[z3.BitVecRef]]:
        if len(preimage) < 32:
            return None
        try:
            return self._decode_hash_input(z3.BitVecVal(int.from_bytes(preimage, "big"), len(preimage) * 8))
        except _Undecodable:
            return None

    @staticmethod
    def _add_offset(parts: List[z3.BitVecRef], offset: z3.BitVecRef) -> List[z3.BitVecRef]:
        return parts[:-1] + [z3.simplify(parts[-1] + offset)]

    # --- Location-based access ---

    def sload(self, data: StorageData, loc: Word) -> Word:
        slot, keys = self.decode(loc)
        return self.load(data, slot, keys)

    def sstore(self, data: StorageData, loc: Word, value: Word) -> StorageValue:
        slot, keys = self.decode(loc)
        return self.store(data, slot, keys, value)
