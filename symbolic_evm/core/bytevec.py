# core/bytevec.py
"""
Sparse byte sequences used for calldata, memory, code and return data.

A ByteSequence is an ordered map of start offset -> Chunk covering
[0, len) without gaps. Chunks are immutable views, so copying a sequence or
slicing whole chunks out of it never copies the underlying buffers; only the
chunks that straddle a write boundary get split into two new views.
"""

from bisect import bisect_left, bisect_right
from typing import Dict, Iterator, List, Tuple, Union

import z3

from ..exceptions import NotConcrete
from .word import Word

ByteLike = Union[bytes, bytearray, Word, "Chunk", "ByteSequence"]


class Chunk:
    """Immutable view [start, start+length) over some underlying data."""

    __slots__ = ("data", "start", "length")

    def __init__(self, data, start: int, length: int):
        if start < 0 or length < 0 or start + length > self._underlying_length(data):
            raise ValueError(
                f"invalid view [{start}, {start + length}) over {self._underlying_length(data)} bytes"
            )
        self.data = data
        self.start = start
        self.length = length

    @staticmethod
    def wrap(data: Union[bytes, bytearray, Word]) -> "Chunk":
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data)
            return ConcreteChunk(data, 0, len(data))
        if isinstance(data, Word):
            if data.width % 8:
                raise ValueError(f"cannot wrap a {data.width}-bit word as bytes")
            if data.is_concrete:
                raw = data.to_bytes()
                return ConcreteChunk(raw, 0, len(raw))
            return SymbolicChunk(data, 0, data.width // 8)
        raise TypeError(f"cannot wrap {type(data)} as a chunk")

    @staticmethod
    def _underlying_length(data) -> int:
        raise NotImplementedError

    @property
    def is_concrete(self) -> bool:
        raise NotImplementedError

    def __len__(self) -> int:
        return self.length

    def slice(self, start: int, stop: int) -> "Chunk":
        """Sub-view relative to this chunk; shares the underlying data."""
        if not 0 <= start <= stop <= self.length:
            raise ValueError(f"invalid slice [{start}, {stop}) of a {self.length}-byte chunk")
        if start == 0 and stop == self.length:
            return self
        return type(self)(self.data, self.start + start, stop - start)

    def get_byte(self, offset: int) -> Union[int, Word]:
        raise NotImplementedError

    def unwrap(self) -> Union[bytes, Word]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.data!r}, start={self.start}, length={self.length})"


class ConcreteChunk(Chunk):
    __slots__ = ()

    @staticmethod
    def _underlying_length(data) -> int:
        return len(data)

    @property
    def is_concrete(self) -> bool:
        return True

    def get_byte(self, offset: int) -> int:
        return self.data[self.start + offset]

    def unwrap(self) -> bytes:
        if self.start == 0 and self.length == len(self.data):
            return self.data
        return self.data[self.start : self.start + self.length]


class SymbolicChunk(Chunk):
    __slots__ = ()

    @staticmethod
    def _underlying_length(data) -> int:
        return data.width // 8

    @property
    def is_concrete(self) -> bool:
        return False

    def get_byte(self, offset: int) -> Word:
        return self.data.byte(self.start + offset)

    def unwrap(self) -> Word:
        total = self.data.width // 8
        if self.start == 0 and self.length == total:
            return self.data
        hi = (total - self.start) * 8 - 1
        lo = (total - self.start - self.length) * 8
        return self.data.extract(hi, lo)


class ByteSequence:
    def __init__(self, data: Union[ByteLike, None] = None):
        self._starts: List[int] = []
        self._chunks: Dict[int, Chunk] = {}
        self._length = 0
        if data is not None:
            self.append(data)

    def __len__(self) -> int:
        return self._length

    def copy(self) -> "ByteSequence":
        clone = ByteSequence()
        clone._starts = list(self._starts)
        clone._chunks = dict(self._chunks)
        clone._length = self._length
        return clone

    def chunks(self) -> Iterator[Tuple[int, Chunk]]:
        for start in self._starts:
            yield start, self._chunks[start]

    @staticmethod
    def _as_chunks(data: ByteLike) -> List[Chunk]:
        if isinstance(data, ByteSequence):
            return [chunk for _, chunk in data.chunks()]
        if isinstance(data, Chunk):
            return [data]
        return [Chunk.wrap(data)]

    def _locate(self, offset: int) -> int:
        """Index into _starts of the chunk holding offset (offset < len)."""
        return bisect_right(self._starts, offset) - 1

    def is_concrete(self) -> bool:
        return all(chunk.is_concrete for chunk in self._chunks.values())

    # --- Reads ---

    def get_byte(self, offset: int) -> Union[int, Word]:
        if offset < 0:
            raise ValueError(f"negative offset {offset}")
        if offset >= self._length:
            return 0
        start = self._starts[self._locate(offset)]
        return self._chunks[start].get_byte(offset - start)

    def slice(self, start: int, stop: int) -> "ByteSequence":
        """Bytes [start, stop); anything past the end reads as zero."""
        if start < 0:
            raise ValueError(f"negative offset {start}")
        result = ByteSequence()
        if stop <= start:
            return result
        end = min(stop, self._length)
        if start < end:
            i = self._locate(start)
            while i < len(self._starts) and self._starts[i] < end:
                chunk_start = self._starts[i]
                chunk = self._chunks[chunk_start]
                lo = max(start, chunk_start) - chunk_start
                hi = min(end, chunk_start + len(chunk)) - chunk_start
                result.append(chunk.slice(lo, hi))
                i += 1
        padding = (stop - start) - max(0, end - start)
        if padding:
            result.append(bytes(padding))
        return result

    def get_word(self, offset: int) -> Word:
        data = self.slice(offset, offset + 32).unwrap()
        if isinstance(data, bytes):
            return Word.from_bytes(data)
        return data

    def unwrap(self) -> Union[bytes, Word]:
        """Everything as one value: bytes when fully concrete, else a Word."""
        if not self._length:
            return b""
        self._defrag()
        parts = [chunk.unwrap() for _, chunk in self.chunks()]
        if len(parts) == 1:
            return parts[0]
        if all(isinstance(part, bytes) for part in parts):
            return b"".join(parts)
        exprs = [Word.from_bytes(p).as_z3() if isinstance(p, bytes) else p.as_z3() for p in parts]
        return Word(z3.Concat(*exprs), self._length * 8)

    def concrete_bytes(self) -> bytes:
        data = self.unwrap()
        if not isinstance(data, bytes):
            raise NotConcrete("byte sequence has symbolic content")
        return data

    def _defrag(self) -> None:
        """Merge runs of adjacent concrete chunks into single buffers."""
        if len(self._starts) < 2:
            return
        starts: List[int] = []
        chunks: Dict[int, Chunk] = {}
        run: List[Tuple[int, Chunk]] = []

        def flush():
            if not run:
                return
            first = run[0][0]
            if len(run) == 1:
                merged = run[0][1]
            else:
                merged = Chunk.wrap(b"".join(chunk.unwrap() for _, chunk in run))
            starts.append(first)
            chunks[first] = merged
            run.clear()

        for start, chunk in self.chunks():
            if chunk.is_concrete:
                run.append((start, chunk))
                continue
            flush()
            starts.append(start)
            chunks[start] = chunk
        flush()
        self._starts = starts
        self._chunks = chunks

    # --- Writes ---

    def append(self, data: ByteLike) -> None:
        for chunk in self._as_chunks(data):
            if not len(chunk):
                continue
            self._starts.append(self._length)
            self._chunks[self._length] = chunk
            self._length += len(chunk)

    def _split_at(self, pos: int) -> None:
        if pos <= 0 or pos >= self._length:
            return
        i = self._locate(pos)
        chunk_start = self._starts[i]
        if chunk_start == pos:
            return
        chunk = self._chunks[chunk_start]
        cut = pos - chunk_start
        self._chunks[chunk_start] = chunk.slice(0, cut)
        self._chunks[pos] = chunk.slice(cut, len(chunk))
        self._starts.insert(i + 1, pos)

    def set_slice(self, offset: int, data: ByteLike) -> None:
        """Overwrite [offset, offset+len(data)), zero-filling any gap past the end."""
        if offset < 0:
            raise ValueError(f"negative offset {offset}")
        pieces = [chunk for chunk in self._as_chunks(data) if len(chunk)]
        size = sum(len(chunk) for chunk in pieces)
        if not size:
            return
        if offset > self._length:
            self.append(bytes(offset - self._length))
        end = offset + size
        self._split_at(offset)
        self._split_at(end)

        lo = bisect_left(self._starts, offset)
        hi = bisect_left(self._starts, end)
        for start in self._starts[lo:hi]:
            del self._chunks[start]
        new_starts = []
        pos = offset
        for chunk in pieces:
            self._chunks[pos] = chunk
            new_starts.append(pos)
            pos += len(chunk)
        self._starts[lo:hi] = new_starts
        self._length = max(self._length, end)

    def set_byte(self, offset: int, value: Union[int, Word]) -> None:
        if isinstance(value, int):
            self.set_slice(offset, bytes([value & 0xFF]))
            return
        self.set_slice(offset, value.truncate(8) if value.width > 8 else value)

    def set_word(self, offset: int, value: Union[int, Word]) -> None:
        if isinstance(value, int):
            value = Word(value)
        if value.width != 256:
            value = value.zero_extend(256)
        self.set_slice(offset, value)

    def extend_to(self, size: int) -> None:
        if size > self._length:
            self.append(bytes(size - self._length))

    # --- Introspection ---

    def _num_chunks(self) -> int:
        return len(self._starts)

    def _well_formed(self) -> bool:
        expected = 0
        for start in self._starts:
            chunk = self._chunks.get(start)
            if chunk is None or start != expected or not len(chunk):
                return False
            expected += len(chunk)
        return expected == self._length and len(self._chunks) == len(self._starts)

    def __repr__(self) -> str:
        return f"ByteSequence(length={self._length}, chunks={self._num_chunks()})"
