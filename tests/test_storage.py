import z3

from symbolic_evm.core.hashes import KeccakRegistry, keccak256
from symbolic_evm.core.storage import StorageData, StorageModel
from symbolic_evm.core.word import Word

ADDRESS = 0x1234


def prove(claim):
    solver = z3.Solver()
    solver.add(z3.Not(claim))
    return solver.check() == z3.unsat


def make_model(symbolic=True):
    hashes = KeccakRegistry()
    return hashes, StorageModel(hashes, symbolic_default=symbolic), StorageData(ADDRESS)


def mapping_location(hashes, key: Word, slot: int) -> Word:
    data = key.concat(Word(slot))
    location, _ = hashes.hash(data if data.is_symbolic else data.to_bytes())
    return location


def test_scalar_store_then_load():
    _, model, data = make_model()
    model.sstore(data, Word(3), Word(42))
    assert model.sload(data, Word(3)) == Word(42)


def test_untouched_scalar_is_symbolic():
    _, model, data = make_model()
    value = model.sload(data, Word(7))
    assert value.is_symbolic
    assert "storage_" in str(value.as_z3())
    assert model.sload(data, Word(7)) == value


def test_untouched_slot_is_zero_without_symbolic_storage():
    _, model, data = make_model(symbolic=False)
    assert model.sload(data, Word(7)) == Word(0)


def test_transient_storage_starts_at_zero():
    _, model, _ = make_model()
    transient = StorageData(ADDRESS, transient=True)
    assert model.sload(transient, Word(1)) == Word(0)


def test_mapping_with_symbolic_key():
    hashes, model, data = make_model()
    key = Word.symbol("p_key_uint256")
    loc = mapping_location(hashes, key, 1)

    assert model.decode(loc)[0] == 1
    model.sstore(data, loc, Word(99))
    loaded = model.sload(data, mapping_location(hashes, key, 1))
    assert prove(loaded.as_z3() == 99)


def test_mapping_with_concrete_key_decodes_through_preimage():
    hashes, model, data = make_model()
    loc = mapping_location(hashes, Word(5), 2)
    assert loc.is_concrete
    slot, keys = model.decode(loc)
    assert slot == 2
    assert keys[0] == Word(5)

    model.sstore(data, loc, Word(7))
    loaded = model.sload(data, loc)
    assert prove(loaded.as_z3() == 7)


def test_distinct_mapping_keys_do_not_alias():
    hashes, model, data = make_model(symbolic=False)
    model.sstore(data, mapping_location(hashes, Word(1), 0), Word(10))
    other = model.sload(data, mapping_location(hashes, Word(2), 0))
    assert prove(other.as_z3() == 0)


def test_dynamic_array_element():
    hashes, model, data = make_model()
    base, _ = hashes.hash(Word(4).to_bytes())
    assert base.value == keccak256(Word(4).to_bytes())
    index = Word.symbol("p_i_uint256")
    loc = base.add(index)
    slot, keys = model.decode(loc)
    assert slot == 4
    model.sstore(data, loc, Word(1))
    assert prove(model.sload(data, base.add(index)).as_z3() == 1)


def test_undecodable_location_uses_opaque_key_at_slot_zero():
    _, model, _ = make_model()
    loc = Word.symbol("x").mul(Word.symbol("y"))
    slot, keys = model.decode(loc)
    assert slot == 0
    assert keys == (loc,)


def test_copy_isolates_writes():
    _, model, data = make_model()
    model.sstore(data, Word(1), Word(1))
    clone = data.copy()
    model.sstore(clone, Word(1), Word(2))
    assert model.sload(data, Word(1)) == Word(1)
    assert model.sload(clone, Word(1)) == Word(2)


def test_symbolic_hash_injectivity_axioms():
    hashes = KeccakRegistry()
    a, b = Word.symbol("a"), Word.symbol("b")
    ha, axioms_a = hashes.hash(a)
    hb, axioms_b = hashes.hash(b)
    assert axioms_a == []
    assert len(axioms_b) == 1
    solver = z3.Solver()
    solver.add(*[p.as_z3() for p in axioms_b])
    solver.add(ha.as_z3() == hb.as_z3(), a.as_z3() != b.as_z3())
    assert solver.check() == z3.unsat
    assert hashes.find(keccak256(b"\x01") + 3) is None
    hashes.hash(b"\x01")
    assert hashes.find(keccak256(b"\x01") + 3) == (b"\x01", 3)
