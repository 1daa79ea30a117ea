import json
import stat

import pytest

from symbolic_evm.analysis.verifier import ERROR, FAILED, PASSED, TIMEOUT, Verifier, symbolic_calldata
from symbolic_evm.cli import main
from symbolic_evm.config import EngineConfig
from symbolic_evm.core.bytevec import ByteSequence
from symbolic_evm.core.word import Word

# if (calldataload(0) == 42) revert(Panic(code)) else stop
PANIC_ON_42 = (
    "600035602a14600a5700"  # CALLDATALOAD(0) == 42 ? jump 10 : STOP
    "5b634e487b7160e01b600052"  # JUMPDEST; MSTORE(0, selector << 224)
    "60{code}600452"  # MSTORE(4, code)
    "60246000fd"  # REVERT(0, 36)
)

SAT_MODEL = """sat
(
  (define-fun p_arg0_uint256 () (_ BitVec 256)
    #x000000000000000000000000000000000000000000000000000000000000002a)
)
"""


def panic_on_42(code=0x01):
    return PANIC_ON_42.format(code=f"{code:02x}")


def fake_solver(tmp_path, output):
    out = tmp_path / "solver.out"
    out.write_text(output)
    script = tmp_path / "solver.sh"
    script.write_text(f"#!/bin/sh\ncat {out}\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def make_verifier(tmp_path, solver_output=None, **overrides):
    command = fake_solver(tmp_path, solver_output) if solver_output is not None else str(tmp_path / "missing")
    overrides.setdefault("solver_timeout_branching", 0)
    overrides.setdefault("solver_threads", 1)
    config = EngineConfig(solver_command=[command], dump_directory=str(tmp_path / "queries"), **overrides)
    return Verifier(config)


def test_symbolic_calldata_layout():
    data = symbolic_calldata(selector=0xA9059CBB, num_args=2)
    assert len(data) == 68
    assert data.slice(0, 4).unwrap() == bytes.fromhex("a9059cbb")
    assert data.get_word(4) == Word.symbol("p_arg0_uint256")
    assert data.get_word(36) == Word.symbol("p_arg1_uint256")


def test_assertion_failure_reports_counterexample(tmp_path):
    verifier = make_verifier(tmp_path, SAT_MODEL)
    result = verifier.run_test(panic_on_42(), symbolic_calldata(num_args=1))
    assert result.status == FAILED
    assert result.counterexamples == [{"p_arg0_uint256": "0x2a"}]
    assert result.paths == 2
    assert result.success


def test_unsat_query_passes(tmp_path):
    result = make_verifier(tmp_path, "unsat\n").run_test(panic_on_42(), symbolic_calldata(num_args=1))
    assert result.status == PASSED
    assert result.counterexamples == []


def test_unknown_is_a_timeout(tmp_path):
    result = make_verifier(tmp_path, "unknown\n").run_test(panic_on_42(), symbolic_calldata(num_args=1))
    assert result.status == TIMEOUT


def test_uncounted_panic_never_reaches_the_solver(tmp_path):
    # the solver binary does not exist, so any query would raise
    result = make_verifier(tmp_path).run_test(panic_on_42(0x11), symbolic_calldata(num_args=1))
    assert result.status == PASSED


def test_wildcard_counts_every_panic(tmp_path):
    verifier = make_verifier(tmp_path, SAT_MODEL, panic_error_codes=["*"])
    result = verifier.run_test(panic_on_42(0x11), symbolic_calldata(num_args=1))
    assert result.status == FAILED


def test_engine_errors_are_reported(tmp_path):
    result = make_verifier(tmp_path).run_test("6000" * 7 + "f2")  # CALLCODE
    assert result.status == ERROR
    assert result.errors[0].startswith("UnimplementedOpcode")


def test_evm_exceptions_are_ordinary_failures(tmp_path):
    result = make_verifier(tmp_path).run_test("01")  # ADD on an empty stack
    assert result.status == PASSED
    assert not result.success


# unconditional revert with Panic(0x01)
PANIC_REVERT = "634e487b7160e01b600052600160045260246000fd"


def test_missing_solver_is_an_error_outcome(tmp_path):
    result = make_verifier(tmp_path).run_test(PANIC_REVERT)
    assert result.status == ERROR
    assert result.errors[0].startswith("solver error: failed to start solver")


def test_missing_solver_in_worker_pool_is_an_error_outcome(tmp_path):
    # both sides of the branch revert with a panic, so two queries go to the pool
    code = "600035601b57" + PANIC_REVERT + "5b" + PANIC_REVERT
    result = make_verifier(tmp_path, solver_threads=2).run_test(code, symbolic_calldata(num_args=1))
    assert result.status == ERROR
    assert len(result.errors) == 2


def test_step_budget_is_a_timeout(tmp_path):
    result = make_verifier(tmp_path, step_budget=50).run_test("5b600056")
    assert result.status == TIMEOUT
    assert result.errors


def test_concrete_return_data(tmp_path):
    result = make_verifier(tmp_path).run_test(bytes.fromhex("602a60005260206000f3"))
    assert result.status == PASSED
    assert result.returndata == (42).to_bytes(32, "big")
    assert result.to_dict()["returndata"] == "0x" + (42).to_bytes(32, "big").hex()


def test_cli_prints_json(tmp_path, capsys, monkeypatch):
    solver = fake_solver(tmp_path, SAT_MODEL)
    monkeypatch.setenv("SYMEVM_SOLVER_COMMAND", solver)
    monkeypatch.setenv("SYMEVM_SOLVER_THREADS", "1")
    monkeypatch.setenv("SYMEVM_SOLVER_TIMEOUT_BRANCHING", "0")
    monkeypatch.setenv("SYMEVM_DUMP_DIRECTORY", str(tmp_path / "queries"))
    code = main(["--bytecode", "0x" + panic_on_42(), "--symbolic-args", "1"])
    assert code == 1
    report = json.loads(capsys.readouterr().out)
    assert report["status"] == FAILED
    assert report["counterexamples"] == [{"p_arg0_uint256": "0x2a"}]


def test_cli_rejects_bad_hex(capsys):
    assert main(["--bytecode", "zz"]) == 2
    assert "error" in capsys.readouterr().err


@pytest.mark.parametrize("bytecode", ["00", "602a60005260206000f3"])
def test_cli_passing_exit_code(bytecode, monkeypatch, capsys):
    monkeypatch.setenv("SYMEVM_SOLVER_TIMEOUT_BRANCHING", "0")
    assert main(["--bytecode", bytecode]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == PASSED
