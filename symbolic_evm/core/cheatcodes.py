# core/cheatcodes.py
"""
Calls addressed to the test-framework cheatcode contract (HEVM) and to the
console logger. Only ``vm.assume`` influences exploration; console calls are
accepted and ignored.
"""

import structlog

from ..exceptions import PathInfeasible, UnimplementedOpcode
from .bytevec import ByteSequence
from .opcodes import Opcode
from .word import Predicate, Word

logger = structlog.get_logger()

HEVM_ADDRESS = 0x7109709ECFA91A80626FF3989D68F67F5B1DD12D
CONSOLE_ADDRESS = 0x000000000000000000636F6E736F6C652E6C6F67

# assume(bool)
ASSUME_SELECTOR = 0x4C63E562


class Cheatcodes:
    def handles(self, address: int) -> bool:
        return address in (HEVM_ADDRESS, CONSOLE_ADDRESS)

    def dispatch(self, state, address: int, calldata: ByteSequence) -> ByteSequence:
        if address == CONSOLE_ADDRESS:
            return ByteSequence()

        selector = calldata.slice(0, 4).unwrap() if len(calldata) >= 4 else b""
        if not isinstance(selector, bytes) or len(selector) != 4:
            raise UnimplementedOpcode(Opcode.CALL, "cheatcode call without a concrete selector")
        selector = int.from_bytes(selector, "big")

        if selector == ASSUME_SELECTOR:
            self.assume(state, calldata.get_word(4))
            return ByteSequence()

        raise UnimplementedOpcode(Opcode.CALL, f"unsupported cheatcode selector 0x{selector:08x}")

    @staticmethod
    def assume(state, cond: Word) -> None:
        pred = Predicate.from_word(cond)
        if pred.is_false():
            raise PathInfeasible("vm.assume on a condition that is always false")
        if pred.is_true():
            return
        logger.debug("vm.assume", cond=str(pred.value))
        state.path.append(pred)
        state.path.needs_check = True
