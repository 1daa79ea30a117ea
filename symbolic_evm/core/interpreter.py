# core/interpreter.py
"""
Opcode interpreter.

``Interpreter.step`` applies the instruction at ``state.pc`` and returns the
successor states: usually the same state advanced by one instruction, two
forks for a JUMPI on a satisfiable symbolic condition, none when every side
of a branch is pruned, or one continuation per terminal state of a nested
call frame.
"""

from typing import Callable, Dict, List, Optional, Tuple

import structlog
import z3
from eth_utils import keccak

from ..exceptions import (
    EngineError,
    InvalidJump,
    InvalidOpcode,
    NotConcrete,
    OutOfBoundsRead,
    StackUnderflow,
    StaticCallViolation,
    UnimplementedOpcode,
)
from .bytevec import ByteSequence
from .contract import Contract, Instruction
from .opcodes import OPCODE_NAMES, STACK_EFFECTS, STATE_MUTATING, Opcode
from .path import PathState
from .state import EventLog, ExecutionState, Message, StorageRead, StorageWrite
from .word import Predicate, Word
from .worklist import RunContext, Worklist

logger = structlog.get_logger()

ADDRESS_MASK = (1 << 160) - 1

Handler = Callable[[ExecutionState, Instruction], Optional[List[ExecutionState]]]


def as_predicate(word: Word) -> Predicate:
    """Non-zero test, unwrapping the If(c, 1, 0) shape comparisons produce."""
    if word.is_symbolic and z3.is_app_of(word.value, z3.Z3_OP_ITE):
        cond, then_, else_ = word.value.children()
        if z3.is_bv_value(then_) and z3.is_bv_value(else_):
            if then_.as_long() == 1 and else_.as_long() == 0:
                return Predicate(cond)
            if then_.as_long() == 0 and else_.as_long() == 1:
                return Predicate(z3.Not(cond))
    return word.ne(0)


class Interpreter:
    def __init__(self, context: Optional[RunContext] = None):
        self.context = context if context is not None else RunContext()
        self.config = self.context.config
        self._handlers: Dict[int, Handler] = {}
        self._register_handlers()

    # --- Entry points ---

    def run(self, state: ExecutionState) -> List[ExecutionState]:
        """Run one call frame to completion on a fresh worklist."""
        return Worklist(self, self.context).run(state)

    def new_state(
        self,
        contract: Contract,
        calldata: ByteSequence,
        target: int,
        caller: int,
        origin: Optional[int] = None,
        value: Optional[Word] = None,
        gas: Optional[int] = None,
        path: Optional[PathState] = None,
    ) -> ExecutionState:
        message = Message(
            target=target,
            caller=caller,
            origin=caller if origin is None else origin,
            value=value if value is not None else Word(0),
            data=calldata,
            gas=self.config.gas_limit if gas is None else gas,
        )
        state = ExecutionState(contract, message, path if path is not None else PathState(self.context.new_solver()))
        state.code[target] = contract
        return state

    def step(self, state: ExecutionState) -> List[ExecutionState]:
        instruction = state.contract.decode_instruction(state.pc)
        op = instruction.opcode
        handler = self._handlers.get(op)
        if handler is None:
            if op in OPCODE_NAMES:
                raise UnimplementedOpcode(op)
            raise InvalidOpcode(f"undefined opcode 0x{op:02x} at pc {state.pc}")

        needed = STACK_EFFECTS.get(op, (0, 0))[0]
        if len(state.stack) < needed:
            raise StackUnderflow(f"{instruction.name} needs {needed} stack items at pc {state.pc}")
        if state.message.is_static and op in STATE_MUTATING:
            raise StaticCallViolation(f"{instruction.name} inside a static call at pc {state.pc}")

        logger.debug("step", pc=state.pc, opcode=instruction.name, depth=state.depth)
        successors = handler(state, instruction)
        if successors is None:
            if not state.halted:
                state.pc = instruction.next_pc
            return [state]
        return successors

    # --- Handler table ---

    def _register_handlers(self) -> None:
        abstractions = self.context.abstractions
        h = self._handlers

        h[Opcode.STOP] = self._handle_stop
        h[Opcode.ADD] = self._binary(lambda a, b: a.add(b))
        h[Opcode.MUL] = self._binary(lambda a, b: a.mul(b, abstractions))
        h[Opcode.SUB] = self._binary(lambda a, b: a.sub(b))
        h[Opcode.DIV] = self._binary(lambda a, b: a.udiv(b, abstractions))
        h[Opcode.SDIV] = self._binary(lambda a, b: a.sdiv(b, abstractions))
        h[Opcode.MOD] = self._binary(lambda a, b: self._zero_on_zero_divisor(a.urem(b, abstractions), b))
        h[Opcode.SMOD] = self._binary(lambda a, b: self._zero_on_zero_divisor(a.smod(b, abstractions), b))
        h[Opcode.ADDMOD] = self._ternary(lambda a, b, n: a.addmod(b, n))
        h[Opcode.MULMOD] = self._ternary(lambda a, b, n: a.mulmod(b, n))
        h[Opcode.EXP] = self._binary(lambda a, b: a.exp(b, self.config.exp_unroll_bound, abstractions))
        h[Opcode.SIGNEXTEND] = self._binary(lambda b, x: x.signextend(b))

        h[Opcode.LT] = self._binary(lambda a, b: a.ult(b).to_word())
        h[Opcode.GT] = self._binary(lambda a, b: a.ugt(b).to_word())
        h[Opcode.SLT] = self._binary(lambda a, b: a.slt(b).to_word())
        h[Opcode.SGT] = self._binary(lambda a, b: a.sgt(b).to_word())
        h[Opcode.EQ] = self._binary(lambda a, b: a.eq(b).to_word())
        h[Opcode.ISZERO] = self._unary(lambda a: as_predicate(a).not_().to_word())
        h[Opcode.AND] = self._binary(lambda a, b: a.and_(b))
        h[Opcode.OR] = self._binary(lambda a, b: a.or_(b))
        h[Opcode.XOR] = self._binary(lambda a, b: a.xor(b))
        h[Opcode.NOT] = self._unary(lambda a: a.not_())
        h[Opcode.BYTE] = self._binary(lambda i, x: x.evm_byte(i))
        h[Opcode.SHL] = self._binary(lambda shift, value: value.shl(shift))
        h[Opcode.SHR] = self._binary(lambda shift, value: value.shr(shift))
        h[Opcode.SAR] = self._binary(lambda shift, value: value.sar(shift))

        h[Opcode.SHA3] = self._handle_sha3

        h[Opcode.ADDRESS] = self._push_from(lambda s: Word(s.this))
        h[Opcode.BALANCE] = self._handle_balance
        h[Opcode.ORIGIN] = self._push_from(lambda s: Word(s.message.origin))
        h[Opcode.CALLER] = self._push_from(lambda s: Word(s.message.caller))
        h[Opcode.CALLVALUE] = self._push_from(lambda s: s.message.value)
        h[Opcode.CALLDATALOAD] = self._handle_calldataload
        h[Opcode.CALLDATASIZE] = self._push_from(lambda s: Word(len(s.message.data)))
        h[Opcode.CALLDATACOPY] = self._copy_from(lambda s: s.message.data)
        h[Opcode.CODESIZE] = self._push_from(lambda s: Word(len(s.contract)))
        h[Opcode.CODECOPY] = self._copy_from(lambda s: s.contract.code)
        h[Opcode.GASPRICE] = self._push_from(lambda s: s.block.gasprice)
        h[Opcode.EXTCODESIZE] = self._handle_extcodesize
        h[Opcode.EXTCODECOPY] = self._handle_extcodecopy
        h[Opcode.RETURNDATASIZE] = self._push_from(lambda s: Word(len(s.returndata)))
        h[Opcode.RETURNDATACOPY] = self._handle_returndatacopy
        h[Opcode.EXTCODEHASH] = self._handle_extcodehash

        h[Opcode.BLOCKHASH] = self._unary(lambda n: Word(0))
        h[Opcode.COINBASE] = self._push_from(lambda s: s.block.coinbase)
        h[Opcode.TIMESTAMP] = self._push_from(lambda s: s.block.timestamp)
        h[Opcode.NUMBER] = self._push_from(lambda s: s.block.number)
        h[Opcode.PREVRANDAO] = self._push_from(lambda s: s.block.prevrandao)
        h[Opcode.GASLIMIT] = self._push_from(lambda s: s.block.gaslimit)
        h[Opcode.CHAINID] = self._push_from(lambda s: s.block.chainid)
        h[Opcode.SELFBALANCE] = self._push_from(lambda s: s.balance_of(s.this))
        h[Opcode.BASEFEE] = self._push_from(lambda s: s.block.basefee)
        h[Opcode.BLOBHASH] = self._unary(lambda i: Word(0))
        h[Opcode.BLOBBASEFEE] = self._push_from(lambda s: s.block.blobbasefee)

        h[Opcode.POP] = self._handle_pop
        h[Opcode.MLOAD] = self._handle_mload
        h[Opcode.MSTORE] = self._handle_mstore
        h[Opcode.MSTORE8] = self._handle_mstore8
        h[Opcode.SLOAD] = self._handle_sload
        h[Opcode.SSTORE] = self._handle_sstore
        h[Opcode.TLOAD] = self._handle_sload
        h[Opcode.TSTORE] = self._handle_sstore
        h[Opcode.JUMP] = self._handle_jump
        h[Opcode.JUMPI] = self._handle_jumpi
        h[Opcode.PC] = lambda s, ins: s.push(Word(ins.pc))
        h[Opcode.MSIZE] = self._push_from(lambda s: Word(len(s.memory)))
        h[Opcode.GAS] = self._push_from(lambda s: Word(s.gas))
        h[Opcode.JUMPDEST] = lambda s, ins: None
        h[Opcode.MCOPY] = self._handle_mcopy

        for op in range(Opcode.PUSH0, Opcode.PUSH32 + 1):
            h[op] = lambda s, ins: s.push(ins.operand)
        for n in range(1, 17):
            h[Opcode.DUP1 + n - 1] = lambda s, ins, n=n: s.dup(n)
            h[Opcode.SWAP1 + n - 1] = lambda s, ins, n=n: s.swap(n)
        for op in range(Opcode.LOG0, Opcode.LOG4 + 1):
            h[op] = self._handle_log

        h[Opcode.CREATE] = self._handle_create
        h[Opcode.CREATE2] = self._handle_create
        h[Opcode.CALL] = self._handle_call
        h[Opcode.DELEGATECALL] = self._handle_call
        h[Opcode.STATICCALL] = self._handle_call
        h[Opcode.RETURN] = self._handle_return
        h[Opcode.REVERT] = self._handle_return
        h[Opcode.INVALID] = self._handle_invalid
        h[Opcode.SELFDESTRUCT] = self._handle_selfdestruct

    # --- Handler builders ---

    @staticmethod
    def _unary(fn: Callable[[Word], Word]) -> Handler:
        def handler(state: ExecutionState, ins: Instruction) -> None:
            state.push(fn(state.pop()))

        return handler

    @staticmethod
    def _binary(fn: Callable[[Word, Word], Word]) -> Handler:
        def handler(state: ExecutionState, ins: Instruction) -> None:
            a = state.pop()
            b = state.pop()
            state.push(fn(a, b))

        return handler

    @staticmethod
    def _ternary(fn: Callable[[Word, Word, Word], Word]) -> Handler:
        def handler(state: ExecutionState, ins: Instruction) -> None:
            a = state.pop()
            b = state.pop()
            c = state.pop()
            state.push(fn(a, b, c))

        return handler

    @staticmethod
    def _push_from(fn: Callable[[ExecutionState], Word]) -> Handler:
        def handler(state: ExecutionState, ins: Instruction) -> None:
            state.push(fn(state))

        return handler

    def _copy_from(self, source: Callable[[ExecutionState], ByteSequence]) -> Handler:
        def handler(state: ExecutionState, ins: Instruction) -> None:
            dest = state.pop()
            offset = state.pop()
            size = self._int(state.pop(), "copy size")
            if not size:
                return
            start = self._int(offset, "copy offset")
            state.mstore(self._int(dest, "memory offset"), source(state).slice(start, start + size))

        return handler

    @staticmethod
    def _zero_on_zero_divisor(result: Word, divisor: Word) -> Word:
        """EVM MOD/SMOD give 0 for a zero divisor; Word keeps the dividend."""
        if divisor.is_concrete:
            return Word(0) if divisor.value == 0 else result
        return Word(z3.If(divisor.as_z3() == 0, z3.BitVecVal(0, 256), result.as_z3()))

    @staticmethod
    def _int(word: Word, what: str) -> int:
        if word.is_symbolic:
            raise NotConcrete(f"symbolic {what}: {word.value}")
        return word.value

    def _memory_range(self, offset: Word, size: Word) -> Tuple[int, int]:
        size = self._int(size, "memory size")
        if not size:
            return 0, 0
        return self._int(offset, "memory offset"), size

    @staticmethod
    def _load_word(data: ByteSequence) -> Word:
        raw = data.unwrap()
        return Word.from_bytes(raw) if isinstance(raw, bytes) else raw

    # --- Halting ---

    def _handle_stop(self, state: ExecutionState, ins: Instruction) -> List[ExecutionState]:
        state.halt(ByteSequence(), scheme=Opcode.STOP)
        return [state]

    def _handle_return(self, state: ExecutionState, ins: Instruction) -> List[ExecutionState]:
        offset, size = self._memory_range(state.pop(), state.pop())
        state.halt(state.mload(offset, size), scheme=ins.opcode)
        return [state]

    def _handle_invalid(self, state: ExecutionState, ins: Instruction) -> None:
        raise InvalidOpcode(f"INVALID at pc {ins.pc}")

    def _handle_selfdestruct(self, state: ExecutionState, ins: Instruction) -> List[ExecutionState]:
        beneficiary = state.pop()
        if beneficiary.is_concrete:
            target = beneficiary.value & ADDRESS_MASK
            if target != state.this:
                state.balances[target] = state.balance_of(target).add(state.balance_of(state.this))
                state.balances[state.this] = Word(0)
        state.halt(ByteSequence(), scheme=Opcode.SELFDESTRUCT)
        return [state]

    # --- Hashing and environment ---

    def _handle_sha3(self, state: ExecutionState, ins: Instruction) -> None:
        offset, size = self._memory_range(state.pop(), state.pop())
        data = state.mload(offset, size).unwrap() if size else b""
        digest, axioms = self.context.hashes.hash(data)
        state.path.extend(axioms)
        state.push(digest)

    def _handle_balance(self, state: ExecutionState, ins: Instruction) -> None:
        address = state.pop().and_(ADDRESS_MASK)
        if address.is_concrete:
            state.push(state.balance_of(address.value))
            return
        result = Word.symbol(f"balance_unknown_{address.value.get_id()}")
        for known, balance in state.balances.items():
            result = Word(z3.If(address.as_z3() == known, balance.as_z3(), result.as_z3()))
        state.push(result)

    def _handle_calldataload(self, state: ExecutionState, ins: Instruction) -> None:
        offset = self._int(state.pop(), "calldata offset")
        state.push(state.message.data.get_word(offset))

    def _code_at(self, state: ExecutionState, address: int) -> Optional[Contract]:
        return state.code.get(address)

    def _handle_extcodesize(self, state: ExecutionState, ins: Instruction) -> None:
        address = state.pop().and_(ADDRESS_MASK)
        if address.is_concrete:
            if self.context.cheatcodes.handles(address.value):
                state.push(Word(1))
                return
            contract = self._code_at(state, address.value)
            state.push(Word(len(contract) if contract is not None else 0))
            return
        result = z3.BitVecVal(0, 256)
        for known, contract in state.code.items():
            result = z3.If(address.as_z3() == known, z3.BitVecVal(len(contract), 256), result)
        state.push(Word(result))

    def _handle_extcodecopy(self, state: ExecutionState, ins: Instruction) -> None:
        address = self._int(state.pop().and_(ADDRESS_MASK), "code address")
        dest = state.pop()
        offset = state.pop()
        size = self._int(state.pop(), "copy size")
        if not size:
            return
        contract = self._code_at(state, address)
        code = contract.code if contract is not None else ByteSequence()
        start = self._int(offset, "copy offset")
        state.mstore(self._int(dest, "memory offset"), code.slice(start, start + size))

    def _handle_extcodehash(self, state: ExecutionState, ins: Instruction) -> None:
        address = self._int(state.pop().and_(ADDRESS_MASK), "code address")
        contract = self._code_at(state, address)
        if contract is None:
            state.push(Word(0))
            return
        digest, axioms = self.context.hashes.hash(contract.code.unwrap() if len(contract) else b"")
        state.path.extend(axioms)
        state.push(digest)

    def _handle_returndatacopy(self, state: ExecutionState, ins: Instruction) -> None:
        dest = state.pop()
        offset = self._int(state.pop(), "returndata offset")
        size = self._int(state.pop(), "copy size")
        if offset + size > len(state.returndata):
            raise OutOfBoundsRead(
                f"RETURNDATACOPY [{offset}, {offset + size}) beyond {len(state.returndata)} bytes"
            )
        if size:
            state.mstore(self._int(dest, "memory offset"), state.returndata.slice(offset, offset + size))

    # --- Stack, memory, storage ---

    def _handle_pop(self, state: ExecutionState, ins: Instruction) -> None:
        state.pop()

    def _handle_mload(self, state: ExecutionState, ins: Instruction) -> None:
        offset = self._int(state.pop(), "memory offset")
        state.push(self._load_word(state.mload(offset, 32)))

    def _handle_mstore(self, state: ExecutionState, ins: Instruction) -> None:
        offset = self._int(state.pop(), "memory offset")
        state.mstore(offset, state.pop())

    def _handle_mstore8(self, state: ExecutionState, ins: Instruction) -> None:
        offset = self._int(state.pop(), "memory offset")
        state.mstore(offset, state.pop().truncate(8))

    def _handle_mcopy(self, state: ExecutionState, ins: Instruction) -> None:
        dest = state.pop()
        src = state.pop()
        size = self._int(state.pop(), "copy size")
        if not size:
            return
        data = state.mload(self._int(src, "memory offset"), size)
        state.mstore(self._int(dest, "memory offset"), data)

    def _handle_sload(self, state: ExecutionState, ins: Instruction) -> None:
        transient = ins.opcode == Opcode.TLOAD
        loc = state.pop()
        value = self.context.storage.sload(state.storage_of(state.this, transient), loc)
        state.context.trace.append(StorageRead(state.this, loc, value, transient))
        state.push(value)

    def _handle_sstore(self, state: ExecutionState, ins: Instruction) -> None:
        transient = ins.opcode == Opcode.TSTORE
        loc = state.pop()
        value = state.pop()
        self.context.storage.sstore(state.storage_of(state.this, transient), loc, value)
        state.context.trace.append(StorageWrite(state.this, loc, value, transient))

    def _handle_log(self, state: ExecutionState, ins: Instruction) -> None:
        offset, size = self._memory_range(state.pop(), state.pop())
        topics = [state.pop() for _ in range(ins.opcode - Opcode.LOG0)]
        state.context.trace.append(EventLog(state.this, topics, state.mload(offset, size)))

    # --- Control flow ---

    def _jump_target(self, state: ExecutionState, dest: Word) -> int:
        if dest.is_symbolic:
            raise InvalidJump(f"symbolic jump target at pc {state.pc}")
        if not state.contract.is_jumpdest(dest.value):
            raise InvalidJump(f"jump to non-JUMPDEST 0x{dest.value:x} at pc {state.pc}")
        return dest.value

    def _handle_jump(self, state: ExecutionState, ins: Instruction) -> List[ExecutionState]:
        state.pc = self._jump_target(state, state.pop())
        return [state]

    def _handle_jumpi(self, state: ExecutionState, ins: Instruction) -> List[ExecutionState]:
        dest = state.pop()
        cond = as_predicate(state.pop())

        if cond.is_concrete:
            state.pc = self._jump_target(state, dest) if cond.value else ins.next_pc
            return [state]

        key = ins.key()
        bound = self.config.loop_bound
        path = state.path
        feasible = {True: path.check_feasibility(cond), False: path.check_feasibility(cond.not_())}
        allowed = {taken: ok and state.visits(key, taken) < bound for taken, ok in feasible.items()}
        for taken in (True, False):
            if feasible[taken] and not allowed[taken]:
                logger.debug("Loop bound reached, pruning branch", pc=ins.pc, taken=taken, bound=bound)

        sides = [taken for taken in (True, False) if allowed[taken]]
        if not sides:
            logger.debug("No branch left at JUMPI, path ends", pc=ins.pc)
            path.release()
            return []

        if len(sides) == 1:
            taken = sides[0]
            path.append(cond if taken else cond.not_(), is_branching=True)
            state.record_visit(key, taken)
            state.pc = self._jump_target(state, dest) if taken else ins.next_pc
            return [state]

        successors = []
        for taken in sides:
            fork = state.clone()
            fork.path = path.branch(cond if taken else cond.not_())
            fork.path.needs_check = False
            fork.record_visit(key, taken)
            if taken:
                try:
                    fork.pc = self._jump_target(fork, dest)
                except InvalidJump as e:
                    fork.halt(error=e)
            else:
                fork.pc = ins.next_pc
            successors.append(fork)
        path.release()
        return successors

    # --- Calls ---

    def _spawn(self, state: ExecutionState, contract: Contract, message: Message) -> ExecutionState:
        sub = ExecutionState(contract, message, state.path, block=state.block, depth=state.depth + 1)
        sub.code = dict(state.code)
        sub.storage = {addr: data.copy() for addr, data in state.storage.items()}
        sub.transient = {addr: data.copy() for addr, data in state.transient.items()}
        sub.balances = dict(state.balances)
        return sub

    def _transfer(self, state: ExecutionState, sender: int, receiver: int, value: Word) -> bool:
        """Move value between balances; False when a concrete balance is too small."""
        if value.is_zero():
            return True
        balance = state.balance_of(sender)
        if balance.is_concrete and value.is_concrete:
            if balance.value < value.value:
                return False
        else:
            state.path.append(balance.uge(value))
            state.path.needs_check = True
        state.balances[sender] = balance.sub(value)
        state.balances[receiver] = state.balance_of(receiver).add(value)
        return True

    def _fail_call(self, state: ExecutionState, ins: Instruction) -> None:
        state.returndata = ByteSequence()
        state.push(Word(0))

    def _call_targets(self, state: ExecutionState, to: Word) -> List[Tuple[Optional[int], Predicate]]:
        """Concrete candidates for a symbolic call target, with the condition selecting each."""
        candidates = []
        others = Predicate(True)
        for known in state.code:
            pred = to.eq(known)
            if state.path.check_feasibility(pred):
                candidates.append((known, pred))
            others = others.and_(pred.not_())
        if state.path.check_feasibility(others):
            candidates.append((None, others))
        return candidates

    def _handle_call(self, state: ExecutionState, ins: Instruction) -> Optional[List[ExecutionState]]:
        op = ins.opcode
        gas = state.pop()
        to = state.pop().and_(ADDRESS_MASK)
        if op == Opcode.CALL:
            value = state.pop()
        elif op == Opcode.DELEGATECALL:
            value = state.message.value
        else:
            value = Word(0)
        args_offset, args_size = self._memory_range(state.pop(), state.pop())
        ret_offset, ret_size = self._memory_range(state.pop(), state.pop())

        if op == Opcode.CALL and state.message.is_static and not value.is_zero():
            if value.is_concrete:
                raise StaticCallViolation(f"value transfer inside a static call at pc {ins.pc}")
            state.path.append(value.eq(0))
            state.path.needs_check = True

        args = state.mload(args_offset, args_size)
        call_gas = gas.value if gas.is_concrete else state.gas

        if to.is_concrete:
            return self._call_address(state, ins, to.value, value, args, ret_offset, ret_size, call_gas)

        successors = []
        for address, pred in self._call_targets(state, to):
            fork = state.clone()
            fork.path = state.path.branch(pred)
            fork.path.activate()
            if address is None:
                fork.returndata = ByteSequence()
                fork.push(Word(1))
                fork.pc = ins.next_pc
                successors.append(fork)
                continue
            successors.extend(
                self._call_address(fork, ins, address, value, args, ret_offset, ret_size, call_gas)
            )
        state.path.release()
        return successors

    def _call_address(
        self,
        state: ExecutionState,
        ins: Instruction,
        address: int,
        value: Word,
        args: ByteSequence,
        ret_offset: int,
        ret_size: int,
        gas: int,
    ) -> List[ExecutionState]:
        op = ins.opcode
        if self.context.cheatcodes.handles(address):
            output = self.context.cheatcodes.dispatch(state, address, args)
            state.returndata = output
            if ret_size:
                state.mstore(ret_offset, output.slice(0, min(ret_size, len(output))))
            state.push(Word(1))
            state.pc = ins.next_pc
            return [state]

        if state.depth >= self.config.max_call_depth:
            logger.info("Call depth limit reached", depth=state.depth, pc=ins.pc)
            self._fail_call(state, ins)
            state.pc = ins.next_pc
            return [state]

        contract = state.code.get(address)
        if op == Opcode.DELEGATECALL:
            message = Message(
                target=state.this,
                caller=state.message.caller,
                origin=state.message.origin,
                value=value,
                data=args,
                is_static=state.message.is_static,
                call_scheme=op,
                gas=gas,
            )
        else:
            message = Message(
                target=address,
                caller=state.this,
                origin=state.message.origin,
                value=value,
                data=args,
                is_static=state.message.is_static or op == Opcode.STATICCALL,
                call_scheme=op,
                gas=gas,
            )

        if contract is None:
            # account without code: the call succeeds and returns nothing
            if op == Opcode.CALL and not self._transfer(state, state.this, address, value):
                self._fail_call(state, ins)
            else:
                state.returndata = ByteSequence()
                state.push(Word(1))
            state.pc = ins.next_pc
            return [state]

        sub = self._spawn(state, contract, message)
        if op == Opcode.CALL and not self._transfer(sub, state.this, address, value):
            self._fail_call(state, ins)
            state.pc = ins.next_pc
            return [state]

        logger.debug("Entering call frame", scheme=ins.name, target=f"0x{address:040x}", depth=sub.depth)
        terminals = self.run(sub)
        successors = []
        for end in terminals:
            cont = self._resume(state, ins, end)
            if cont.halted:
                successors.append(cont)
                continue
            output = end.output.data or ByteSequence()
            if ret_size:
                cont.mstore(ret_offset, output.slice(0, min(ret_size, len(output))))
            cont.push(Word(1 if end.is_success() else 0))
            successors.append(cont)
        return successors

    def _resume(self, state: ExecutionState, ins: Instruction, end: ExecutionState) -> ExecutionState:
        """Continuation of the caller after one terminal state of a nested frame."""
        cont = state.clone()
        cont.path = end.path
        cont.context.trace.append(end.context)
        cont.pc = ins.next_pc
        if isinstance(end.error, EngineError):
            cont.halt(error=end.error)
            return cont
        if end.is_success():
            cont.code = end.code
            cont.storage = end.storage
            cont.transient = end.transient
            cont.balances = end.balances
        cont.returndata = end.output.data or ByteSequence()
        return cont

    def _handle_create(self, state: ExecutionState, ins: Instruction) -> Optional[List[ExecutionState]]:
        op = ins.opcode
        value = state.pop()
        offset, size = self._memory_range(state.pop(), state.pop())
        salt = state.pop() if op == Opcode.CREATE2 else None
        init_code = state.mload(offset, size)

        if op == Opcode.CREATE2:
            address = self.create2_address(state.this, salt, init_code)
        else:
            address = self.context.new_address()

        if address in state.code or state.depth >= self.config.max_call_depth:
            logger.info("CREATE failed", address=f"0x{address:040x}", depth=state.depth)
            self._fail_call(state, ins)
            return None

        message = Message(
            target=address,
            caller=state.this,
            origin=state.message.origin,
            value=value,
            data=ByteSequence(),
            call_scheme=op,
            gas=state.gas,
            salt=salt,
        )
        sub = self._spawn(state, Contract(init_code), message)
        sub.code[address] = Contract(b"")
        if not self._transfer(sub, state.this, address, value):
            self._fail_call(state, ins)
            return None

        terminals = self.run(sub)
        successors = []
        for end in terminals:
            cont = self._resume(state, ins, end)
            if cont.halted:
                successors.append(cont)
                continue
            if end.is_success():
                cont.code[address] = Contract(end.output.data or ByteSequence())
                cont.returndata = ByteSequence()
                cont.push(Word(address))
            else:
                cont.push(Word(0))
            successors.append(cont)
        return successors

    @staticmethod
    def create2_address(deployer: int, salt: Word, init_code: ByteSequence) -> int:
        if salt.is_symbolic:
            raise NotConcrete("CREATE2 with a symbolic salt")
        code = init_code.unwrap() if len(init_code) else b""
        if not isinstance(code, bytes):
            raise NotConcrete("CREATE2 with symbolic init code")
        digest = keccak(b"\xff" + deployer.to_bytes(20, "big") + salt.to_bytes() + keccak(code))
        return int.from_bytes(digest[12:], "big")
