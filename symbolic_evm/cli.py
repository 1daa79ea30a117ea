"""Command line entry point: symbolically execute one call and print the result as JSON."""

import argparse
import json
import sys
from typing import List, Optional

import structlog

from .analysis.verifier import Verifier, symbolic_calldata
from .config import load_config
from .core.bytevec import ByteSequence
from .core.contract import Contract
from .exceptions import SymbolicEVMError
from .logging_config import configure_logging

logger = structlog.get_logger()


def _hex_bytes(value: str) -> bytes:
    value = value.strip()
    if value.startswith("0x"):
        value = value[2:]
    return bytes.fromhex(value)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Symbolic EVM bytecode verifier",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--bytecode", required=True, help="Runtime bytecode as a hex string")
    parser.add_argument("--calldata", default="", help="Concrete calldata as a hex string")
    parser.add_argument(
        "--symbolic-args",
        type=int,
        default=0,
        help="Append this many symbolic uint256 arguments after the calldata",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )
    parser.add_argument("--log-format", default="json", choices=["json", "console"], help="Log rendering on stderr")
    parser.add_argument("--loop", type=int, help="Loop unrolling bound per JUMPI site")
    parser.add_argument("--solver-timeout-assertion", type=int, help="External solver timeout in ms")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    try:
        config = load_config(
            args.config,
            loop_bound=args.loop,
            solver_timeout_assertion=args.solver_timeout_assertion,
        )
        contract = Contract(_hex_bytes(args.bytecode))
        calldata = ByteSequence(_hex_bytes(args.calldata))
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.symbolic_args:
        calldata.append(symbolic_calldata(num_args=args.symbolic_args))

    verifier = Verifier(config, args.log_level, args.log_format)
    try:
        result = verifier.run_test(contract, calldata)
    except SymbolicEVMError as e:
        logger.error("Verification aborted", error=type(e).__name__, detail=str(e))
        return 3
    finally:
        verifier.close()

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.passed else 1


if __name__ == "__main__":
    sys.exit(main())
