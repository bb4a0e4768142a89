"""
Command-line interface for the Operation Relayer.

Provides commands for relaying operations and inspecting the relayer.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List

import structlog
from pydantic import ValidationError

from relayer import __version__
from relayer.chain.interface import ChainConnectionError, RpcError
from relayer.config import ConfigError, RelayerConfig, set_config
from relayer.core.operation import OperationValidationError, UserOperation
from relayer.core.outcomes import SimulationAccepted, SimulationRejected
from relayer.core.relayer import Relayer
from relayer.state.sequence import SequenceConflictError


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Logs go to stderr so command output on stdout stays machine-readable
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stderr,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="relayer",
        description="Relay operations to an entry point contract",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--rpc-url",
        help="JSON-RPC endpoint (overrides RELAYER_RPC_URL)",
    )
    parser.add_argument(
        "--chain-id",
        type=int,
        help="Chain ID (overrides RELAYER_CHAIN_ID)",
    )
    parser.add_argument(
        "--entry-point",
        help="Entry point address (overrides RELAYER_ENTRY_POINT_ADDRESS)",
    )
    parser.add_argument(
        "--key-path",
        help="Path to the relayer private key file",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: from config)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Health command
    subparsers.add_parser("health", help="Show relayer identity and node status")

    # Request id command
    request_id_parser = subparsers.add_parser(
        "request-id", help="Compute request identifiers of operations"
    )
    request_id_parser.add_argument(
        "--ops",
        required=True,
        help="JSON file with one operation or a list of operations",
    )
    request_id_parser.add_argument(
        "--verify",
        action="store_true",
        help="Also ask the entry point and compare",
    )

    # Simulate command
    simulate_parser = subparsers.add_parser("simulate", help="Simulate operations without submitting")
    simulate_parser.add_argument("--ops", required=True, help="JSON file with operations")
    simulate_parser.add_argument("--timeout", type=float, help="Deadline in seconds")

    # Relay command
    relay_parser = subparsers.add_parser("relay", help="Simulate and submit operations")
    relay_parser.add_argument("--ops", required=True, help="JSON file with operations")
    relay_parser.add_argument(
        "--beneficiary",
        help="Recipient of collected fees (default: relayer address)",
    )
    relay_parser.add_argument("--timeout", type=float, help="Deadline in seconds")
    relay_parser.add_argument(
        "--wait",
        action="store_true",
        help="Wait for receipts and report per-operation execution",
    )

    # Deposit command
    deposit_parser = subparsers.add_parser("deposit", help="Show an account's entry point deposit")
    deposit_parser.add_argument("--account", required=True, help="Account address")

    return parser


def build_config(args: argparse.Namespace) -> RelayerConfig:
    """Create configuration from the environment plus command-line overrides."""
    overrides = {
        "rpc_url": args.rpc_url,
        "chain_id": args.chain_id,
        "entry_point_address": args.entry_point,
        "relayer_key_path": args.key_path,
        "log_level": args.log_level,
        "log_json": args.log_json or None,
    }
    return RelayerConfig(**{key: value for key, value in overrides.items() if value is not None})


def load_operations(path: str) -> List[UserOperation]:
    """
    Load operations from a JSON file.

    The file may hold a single operation object, a list of them, or an
    object with an ``ops`` list.
    """
    data = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("ops", [data])
    if not isinstance(data, list):
        raise OperationValidationError("Operations file must hold an object or a list")
    return [UserOperation.from_dict(item) for item in data]


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def show_health(relayer: Relayer, args: argparse.Namespace) -> int:
    _print_json(await relayer.health())
    return 0


async def show_request_ids(relayer: Relayer, args: argparse.Namespace) -> int:
    ops = load_operations(args.ops)
    rows = []
    mismatches = 0
    for op in ops:
        if args.verify:
            local_id, onchain_id = await relayer.verify_request_id(op)
            rows.append({"request_id": local_id, "onchain": onchain_id, "match": local_id == onchain_id})
            mismatches += local_id != onchain_id
        else:
            rows.append({"request_id": relayer.request_id(op)})
    _print_json(rows)
    return 1 if mismatches else 0


async def simulate_operations(relayer: Relayer, args: argparse.Namespace) -> int:
    ops = load_operations(args.ops)
    outcomes = await relayer.simulate(ops, timeout=args.timeout)
    rows = []
    for outcome in outcomes:
        row = {"request_id": outcome.request_id, "status": outcome.status.value}
        if isinstance(outcome, SimulationAccepted):
            row.update(pre_op_gas=outcome.pre_op_gas, prefund=outcome.prefund)
        elif isinstance(outcome, SimulationRejected):
            row.update(reason=outcome.reason, op_index=outcome.op_index, paymaster=outcome.paymaster)
        else:
            row.update(error=outcome.error)
        rows.append(row)
    _print_json(rows)
    return 0


async def relay_operations(relayer: Relayer, args: argparse.Namespace) -> int:
    ops = load_operations(args.ops)
    results = await relayer.relay(ops, beneficiary=args.beneficiary, timeout=args.timeout)
    output = {"results": [result.to_dict() for result in results]}

    if args.wait:
        executions = {}
        for tx_hash in sorted({r.tx_hash for r in results if r.tx_hash}):
            found = await relayer.get_operation_results(tx_hash, wait=True)
            executions[tx_hash] = [e.to_dict() for e in found] if found is not None else None
        output["executions"] = executions

    _print_json(output)
    return 0


async def show_deposit(relayer: Relayer, args: argparse.Namespace) -> int:
    info = await relayer.get_deposit_info(args.account)
    _print_json({"account": args.account, **info.to_dict()})
    return 0


COMMANDS = {
    "health": show_health,
    "request-id": show_request_ids,
    "simulate": simulate_operations,
    "relay": relay_operations,
    "deposit": show_deposit,
}


async def run_command(args: argparse.Namespace, config: RelayerConfig) -> int:
    """Initialize a relayer, run one command, and shut down."""
    relayer = Relayer(config)
    await relayer.initialize()
    try:
        return await COMMANDS[args.command](relayer, args)
    finally:
        await relayer.shutdown()


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = build_config(args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    set_config(config)

    # Setup logging
    setup_logging(config.log_level, config.log_json)
    logger = structlog.get_logger("relayer.cli")

    try:
        exit_code = asyncio.run(run_command(args, config))
    except (ConfigError, OperationValidationError, OSError, ValueError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        sys.exit(2)
    except (ChainConnectionError, RpcError) as e:
        logger.error("node_error", command=args.command, error=str(e))
        sys.exit(1)
    except SequenceConflictError as e:
        logger.critical("sequence_conflict", command=args.command, error=str(e))
        sys.exit(3)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
