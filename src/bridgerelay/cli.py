"""
Command line interface for bridgerelay.

    bridgerelay --config relay.json run
    bridgerelay --config relay.json status
    bridgerelay --config relay.json resubmit 42
    bridgerelay --config relay.json rederive [--chain 1]
    bridgerelay --config relay.json show 42
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, List, Optional

from .chains.keys import KeyManager
from .config import RelayConfig
from .errors import ConfigurationError, RecordNotFound, RelayError
from .logging import get_logger, setup_logging, shutdown_logging
from .relay.service import BridgeRelayService

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridgerelay", description="Dual-chain Bridge -> mint event relay"
    )
    parser.add_argument(
        "--config", "-c", help="JSON configuration file (defaults plus BRIDGERELAY_* otherwise)"
    )
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument(
        "--log-format", choices=["text", "json"], help="Override the configured log format"
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Run the relay until interrupted")
    commands.add_parser("status", help="Show outstanding records and scan progress")

    resubmit = commands.add_parser("resubmit", help="Requeue a FAILED record")
    resubmit.add_argument("record_id", type=int)

    rederive = commands.add_parser("rederive", help="Requeue every FAILED record")
    rederive.add_argument("--chain", type=int, help="Only records bridged from this chain")

    show = commands.add_parser("show", help="Show one record with its attempts and history")
    show.add_argument("record_id", type=int)
    return parser


def load_config(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.from_file(args.config) if args.config else RelayConfig()
    if args.log_level:
        config.logging.level = args.log_level
    if args.log_format:
        config.logging.format_type = args.log_format
    config.validate()
    return config


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


async def _run(service: BridgeRelayService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_stop)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends the run.
            pass
    await service.run_forever()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging.to_log_config())
    try:
        if args.command == "run":
            keys = KeyManager.load(config.key_file)
            logger.info(f"Relaying as {keys.address}")
            asyncio.run(_run(BridgeRelayService.from_config(config, keys=keys)))
            return 0

        service = BridgeRelayService.from_config(config).open()
        try:
            if args.command == "status":
                _print(service.status())
            elif args.command == "resubmit":
                _print(service.resubmit(args.record_id).to_dict())
            elif args.command == "rederive":
                records = service.rederive_failed(args.chain)
                _print({"requeued": [record.record_id for record in records]})
            elif args.command == "show":
                _print(service.show(args.record_id))
        finally:
            service.close()
        return 0
    except RecordNotFound as e:
        print(str(e), file=sys.stderr)
        return 1
    except RelayError as e:
        logger.error(f"{args.command} failed: {e}", exception=e)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
