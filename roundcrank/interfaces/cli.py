import argparse
import asyncio
import json
import random
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from roundcrank.adapters.ledger.memory_ledger import InMemoryLedger
from roundcrank.domain.records import RoundPhase
from roundcrank.exceptions import ConfigurationError, CrankError
from roundcrank.logging import log_event, setup_logging
from roundcrank.runtime.crank_runtime import CrankRuntime
from roundcrank.settings import CrankConfig, load_config, load_env

COMMANDS = ("run", "observe", "recover", "status", "health", "cleanup", "serve", "simulate")


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="roundcrank", description="Crash-recoverable crank for round-based wager games.")
    parser.add_argument("command", choices=COMMANDS, help="What to do.")
    parser.add_argument("--settings", type=str, default=None, help="Path to a JSON settings file.")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides settings).")
    parser.add_argument("--workspace", type=str, default=None, help="Workspace directory for logs.")
    parser.add_argument("--dry-run", action="store_true", help="Assess and log only; no ledger writes or scheduling.")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind host for 'serve'.")
    parser.add_argument("--port", type=int, default=8087, help="Bind port for 'serve'.")
    parser.add_argument("--rounds", type=int, default=3, help="Rounds to play for 'simulate'.")
    parser.add_argument("--players", type=int, default=3, help="Wagering players per simulated round.")
    parser.add_argument("--waiting", type=float, default=10.0, help="Wager window seconds for 'simulate'.")
    parser.add_argument("--oracle-latency", type=float, default=4.0, help="Simulated oracle fulfillment delay.")
    return parser.parse_args(argv)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_config(args) -> CrankConfig:
    overrides: Dict[str, Any] = {"db_path": args.db, "workspace": args.workspace}
    if args.dry_run:
        overrides["dry_run"] = True
    return load_config(Path(args.settings) if args.settings else None, **overrides)


async def _run_until_interrupted(runtime: CrankRuntime) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass
    await runtime.run(stop_event)


async def _simulate(args, config: CrankConfig) -> int:
    config = config.model_copy(
        update={
            "waiting_duration_seconds": args.waiting,
            "observe_interval_seconds": 1.0,
            "recovery_interval_seconds": 5.0,
        }
    )
    ledger = InMemoryLedger(
        waiting_duration_seconds=int(args.waiting),
        fulfill_delay_seconds=args.oracle_latency,
    )
    runtime = CrankRuntime(config, ledger=ledger, oracle=ledger, require_credentials=False)
    stop_event = asyncio.Event()
    crank = asyncio.create_task(runtime.run(stop_event))
    results = []
    try:
        for _ in range(max(1, args.rounds)):
            round_id = ledger.create_round()
            for index in range(max(0, args.players)):
                ledger.place_wager(f"player-{index + 1}", random.randint(1, 10) * 100)
            print(f"Round {round_id}: {args.players} wager(s) placed, window closes in {args.waiting:.0f}s")
            deadline = time.time() + args.waiting + config.oracle_stuck_seconds + 30
            while time.time() < deadline:
                snapshot = await ledger.get_round_snapshot()
                if snapshot and snapshot["roundId"] == round_id and snapshot["status"] == RoundPhase.FINISHED.value \
                        and snapshot["currentRoundId"] > round_id:
                    break
                await asyncio.sleep(0.5)
            mirror = await runtime.mirror.get(round_id)
            view = mirror.public_view() if mirror else None
            results.append(view)
            print(f"Round {round_id} -> {json.dumps(view, default=str)}")
    finally:
        stop_event.set()
        await crank
    _print_json({"rounds": results, "balances": ledger.balances})
    return 0 if all(r and r["phase"] == RoundPhase.FINISHED.value for r in results) else 1


async def _dispatch(args) -> int:
    config = build_config(args)
    setup_logging(Path(config.workspace), console=args.command in {"run", "simulate"})

    if args.command == "simulate":
        return await _simulate(args, config)

    if args.command == "serve":
        import uvicorn
        from roundcrank.adapters.storage.async_mirror_repository import AsyncMirrorRepository
        from roundcrank.interfaces.api import create_api_app

        app = create_api_app(AsyncMirrorRepository(config.db_path))
        server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_level="info"))
        await server.serve()
        return 0

    runtime = CrankRuntime.from_config(config)

    if args.command == "run":
        await _run_until_interrupted(runtime)
        return 0

    if args.command == "observe":
        result = await runtime.observe_once(dry_run=args.dry_run)
        _print_json(result.model_dump(mode="json"))
        return 0 if result.error is None else 1

    if args.command == "recover":
        report = await runtime.recover_once(dry_run=args.dry_run)
        _print_json(report.model_dump(mode="json"))
        return 0

    if args.command == "status":
        _print_json(await runtime.status())
        return 0

    if args.command == "health":
        report = await runtime.health.check()
        _print_json(report.model_dump(mode="json"))
        return 0 if report.healthy else 2

    if args.command == "cleanup":
        _print_json(await runtime.cleanup_once())
        return 0

    raise ValueError(f"Unsupported command '{args.command}'.")


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        print("\n[HALT] Interrupted by user.")
        return 130
    except ConfigurationError as exc:
        log_event("configuration_error", error=str(exc), level="critical")
        print(f"[CONFIG] {exc}", file=sys.stderr)
        return 3
    except (CrankError, RuntimeError, ValueError, OSError) as exc:
        print(f"[FATAL] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
