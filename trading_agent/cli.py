#!/usr/bin/env python3
"""
Trading Agent CLI

Command-line interface for running and inspecting the trading agent in
paper mode against the simulated broker.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .configs import get_config_value, load_agent_config
from .core.event_bus import InMemoryEventBus
from .core.persistent_state_manager import SQLAlchemyTradeStore
from .services.agent_service import AgentScheduler, TradingAgentService
from .services.execution.broker import SimulatedBroker


def setup_logging(config: Dict[str, Any], verbose: bool = False) -> None:
    """Setup logging for the agent."""
    level_name = 'DEBUG' if verbose else str(get_config_value(config, 'logging.level', 'INFO')).upper()
    handlers = [logging.StreamHandler(sys.stdout)]

    log_dir = get_config_value(config, 'logging.directory')
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True)
        handlers.append(logging.FileHandler(
            log_path / get_config_value(config, 'logging.file', 'trading_agent.log')
        ))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def build_service(config: Dict[str, Any], database_url: Optional[str] = None) -> TradingAgentService:
    """Wire the agent with the simulated broker and the SQLAlchemy trade store."""
    broker_config = dict(config.get('broker', {}) or {})
    broker_config.setdefault('sectors', get_config_value(config, 'risk.sectors', {}))

    store = SQLAlchemyTradeStore(
        database_url or get_config_value(config, 'database.url', 'sqlite:///trading_agent.db')
    )
    event_bus = InMemoryEventBus("trading_agent")
    return TradingAgentService(config, SimulatedBroker(broker_config), store, event_bus=event_bus)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_agent(service: TradingAgentService) -> None:
    scheduler = AgentScheduler(service)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    await scheduler.start()
    print("🚀 Trading agent running (Ctrl+C to stop)")
    await stop_event.wait()
    await scheduler.stop()
    print("🛑 Trading agent stopped")


async def run_scan(service: TradingAgentService, symbols) -> int:
    await service.start()
    if not service.execution_enabled:
        print("⚠️  Execution is disabled; recommendations only (pass --enable-execution to trade)")
    outcomes = await service.run_scan(symbols or None)
    for outcome in outcomes:
        print(f"{outcome.symbol:8s} {outcome.status.value:20s} {outcome.reason}")
    return 0


async def run_learning(service: TradingAgentService) -> int:
    await service.start()
    report = await service.run_learning_cycle()
    _print_json(report.to_dict())
    return 0 if report.status != 'error' else 1


async def show_status(service: TradingAgentService) -> int:
    await service.start()
    _print_json({'config': service.get_config(), 'metrics': service.get_metrics()})
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Trading Agent CLI - automated multi-strategy paper trading",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  trading-agent run --enable-execution        # Run scan and learning loops
  trading-agent scan --enable-execution AAPL  # One decision cycle for AAPL
  trading-agent learn                         # One learning cycle
  trading-agent status                        # Show configuration and metrics
  trading-agent config                        # Print effective configuration
        """
    )
    parser.add_argument("--config", help="Path to an agent YAML file")
    parser.add_argument("--database-url", help="Override the trade store URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the agent until interrupted")
    run_parser.add_argument("--enable-execution", action="store_true", help="Turn the kill switch off")

    scan_parser = subparsers.add_parser("scan", help="Run one scan cycle")
    scan_parser.add_argument("symbols", nargs="*", help="Symbols to evaluate (default: configured list)")
    scan_parser.add_argument("--enable-execution", action="store_true", help="Turn the kill switch off")

    subparsers.add_parser("learn", help="Run one learning cycle")
    subparsers.add_parser("status", help="Show configuration and metrics")
    subparsers.add_parser("config", help="Print effective configuration")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    try:
        config = load_agent_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(2)

    if args.command == "config":
        _print_json(config)
        return

    setup_logging(config, verbose=args.verbose)
    service = build_service(config, args.database_url)

    if getattr(args, 'enable_execution', False):
        service.enable_execution()

    try:
        if args.command == "run":
            asyncio.run(run_agent(service))
            code = 0
        elif args.command == "scan":
            code = asyncio.run(run_scan(service, args.symbols))
        elif args.command == "learn":
            code = asyncio.run(run_learning(service))
        elif args.command == "status":
            code = asyncio.run(show_status(service))
        else:
            parser.print_help()
            code = 1
    finally:
        service.store.close()

    sys.exit(code)


if __name__ == "__main__":
    main()
