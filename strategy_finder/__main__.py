"""CLI entry point for strategy-finder."""

from __future__ import annotations

import argparse
import importlib
import logging
import math
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from strategy_finder.types import FinderResult, SelectedStrategy


def resolve_reference(ref: str) -> Any:
    """Import the object named by a 'module:attr' reference.

    Classes are instantiated with no arguments.

    Raises:
        ValueError: If the reference is not in 'module:attr' form.
        ImportError: If the module cannot be imported.
        AttributeError: If the attribute does not exist.
    """
    module_name, _, attr = ref.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Reference must be 'module:attr', got {ref!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    return obj() if isinstance(obj, type) else obj


def _selected_strategy(ref: str) -> SelectedStrategy:
    from strategy_finder.types import SelectedStrategy

    strategy = resolve_reference(ref)
    key = ref.partition(":")[2]
    return SelectedStrategy(key=key, name=str(getattr(strategy, "name", key)), strategy=strategy)


def _format_metric(value: float, decimals: int = 2) -> str:
    if math.isnan(value):
        return "-"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return f"{value:.{decimals}f}"


def _print_results(results: list[FinderResult]) -> None:
    print(
        f"{'#':<4} {'Strategy':<20} {'Net %':>9} {'PF':>7} {'Win %':>7} {'Trades':>7} "
        f"{'Sharpe':>7}  Params"
    )
    print("-" * 96)
    for rank, item in enumerate(results, start=1):
        r = item.selection_result
        params = ", ".join(f"{k}={v:g}" for k, v in item.params.items())
        marker = "*" if item.endpoint_adjusted else " "
        print(
            f"{rank:<4} {item.name[:19]:<19}{marker} {_format_metric(r.net_profit_percent):>9} "
            f"{_format_metric(r.profit_factor):>7} {_format_metric(r.win_rate, 1):>7} "
            f"{r.total_trades:>7} {_format_metric(r.sharpe_ratio):>7}  {params}"
        )


def cmd_run(args: argparse.Namespace) -> int:
    """Run the finder from a run file.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code (0 for success).
    """
    import asyncio

    from strategy_finder.config import FinderConfigError, load_finder_config
    from strategy_finder.data import CsvDataError, CsvDataSource
    from strategy_finder.engine import FinderEngine, FinderRequest
    from strategy_finder.offload import RemoteEngineClient

    try:
        config = load_finder_config(args.config)
    except (FileNotFoundError, FinderConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    strategy_refs = args.strategy or config.strategies
    backtester_ref = args.backtester or config.backtester
    if not strategy_refs:
        print("Error: no strategies given (use --strategy or 'strategies' in the run file)", file=sys.stderr)
        return 1
    if not backtester_ref:
        print("Error: no backtester given (use --backtester or 'backtester' in the run file)", file=sys.stderr)
        return 1

    try:
        strategies = [_selected_strategy(ref) for ref in strategy_refs]
        backtester = resolve_reference(backtester_ref)
    except (ValueError, ImportError, AttributeError, TypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    data_source = CsvDataSource(args.data_dir)
    try:
        bars = data_source.load(config.symbol, config.interval)
    except (FileNotFoundError, CsvDataError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    offload_client = None
    if config.offload.enabled:
        offload_client = RemoteEngineClient.from_env(
            config.offload.base_url, timeout=config.offload.timeout_seconds
        )

    engine = FinderEngine(
        backtester,
        data_source=data_source,
        offload_client=offload_client,
        events_dir=args.events_dir,
    )
    request = FinderRequest(
        symbol=config.symbol,
        interval=config.interval,
        bars=bars,
        strategies=strategies,
        options=config.options.to_options(),
        settings=config.settings,
        capital=config.capital.to_capital(),
    )

    async def _run() -> Any:
        try:
            return await engine.run(request)
        finally:
            if offload_client is not None:
                await offload_client.close()

    try:
        output = asyncio.run(_run())
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    print(f"Run {output.run_id}: {output.status}")
    if output.timeframes:
        print(f"Timeframes: {', '.join(output.timeframes)}")
    if output.results:
        print()
        _print_results(output.results)
    return 0


def cmd_show_config(args: argparse.Namespace) -> int:
    """Validate a run file and print the resolved options.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code (0 for success).
    """
    from strategy_finder.config import FinderConfigError, load_finder_config

    try:
        config = load_finder_config(args.config)
        options = config.options.to_options()
    except (FileNotFoundError, FinderConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Symbol: {config.symbol}")
    print(f"Interval: {config.interval}")
    print(f"Strategies: {', '.join(config.strategies) or '-'}")
    print(f"Backtester: {config.backtester or '-'}")
    print(f"Mode: {options.mode}")
    print(f"Sort priority: {', '.join(str(m) for m in options.sort_priority)}")
    print(f"Top N: {options.top_n}")
    print(f"Max runs: {options.max_runs}")
    if options.trade_filter_enabled:
        print(f"Trades: {options.min_trades} - {options.max_trades:g}")
    if options.multi_timeframe_enabled:
        print(f"Timeframes: {', '.join(options.timeframes) or config.interval}")
    if options.durability_enabled:
        print(
            f"Durability: holdout {options.durability_holdout_percent:g}%, "
            f"min score {options.durability_min_score:g}"
        )
    print(f"Offload: {config.offload.base_url if config.offload.enabled else 'disabled'}")
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    """List event logs, or summarize one run's events.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code (0 for success).
    """
    from strategy_finder.logging import count_events_by_type, list_runs

    if args.run_id is None:
        runs = list_runs(args.events_dir)
        if not runs:
            print("No finder runs found.")
            return 0
        for run_id in runs:
            print(run_id)
        return 0

    try:
        counts = count_events_by_type(args.run_id, args.events_dir)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{'Event':<20} {'Count':>6}")
    print("-" * 27)
    for event, count in counts.items():
        print(f"{event:<20} {count:>6}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser.

    Returns:
        Configured ArgumentParser.
    """
    from strategy_finder.logging.writer import DEFAULT_EVENTS_DIR

    parser = argparse.ArgumentParser(
        prog="strategy-finder",
        description="Parameter search over trading strategies",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    # run
    run_parser = subparsers.add_parser(
        "run",
        help="Run the finder",
    )
    run_parser.add_argument(
        "--config",
        required=True,
        help="YAML run file",
    )
    run_parser.add_argument(
        "--data-dir",
        default="data",
        help="Directory of {symbol}_{interval}.csv bar files (default: data)",
    )
    run_parser.add_argument(
        "--strategy",
        action="append",
        default=None,
        help="Strategy as module:attr; repeatable, overrides the run file",
    )
    run_parser.add_argument(
        "--backtester",
        default=None,
        help="Backtester as module:attr, overrides the run file",
    )
    run_parser.add_argument(
        "--events-dir",
        default=None,
        help="Write a JSONL event log per run to this directory",
    )
    run_parser.set_defaults(func=cmd_run)

    # show-config
    show_parser = subparsers.add_parser(
        "show-config",
        help="Validate a run file and print resolved options",
    )
    show_parser.add_argument(
        "--config",
        required=True,
        help="YAML run file",
    )
    show_parser.set_defaults(func=cmd_show_config)

    # events
    events_parser = subparsers.add_parser(
        "events",
        help="Inspect run event logs",
    )
    events_parser.add_argument(
        "--run-id",
        default=None,
        help="Summarize this run (default: list runs)",
    )
    events_parser.add_argument(
        "--events-dir",
        default=DEFAULT_EVENTS_DIR,
        help=f"Event log directory (default: {DEFAULT_EVENTS_DIR})",
    )
    events_parser.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    result: int = args.func(args)
    return result


if __name__ == "__main__":
    sys.exit(main())
