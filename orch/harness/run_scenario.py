#!/usr/bin/env python3
"""
run_scenario.py - Scenario orchestration CLI

Usage:
    orch scenarios/two_players.json
    orch scenarios/two_players.json --validate
    orch scenarios/two_players.json --mqtt-port 1884 --verbose
    orch --list-scenarios
    orch --validate-all --cleanup-invalid
    orch --search-logs world_id "join_world" --window 5

The run will:
1. Load and validate the scenario
2. Start broker, observer and clients
3. Execute the steps
4. Shut everything down
5. Report results (exit 0 on success, 1 otherwise)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from orch.config.scenario import Scenario, load_scenario
from orch.config.settings import RunConfig
from orch.errors import ScenarioDefinitionError
from orch.harness.lifecycle import Orchestrator
from orch.logs.correlator import format_report, search_logs

SCENARIO_SUFFIXES = (".json", ".yaml", ".yml")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="orch",
        description="Run a multi-client scenario against brokers and instrumented clients.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a scenario
  orch scenarios/two_players.json

  # Validate only
  orch scenarios/two_players.json --validate

  # Find when a world id showed up across all logs of all runs
  orch --search-logs w-1234 --logs-dir logs

Harness settings can be overridden with ORCH_* environment variables,
e.g. ORCH_STARTUP_TIMEOUT_S=900.
        """
    )

    parser.add_argument(
        "scenario",
        type=Path,
        nargs="?",
        help="Path to scenario JSON/YAML file"
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the scenario without running it"
    )

    parser.add_argument(
        "--mqtt-port",
        type=int,
        default=None,
        help="Override the broker port from the scenario"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output (debug logging, full responses)"
    )

    parser.add_argument(
        "--keep-alive",
        action="store_true",
        help="Keep all processes running after success until Ctrl+C"
    )

    parser.add_argument(
        "--logs-dir",
        type=Path,
        default=None,
        help="Root directory for run logs (default: logs)"
    )

    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="List the scenarios in --scenarios-dir"
    )

    parser.add_argument(
        "--validate-all",
        action="store_true",
        help="Validate every scenario in --scenarios-dir"
    )

    parser.add_argument(
        "--cleanup-invalid",
        action="store_true",
        help="With --validate-all: delete scenario files that fail validation"
    )

    parser.add_argument(
        "--scenarios-dir",
        type=Path,
        default=Path("scenarios"),
        help="Scenario directory (default: scenarios)"
    )

    parser.add_argument(
        "--search-logs",
        nargs="+",
        metavar="QUERY",
        default=None,
        help="Search all logs for the given substrings and correlate them in time"
    )

    parser.add_argument(
        "--window",
        type=float,
        default=5.0,
        help="Correlation window in seconds for --search-logs (default: 5)"
    )

    args = parser.parse_args(argv)

    modes = [args.list_scenarios, args.validate_all, args.search_logs is not None]
    if sum(modes) > 1:
        parser.error("--list-scenarios, --validate-all and --search-logs are exclusive")
    if not any(modes) and args.scenario is None:
        parser.error("a scenario file is required")
    if args.cleanup_invalid and not args.validate_all:
        parser.error("--cleanup-invalid requires --validate-all")
    if args.mqtt_port is not None and not 0 < args.mqtt_port < 65536:
        parser.error(f"--mqtt-port must be in 1..65535, got {args.mqtt_port}")

    return args


def configure_logging(verbose: bool) -> None:
    # Console gets warnings only (status lines are printed); the run log gets INFO
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='[%(name)s] %(levelname)s: %(message)s',
        handlers=[console]
    )
    logging.getLogger("orch").setLevel(logging.DEBUG if verbose else logging.INFO)


def find_scenarios(scenarios_dir: Path) -> List[Path]:
    return sorted(p for p in scenarios_dir.iterdir()
                  if p.is_file() and p.suffix.lower() in SCENARIO_SUFFIXES)


def check_scenario(path: Path) -> Tuple[Optional[Scenario], Optional[str]]:
    """(scenario, None) if valid, (None, reason) otherwise."""
    try:
        return load_scenario(path), None
    except (ScenarioDefinitionError, FileNotFoundError) as e:
        return None, str(e)


def list_scenarios(scenarios_dir: Path) -> int:
    if not scenarios_dir.is_dir():
        print(f"ERROR: Scenario directory not found: {scenarios_dir}", file=sys.stderr)
        return 1

    paths = find_scenarios(scenarios_dir)
    print(f"Scenarios in {scenarios_dir}:")
    if not paths:
        print("  (none)")
    for path in paths:
        scenario, problem = check_scenario(path)
        if scenario is None:
            print(f"  ✗ {path.name}: INVALID ({problem})")
            continue
        print(f"  ✓ {path.name}: {scenario.name}")
        if scenario.description:
            print(f"      {scenario.description}")
        print(f"      Clients: {len(scenario.clients)}, Steps: {len(scenario.steps)}"
              + (", broker" if scenario.infrastructure.broker.required else ""))
    return 0


def validate_all(scenarios_dir: Path, cleanup_invalid: bool = False) -> int:
    """
    Validate every scenario file in a directory.

    Returns:
        0 if all are valid (or the invalid ones were deleted), 1 otherwise
    """
    if not scenarios_dir.is_dir():
        print(f"ERROR: Scenario directory not found: {scenarios_dir}", file=sys.stderr)
        return 1

    invalid = []
    paths = find_scenarios(scenarios_dir)
    for path in paths:
        scenario, problem = check_scenario(path)
        if scenario is None:
            invalid.append(path)
            print(f"  ✗ {path.name}: {problem}")
        else:
            print(f"  ✓ {path.name}")

    print(f"\n{len(paths) - len(invalid)}/{len(paths)} scenario(s) valid")
    if not invalid:
        return 0
    if not cleanup_invalid:
        return 1

    for path in invalid:
        path.unlink()
        print(f"  Deleted {path}")
    return 0


def validate_one(path: Path) -> int:
    scenario, problem = check_scenario(path)
    if scenario is None:
        print("\n✗ Scenario validation FAILED:")
        print(f"  - {problem}")
        return 1

    print("\n✓ Scenario validation PASSED")
    print("\nScenario summary:")
    print(f"  Name: {scenario.name}")
    if scenario.version:
        print(f"  Version: {scenario.version}")
    print(f"  Clients: {', '.join(c.id for c in scenario.clients) or '(none)'}")
    print(f"  Steps: {len(scenario.steps)}")
    broker = scenario.infrastructure.broker
    if broker.required:
        print(f"  Broker port: {broker.port}")
    if scenario.is_indefinite:
        print("  Indefinite: waits for manual exit")
    print("\n(Use without --validate to execute)")
    return 0


def run_search(queries: List[str], logs_dir: Path, window: float) -> int:
    try:
        report = search_logs(logs_dir, queries, window_seconds=window)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print(format_report(report))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        0 on success, 1 on failure
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    if args.list_scenarios:
        return list_scenarios(args.scenarios_dir)
    if args.validate_all:
        return validate_all(args.scenarios_dir, args.cleanup_invalid)
    if args.search_logs is not None:
        return run_search(args.search_logs, args.logs_dir or Path("logs"), args.window)

    if not args.scenario.exists():
        print(f"ERROR: Scenario file not found: {args.scenario}", file=sys.stderr)
        return 1
    if args.validate:
        return validate_one(args.scenario)

    try:
        print(f"Loading scenario from: {args.scenario}")
        scenario = load_scenario(args.scenario)

        overrides = {"verbose": args.verbose, "keep_alive": args.keep_alive}
        if args.logs_dir is not None:
            overrides["logs_dir"] = args.logs_dir
        if args.mqtt_port is not None:
            print(f"Overriding broker port: {scenario.infrastructure.broker.port} → "
                  f"{args.mqtt_port}")
            overrides["broker_port_override"] = args.mqtt_port
        config = RunConfig.from_env(**overrides)

        result = asyncio.run(Orchestrator(scenario, config).run())
        return 0 if result.success else 1

    except ScenarioDefinitionError as e:
        print("\nERROR: Invalid scenario:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except ValueError as e:
        print("\nERROR: Invalid configuration:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
