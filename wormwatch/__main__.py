"""
Entry point for wormwatch.

Run a simulated network:  python -m wormwatch --topology grid --nodes 36 --wormhole
Run on real interfaces:   python -m wormwatch --serve 10.0.0.1/24
"""

from __future__ import annotations

import argparse
import signal
import sys
from typing import Optional

from .config import (
    CONFIG_FILE,
    RuntimeConfig,
    apply_config_file,
    load_config_file,
    save_default_config,
)
from .exceptions import ConfigError, InterfaceError, ValidationError
from .logging_setup import log, log_error, setup_logging
from .protocol import RoutingProtocol
from .scheduler import EventScheduler
from .simulation import run_scenario
from .stats import StatsCollector, write_report_row
from .transport import InterfaceAddress, UdpTransport, serve


def _setup_signal_handlers() -> None:
    """Turn SIGTERM into KeyboardInterrupt so serve() stops cleanly."""

    def _shutdown_handler(signum: int, frame) -> None:
        log(f"[SHUTDOWN] Received {signal.Signals(signum).name}, stopping...")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, _shutdown_handler)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="wormwatch - on-demand ad-hoc routing with wormhole detection"
    )
    ap.add_argument("--nodes", type=int, help="Number of simulated nodes (default: 36)")
    ap.add_argument(
        "--topology",
        choices=["chain", "grid", "random"],
        help="Simulated topology (default: grid)",
    )
    ap.add_argument(
        "--wormhole",
        action="store_true",
        help="Add a tunnel between the neighborhoods of the first and last node",
    )
    ap.add_argument(
        "--no-detection",
        action="store_true",
        help="Disable the neighbor-list cross-check on route replies",
    )
    ap.add_argument("--duration", type=float, help="Seconds of (virtual) time to run")
    ap.add_argument("--seed", type=int, help="Random seed (default: 1)")
    ap.add_argument(
        "--serve",
        metavar="ADDR/PREFIX",
        help="Run one node on a real interface address instead of simulating",
    )
    ap.add_argument(
        "--print-routes",
        action="store_true",
        help="Print every node's routing table at the end",
    )
    ap.add_argument("--csv", help="Append a result row to this CSV file")
    ap.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable file logging",
    )
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    ap.add_argument(
        "--config",
        help=f"Path to config file (default: {CONFIG_FILE})",
    )
    ap.add_argument(
        "--init-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    return ap


def _apply_args(config: RuntimeConfig, args: argparse.Namespace) -> None:
    """CLI arguments override file configuration."""
    if args.no_log_file:
        config.log_to_file = False
    if args.log_level:
        config.log_level = args.log_level
    if args.nodes is not None:
        config.nodes = args.nodes
    if args.topology:
        config.topology = args.topology
    if args.duration is not None:
        config.duration = args.duration
    if args.seed is not None:
        config.seed = args.seed
    if args.wormhole:
        config.wormhole = True
    if args.no_detection:
        config.protocol.enable_wormhole_detection = False
    if args.csv:
        config.csv_path = args.csv


def run_simulation(config: RuntimeConfig, print_routes: bool = False) -> StatsCollector:
    """Run one simulated scenario and report its statistics."""
    sim, collector = run_scenario(
        topology=config.topology,
        count=config.nodes,
        config=config.protocol,
        seed=config.seed,
        wormhole=config.wormhole,
        duration=config.duration,
    )
    collector.name = (
        f"{sim.topology} n={len(sim.nodes)} seed={config.seed} "
        f"wormhole={'yes' if config.wormhole else 'no'} "
        f"detection={'on' if config.protocol.enable_wormhole_detection else 'off'}"
    )
    print(collector.format_summary())
    delivered = sim.nodes[-1].delivered
    print(f"Probe {sim.nodes[0].address} -> {sim.nodes[-1].address}: "
          f"{'delivered' if delivered else 'not delivered'}")
    if sim.tunnel is not None:
        print(f"Tunnel frames: {sim.tunnel.frames_tunneled}")

    if print_routes:
        for node in sim.nodes:
            print(node.engine.print_routing_table())

    if config.csv_path:
        write_report_row(
            config.csv_path,
            collector,
            seed=config.seed,
            nodes=len(sim.nodes),
            topology=sim.topology,
            wormhole=config.wormhole,
            detection=config.protocol.enable_wormhole_detection,
        )
        log(f"Result appended to {config.csv_path}")
    return collector


def run_server(config: RuntimeConfig, spec: str, duration: Optional[float] = None,
               print_routes: bool = False) -> int:
    """Run a single node on a real interface until interrupted."""
    iface = InterfaceAddress.parse(spec)
    transport = UdpTransport([iface])
    try:
        transport.open()
    except InterfaceError as e:
        log_error(f"Cannot open {spec}: {e}")
        print("\nTry running with sudo or check the interface address.")
        return 1

    stats = StatsCollector(iface.local)
    engine = RoutingProtocol([iface], transport, EventScheduler(), config=config.protocol, stats=stats)
    _setup_signal_handlers()
    log(f"[SERVE] Routing on {iface.local} (broadcast {iface.broadcast})")
    try:
        serve(engine, transport, duration=duration)
    except KeyboardInterrupt:
        pass
    finally:
        transport.close()

    print(stats.format_summary())
    if print_routes:
        print(engine.print_routing_table())
    return 0


def main():
    """Main entry point for wormwatch."""
    ap = _build_parser()
    args = ap.parse_args()

    # Generate default config if requested
    if args.init_config:
        config_path = args.config or CONFIG_FILE
        if save_default_config(config_path):
            print(f"Default configuration saved to: {config_path}")
            sys.exit(0)
        else:
            print(f"Failed to save configuration to: {config_path}")
            sys.exit(1)

    config = RuntimeConfig(log_to_file=not args.no_log_file)
    try:
        apply_config_file(config, load_config_file(args.config))
        _apply_args(config, args)
        config.protocol.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(log_to_file=config.log_to_file, log_level=config.log_level)

    try:
        if args.serve:
            sys.exit(run_server(config, args.serve, args.duration, args.print_routes))
        run_simulation(config, print_routes=args.print_routes)
    except ValidationError as e:
        log_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
