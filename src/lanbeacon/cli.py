"""CLI entry point for Lanbeacon."""

import argparse
import json
import sys

from .config import BeaconConfig, apply_env, config_to_yaml, load_config, merge_cli_args
from .registry import BeaconClient, NetworkRegistry, start_registry_server
from .sweeper import start_sweeper


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    """Add the server config flags."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Address to listen on (default: :: for IPv4 and IPv6)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 80)")
    parser.add_argument(
        "--use-forwarded-for", action="store_true", dest="use_forwarded_for",
        default=None,
        help="Derive network keys from X-Forwarded-For (only behind a trusted proxy)",
    )
    parser.add_argument(
        "--lifetime", type=int,
        help="Seconds an announcement stays listed (default: 3600)",
    )
    parser.add_argument(
        "--sweep-interval", type=int, dest="sweep_interval",
        help="Seconds between expiry sweeps (default: 60)",
    )


def _build_config(args) -> BeaconConfig:
    """Build a BeaconConfig from defaults, config file, environment and CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = BeaconConfig()
    apply_env(config)
    merge_cli_args(config, args)
    return config


def _load_or_exit(args) -> BeaconConfig:
    try:
        return _build_config(args)
    except (OSError, ValueError, TypeError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args) -> None:
    """Run the registry HTTP server and the expiry sweeper until interrupted."""
    config = _load_or_exit(args)
    registry = NetworkRegistry()

    try:
        sweeper, stop_sweeper = start_sweeper(
            registry, lifetime=config.lifetime, interval=config.sweep_interval,
        )
    except (ValueError, TypeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        server = start_registry_server(
            registry,
            host=config.host,
            port=config.port,
            use_forwarded_for=config.use_forwarded_for,
        )
    except OSError as exc:
        print(f"Error: cannot listen on {config.host}:{config.port}: {exc}", file=sys.stderr)
        sys.exit(1)

    host, port = server.server_address[:2]
    if ":" in host:
        host = f"[{host}]"
    print(
        f"[server] listening on http://{host}:{port}"
        f" (proxy support: {config.use_forwarded_for},"
        f" lifetime: {config.lifetime}s, sweep: {config.sweep_interval}s)",
        file=sys.stderr,
    )
    try:
        sweeper.join()
    except KeyboardInterrupt:
        print("[server] shutting down", file=sys.stderr)
    finally:
        stop_sweeper.set()
        server.shutdown()
        server.server_close()


def cmd_announce(args) -> None:
    client = BeaconClient(args.server)
    if not client.announce(args.name, args.url):
        print(f"Error: announce to {args.server} failed.", file=sys.stderr)
        sys.exit(1)
    print(f"Announced {args.name} -> {args.url}")


def _format_instances(instances: list[dict], fmt: str) -> str:
    if fmt == "json":
        return json.dumps(instances, indent=2)
    lines = [f"{i.get('name', '')}  {i.get('url', '')}" for i in instances]
    return "\n".join(lines) if lines else "(no instances)"


def cmd_list(args) -> None:
    client = BeaconClient(args.server)
    print(_format_instances(client.list_instances(), args.format))


def cmd_config(args) -> None:
    """Print the effective configuration."""
    print(config_to_yaml(_load_or_exit(args)), end="")


def _add_client_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--server", type=str, default="http://localhost:80",
        help="Base URL of the registry server (default: http://localhost:80)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lanbeacon",
        description="Lanbeacon: network-scoped service discovery",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the registry server")
    _add_config_args(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # announce
    announce_parser = subparsers.add_parser(
        "announce", help="Announce an endpoint to a registry server",
    )
    _add_client_args(announce_parser)
    announce_parser.add_argument("--name", type=str, required=True, help="Instance label")
    announce_parser.add_argument("--url", type=str, required=True, help="Instance endpoint URL")
    announce_parser.set_defaults(func=cmd_announce)

    # list
    list_parser = subparsers.add_parser(
        "list", help="List endpoints announced from this network",
    )
    _add_client_args(list_parser)
    list_parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    list_parser.set_defaults(func=cmd_list)

    # config
    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    _add_config_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)
