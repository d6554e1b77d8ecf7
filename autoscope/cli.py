"""CLI entrypoints for autoscope commands."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from . import __version__
from .config import load_config
from .errors import AutoscopeError
from .logging import configure_logging
from .orchestrator import Orchestrator


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _add_listen_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--listen-address",
        default=None,
        help="host:port of the explorer (defaults to 127.0.0.1:6789).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoscope",
        description="Discover autometrics-instrumented functions and explore their metrics locally.",
    )
    parser.add_argument("--version", action="version", version=f"autoscope {__version__}")
    _add_verbose_option(parser)
    parser.add_argument(
        "--config",
        default=".",
        help="Path to autoscope.yml or the directory holding it (defaults to current directory).",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser(
        "list",
        help="List instrumented functions found in a source tree.",
    )
    _add_verbose_option(list_parser, suppress_default=True)
    list_parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Path to the source tree (defaults to the configured source_dir or the config directory).",
    )
    list_parser.add_argument("--json", action="store_true", help="Print the registry as JSON.")

    start_parser = subparsers.add_parser(
        "start",
        help="Scan, start Prometheus and serve the explorer.",
    )
    _add_verbose_option(start_parser, suppress_default=True)
    _add_listen_option(start_parser)
    start_parser.add_argument(
        "endpoints",
        nargs="*",
        help="Metrics endpoints of the instrumented application, e.g. localhost:3000/metrics.",
    )
    start_parser.add_argument("--path", default=None, help="Path to the source tree to scan.")
    start_parser.add_argument(
        "--rescan-interval",
        type=float,
        default=0.0,
        help="Rescan the source tree every N seconds and reload Prometheus on change.",
    )
    start_parser.add_argument("--open", action="store_true", help="Open the explorer in a browser.")

    proxy_parser = subparsers.add_parser(
        "proxy",
        help="Serve the explorer against an existing Prometheus instead of a managed one.",
    )
    _add_verbose_option(proxy_parser, suppress_default=True)
    _add_listen_option(proxy_parser)
    proxy_parser.add_argument("prometheus_url", help="Base URL of the Prometheus to proxy, e.g. http://localhost:9090.")
    proxy_parser.add_argument("--path", default=None, help="Path to the source tree to scan.")
    proxy_parser.add_argument("--open", action="store_true", help="Open the explorer in a browser.")

    system_parser = subparsers.add_parser("system", help="Manage installed artifacts.")
    _add_verbose_option(system_parser, suppress_default=True)
    system_commands = system_parser.add_subparsers(dest="system_command", required=True)
    prune_parser = system_commands.add_parser(
        "prune",
        help="Delete old Prometheus and autoscope installs.",
    )
    _add_verbose_option(prune_parser, suppress_default=True)
    prune_parser.add_argument(
        "--keep",
        type=int,
        default=None,
        help="Number of versions to keep per artifact (defaults to engine.keep_versions).",
    )
    prune_parser.add_argument("--all", action="store_true", help="Delete every install, including active ones.")

    update_parser = subparsers.add_parser("update", help="Update autoscope to the newest release.")
    _add_verbose_option(update_parser, suppress_default=True)
    update_parser.add_argument("--check", action="store_true", help="Only report whether an update exists.")

    explore_parser = subparsers.add_parser(
        "explore",
        help="Open the explorer of a running `autoscope start` session.",
    )
    _add_verbose_option(explore_parser, suppress_default=True)
    _add_listen_option(explore_parser)
    explore_parser.add_argument("--no-open", action="store_true", help="Print the URL without opening a browser.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for autoscope commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    try:
        orchestrator = Orchestrator(load_config(Path(args.config)))
        if args.command == "list":
            _run_list(orchestrator, args.path, as_json=bool(args.json))
        elif args.command == "start":
            orchestrator.run_start(
                args.path,
                endpoints=args.endpoints,
                listen_address=args.listen_address,
                rescan_interval=args.rescan_interval,
                open_browser=True if args.open else None,
            )
        elif args.command == "proxy":
            orchestrator.run_proxy(
                args.prometheus_url,
                args.path,
                listen_address=args.listen_address,
                open_browser=True if args.open else None,
            )
        elif args.command == "system":
            removed = orchestrator.run_prune(keep=args.keep, remove_all=bool(args.all))
            for kind, installs in removed.items():
                for install in installs:
                    print(f"Removed {kind} {install.version} ({install.path})")
            if not any(removed.values()):
                print("Nothing to prune")
        elif args.command == "update":
            outcome = orchestrator.run_update(check_only=bool(args.check))
            if outcome.status == "up-to-date":
                print(f"autoscope {outcome.current_version} is up to date")
            elif outcome.status == "available":
                print(f"autoscope {outcome.target_version} is available (running {outcome.current_version})")
            elif outcome.ok:
                print(f"Updated to autoscope {outcome.target_version}. {outcome.message}")
            else:
                parser.exit(
                    1,
                    f"Update to {outcome.target_version} failed and was rolled back: {outcome.message}\n",
                )
        elif args.command == "explore":
            url = orchestrator.run_explore(args.listen_address, open_browser=not args.no_open)
            print(url)
        else:  # pragma: no cover - argparse enforces choices
            parser.exit(1, "Unknown command\n")
    except (AutoscopeError, OSError, ValueError) as exc:
        parser.exit(1, f"autoscope {args.command} failed: {exc}\nRun with --verbose for more details.\n")
    except KeyboardInterrupt:  # pragma: no cover - interactive path
        parser.exit(130, "Interrupted\n")


def _run_list(orchestrator: Orchestrator, path: str | None, *, as_json: bool) -> None:
    result = orchestrator.run_list(path)
    if as_json:
        sys.stdout.write(result.registry.to_json())
    else:
        for function in result.registry:
            print(f"{function.qualified_name}\t{function.file}:{function.line_start}")
        print(f"{len(result.registry)} instrumented function(s) in {result.files_scanned} file(s)")
    for diagnostic in result.diagnostics:
        print(str(diagnostic), file=sys.stderr)


if __name__ == "__main__":
    main(sys.argv[1:])
