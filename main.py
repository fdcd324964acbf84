"""Command-line interface for the Server Panel provisioner."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


_bootstrap_virtualenv()

try:
    from panel.components.base import StepResult, describe
    from panel.config import PanelSettings, load_settings, parse_component_list, resolve_config_path
    from panel.database import Database
    from panel.installer import Installer, ProvisioningError
    from panel.logging_setup import setup_logging
    from panel.shell import CommandError
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The panel dependencies are missing. Execute `pip install -e .` in the project directory."
    ) from exc

logger = logging.getLogger("serverpanel.main")

KNOWN_COMMANDS = {
    "install",
    "start",
    "stop",
    "status",
    "component",
    "deploy",
    "rollback",
    "serve-api",
    "serve-dashboard",
    "init-db",
}
# Commands that change the host and therefore log to <log_dir>/install.log.
_PROVISIONING_COMMANDS = {"install", "start", "stop", "component", "deploy", "rollback"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Path to the YAML configuration file")
    common.add_argument(
        "--components",
        default=None,
        help="Comma separated components to install (overrides PANEL_COMPONENTS)",
    )
    common.add_argument("--dry-run", action="store_true", help="Log commands instead of running them")
    common.add_argument(
        "--no-rollback",
        action="store_true",
        help="Keep the changes of a failed run instead of rolling them back",
    )
    common.add_argument(
        "--interactive",
        action="store_true",
        help="Ask which components to install instead of using the configured list",
    )
    common.add_argument("--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(description="Server Panel provisioning utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="install")

    install_parser = subparsers.add_parser("install", parents=[common], help="Provision this host")
    install_parser.add_argument("domain", nargs="?", default=None, help="Domain of the panel (default: public IP)")
    install_parser.add_argument("email", nargs="?", default=None, help="Administrator email address")

    subparsers.add_parser("start", parents=[common], help="Start the supervised services")
    subparsers.add_parser("stop", parents=[common], help="Stop the supervised services")
    subparsers.add_parser("status", parents=[common], help="Show the status of every component")

    component_parser = subparsers.add_parser(
        "component", parents=[common], help="Run an action of a single component"
    )
    component_parser.add_argument("name", help="Component name, for example nginx or mysql")
    component_parser.add_argument("action", help="Action such as install, status or add-proxy")
    component_parser.add_argument("args", nargs="*", help="Positional arguments for the action")

    deploy_parser = subparsers.add_parser("deploy", parents=[common], help="Deploy an application")
    deploy_parser.add_argument("app_type", help="wordpress, php, nodejs, python or static")
    deploy_parser.add_argument("name", help="Application name")
    deploy_parser.add_argument("domain", help="Domain routed to the application")
    deploy_parser.add_argument("--variant", default="", help="Framework variant (default: first supported)")
    deploy_parser.add_argument("--version", default="", help="Runtime version (default: runtime default)")
    deploy_parser.add_argument("--user", default="admin", help="Owning panel user (default: admin)")
    deploy_parser.add_argument("--no-tls", action="store_true", help="Do not request a certificate")

    rollback_parser = subparsers.add_parser("rollback", parents=[common], help="Undo a recorded provisioning run")
    rollback_parser.add_argument("run_id", nargs="?", default=None, help="Run id (default: latest run)")

    api_parser = subparsers.add_parser("serve-api", parents=[common], help="Start the panel API")
    api_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    api_parser.add_argument("--port", type=int, default=3001, help="Port for the API (default: 3001)")

    dashboard_parser = subparsers.add_parser("serve-dashboard", parents=[common], help="Start the dashboard")
    dashboard_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the dashboard")
    dashboard_parser.add_argument("--port", type=int, default=3000, help="Port for the dashboard (default: 3000)")
    dashboard_parser.add_argument(
        "--api-port",
        type=int,
        default=3001,
        help="Port of the API linked from the dashboard (default: 3001)",
    )

    subparsers.add_parser("init-db", parents=[common], help="Initialise the panel database")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["install"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            args_list = ["install", *args_list]

    return parser.parse_args(args_list)


def _load_settings(args: argparse.Namespace) -> PanelSettings:
    config_path = Path(args.config).expanduser() if args.config else resolve_config_path(os.getenv("PANEL_CONFIG"))
    settings = load_settings(config_path)
    return settings.with_overrides(
        components=parse_component_list(args.components) if args.components else None,
        dry_run=True if args.dry_run else None,
        rollback_on_failure=False if args.no_rollback else None,
        auto_install=False if args.interactive else None,
    )


def _print_result(result: StepResult) -> None:
    print(result.message or ("changed" if result.changed else "ok"))
    if result.details:
        print(json.dumps(dict(result.details), indent=2, sort_keys=True, default=str))


def _print_results(results: Dict[str, StepResult]) -> None:
    if results:
        print(describe(results))
    else:
        print("Nothing to do.")


def _serve_api(settings: PanelSettings, *, host: str, port: int) -> None:
    from panel.service import create_api_app
    import uvicorn

    database = Database(settings.resolved_database_path)
    logger.info("Starting panel API on http://%s:%s", host, port)
    uvicorn.run(create_api_app(database=database), host=host, port=port, log_level="info")


def _serve_dashboard(*, host: str, port: int, api_port: int) -> None:
    from panel.service import create_dashboard_app
    import uvicorn

    logger.info("Starting panel dashboard on http://%s:%s", host, port)
    uvicorn.run(create_dashboard_app(api_port=api_port), host=host, port=port, log_level="info")


def _dispatch(args: argparse.Namespace, settings: PanelSettings) -> int:
    command = args.command

    if command == "serve-api":
        _serve_api(settings, host=args.host, port=args.port)
        return 0
    if command == "serve-dashboard":
        _serve_dashboard(host=args.host, port=args.port, api_port=args.api_port)
        return 0
    if command == "init-db":
        database = Database(settings.resolved_database_path)
        database.initialize()
        print(f"Database initialisation complete: {database.path}")
        return 0

    installer = Installer(settings)
    if command == "install":
        results = installer.install(args.domain, args.email)
        _print_results(results)
        print()
        print(installer.summary(results))
    elif command == "start":
        _print_results(installer.start())
    elif command == "stop":
        _print_results(installer.stop())
    elif command == "status":
        _print_results(installer.status())
    elif command == "component":
        _print_result(installer.run_component(args.name, args.action, *args.args))
    elif command == "deploy":
        result = installer.deploy(
            args.app_type,
            args.name,
            args.domain,
            variant=args.variant,
            version=args.version,
            user=args.user,
            tls=not args.no_tls,
        )
        _print_result(result)
    elif command == "rollback":
        undone = installer.rollback(args.run_id)
        for description in undone:
            print(f"Reverted: {description}")
        print(f"{len(undone)} change(s) rolled back.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    try:
        settings = _load_settings(args)
    except ValueError as exc:
        setup_logging(level=level)
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    log_dir = settings.log_dir if args.command in _PROVISIONING_COMMANDS and not settings.dry_run else None
    setup_logging(log_dir, level=level)

    try:
        return _dispatch(args, settings)
    except ProvisioningError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_status
    except CommandError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_status or 1
    except (ValueError, RuntimeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
