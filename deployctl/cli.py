from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Dict

from deployctl.config import Settings, get_settings
from deployctl.db import get_engine
from deployctl.logger import configure_logging, get_logger
from deployctl.metrics import write_metrics_textfile
from deployctl.services.config_provider import YamlConfigurationProvider
from deployctl.services.control_plane import CommandControlPlane
from deployctl.services.locking import run_lock
from deployctl.services.monitor import HealthMonitor
from deployctl.services.orchestrator import DeploymentOrchestrator
from deployctl.services.resolver import resolve_order
from deployctl.services.sql_backend import create_schema
from deployctl.services.state_store import DeploymentStateStore, get_state_backend

_logger = get_logger("cli")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {}
    if args.services_file:
        overrides["services_file"] = args.services_file
    if args.env:
        overrides["app_env"] = args.env
    settings = get_settings()
    return settings.model_copy(update=overrides) if overrides else settings


def _provider(settings: Settings) -> YamlConfigurationProvider:
    return YamlConfigurationProvider(settings.services_file, settings.app_env)


def _store(settings: Settings, provider: YamlConfigurationProvider) -> DeploymentStateStore:
    return DeploymentStateStore(
        get_state_backend(settings),
        environment=provider.environment,
        config_provider=provider,
    )


async def _deploy(args: argparse.Namespace, settings: Settings) -> int:
    provider = _provider(settings)
    control_plane = CommandControlPlane(
        provider.get_all_services(),
        timeout_seconds=settings.command_timeout_seconds,
    )
    store = _store(settings, provider)
    monitor = HealthMonitor(
        store=store,
        control_plane=control_plane,
        interval_seconds=settings.monitor_interval_seconds,
    )
    stop = asyncio.Event()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, stop.set)
    except NotImplementedError:
        pass

    orchestrator = DeploymentOrchestrator(
        config_provider=provider,
        control_plane=control_plane,
        store=store,
        monitor=monitor,
        health_check_attempts=settings.health_check_max_attempts,
        health_check_interval=settings.health_check_interval_seconds,
        health_check_timeout=settings.health_check_timeout_seconds,
        stop_event=stop,
    )
    try:
        run = await orchestrator.run()
        _print_json(run.as_dict())
        if run.ok and args.watch:
            _logger.info("cli.watch", "Watching service health; send SIGTERM or Ctrl-C to stop")
            await stop.wait()
    finally:
        await monitor.stop()
        if settings.metrics_textfile:
            write_metrics_textfile(settings.metrics_textfile)
    return 0 if run.ok else 1


def cmd_deploy(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    with run_lock(settings.lock_file):
        return asyncio.run(_deploy(args, settings))


def cmd_plan(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    provider = _provider(settings)
    services = provider.get_all_services()
    order = resolve_order(services)
    _print_json(
        {
            "environment": provider.environment,
            "order": [
                {"service": name, "version": services[name].version, "dependencies": services[name].dependencies}
                for name in order
            ],
        }
    )
    return 0


async def _status(args: argparse.Namespace, settings: Settings) -> int:
    store = _store(settings, _provider(settings))
    if args.service:
        record = await store.get_deployment_status(args.service)
        if record is None:
            raise RuntimeError(f"no deployment record for {args.service}")
        _print_json(record.model_dump(mode="json"))
        return 0
    state = await store.get_state()
    _print_json(state.model_dump(mode="json"))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    return asyncio.run(_status(args, _settings_from_args(args)))


async def _history(args: argparse.Namespace, settings: Settings) -> int:
    store = _store(settings, _provider(settings))
    records = await store.get_deployment_history(args.service, args.limit)
    _print_json([record.model_dump(mode="json") for record in records])
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    return asyncio.run(_history(args, _settings_from_args(args)))


async def _validate(args: argparse.Namespace, settings: Settings) -> int:
    store = _store(settings, _provider(settings))
    valid = await store.validate_deployment(args.service)
    _print_json({"service": args.service, "valid": valid})
    return 0 if valid else 1


def cmd_validate(args: argparse.Namespace) -> int:
    return asyncio.run(_validate(args, _settings_from_args(args)))


async def _cleanup(args: argparse.Namespace, settings: Settings) -> int:
    store = _store(settings, _provider(settings))
    days = args.days if args.days is not None else settings.history_retention_days
    deleted = await store.cleanup_old_history(days)
    _print_json({"days_to_keep": days, "deleted": deleted})
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    with run_lock(settings.lock_file):
        return asyncio.run(_cleanup(args, settings))


def cmd_init_db(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if settings.state_backend != "sql":
        raise RuntimeError("init-db requires STATE_BACKEND=sql")
    asyncio.run(create_schema(get_engine(settings.database_url)))
    _print_json({"database": settings.database_url.split("://", maxsplit=1)[0], "ok": True})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deployctl", description="Dependency-ordered service deployments")
    parser.add_argument("--services-file", help="YAML file declaring services (default: SERVICES_FILE)")
    parser.add_argument("--env", help="Deployment environment (default: APP_ENV)")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Deploy all services in dependency order")
    deploy.add_argument("--watch", action="store_true", help="Keep monitoring health after a successful run")
    deploy.set_defaults(func=cmd_deploy)

    plan = sub.add_parser("plan", help="Print the resolved deployment order")
    plan.set_defaults(func=cmd_plan)

    status = sub.add_parser("status", help="Show current deployment state")
    status.add_argument("service", nargs="?")
    status.set_defaults(func=cmd_status)

    history = sub.add_parser("history", help="Show recorded history for a service")
    history.add_argument("service")
    history.add_argument("--limit", type=int, default=10)
    history.set_defaults(func=cmd_history)

    validate = sub.add_parser("validate", help="Validate the stored record of a service")
    validate.add_argument("service")
    validate.set_defaults(func=cmd_validate)

    cleanup = sub.add_parser("cleanup", help="Delete history snapshots past the retention window")
    cleanup.add_argument("--days", type=int)
    cleanup.set_defaults(func=cmd_cleanup)

    init_db = sub.add_parser("init-db", help="Create deployment tables for the SQL backend")
    init_db.set_defaults(func=cmd_init_db)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file, settings.log_format)
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
