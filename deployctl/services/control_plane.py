from __future__ import annotations

import asyncio
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from deployctl.errors import ControlPlaneError
from deployctl.logger import get_logger
from deployctl.metrics import record_control_plane_operation
from deployctl.schemas.services import ServiceDefinition

_logger = get_logger("services.control_plane")

_ACTIONS = ("deploy", "stop", "remove", "health")


class ServiceControlPlane(Protocol):
    async def deploy(self, name: str, config: ServiceDefinition) -> bool: ...

    async def stop_service(self, name: str) -> None: ...

    async def remove_service(self, name: str) -> None: ...

    async def is_service_healthy(self, name: str) -> bool: ...


@dataclass(frozen=True)
class CommandResult:
    code: int
    stdout: str
    stderr: str


def _run_command(args: Sequence[str], timeout_seconds: int) -> CommandResult:
    try:
        proc = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        return CommandResult(code=127, stdout="", stderr=str(exc))
    except subprocess.TimeoutExpired:
        return CommandResult(code=124, stdout="", stderr=f"timed out after {timeout_seconds}s")
    return CommandResult(
        code=proc.returncode,
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
    )


def build_command(template: Any, service: ServiceDefinition) -> list[str]:
    """Turn a command template (string or argv list) into argv for one service.

    ``{name}`` and ``{version}`` are substituted in every argument.
    """
    if isinstance(template, str):
        parts = shlex.split(template)
    elif isinstance(template, (list, tuple)):
        parts = [str(item) for item in template]
    else:
        raise ValueError(f"command must be a string or a list, got {type(template).__name__}")
    if not parts:
        raise ValueError("command must not be empty")
    return [part.format(name=service.name, version=service.version) for part in parts]


class CommandControlPlane:
    """Runs the per-service shell commands declared under ``config.commands``.

    A zero exit code is success. A service without a ``deploy`` command cannot
    be deployed; missing ``stop``/``remove`` commands are no-ops and a missing
    ``health`` command reports healthy.
    """

    def __init__(self, services: Mapping[str, ServiceDefinition], *, timeout_seconds: int = 300) -> None:
        self._services = dict(services)
        self._timeout_seconds = timeout_seconds

    def _commands(self, service: ServiceDefinition) -> Mapping[str, Any]:
        commands = service.config.get("commands") or {}
        if not isinstance(commands, Mapping):
            raise ControlPlaneError("config", service.name, "commands must be a mapping")
        unknown = sorted(set(commands) - set(_ACTIONS))
        if unknown:
            _logger.warning(
                "command.unknown",
                "Ignoring unknown command keys",
                service=service.name,
                keys=",".join(unknown),
            )
        return commands

    def _service(self, name: str) -> ServiceDefinition:
        service = self._services.get(name)
        if service is None:
            raise ControlPlaneError("lookup", name, "service is not known to the control plane")
        return service

    async def _run(self, action: str, service: ServiceDefinition) -> CommandResult | None:
        template = self._commands(service).get(action)
        if template is None:
            return None
        try:
            argv = build_command(template, service)
        except (ValueError, KeyError, IndexError) as exc:
            raise ControlPlaneError(action, service.name, f"invalid command: {exc}") from exc

        result = await asyncio.to_thread(_run_command, argv, self._timeout_seconds)
        ok = result.code == 0
        record_control_plane_operation(action=action, ok=ok)
        if ok:
            _logger.debug(
                "command.ok",
                "Control plane command succeeded",
                action=action,
                service=service.name,
                args=" ".join(argv),
            )
        else:
            _logger.warning(
                "command.fail",
                "Control plane command failed",
                action=action,
                service=service.name,
                args=" ".join(argv),
                exit_code=result.code,
                stderr=result.stderr,
                stdout=result.stdout,
            )
        return result

    async def deploy(self, name: str, config: ServiceDefinition) -> bool:
        self._services[name] = config
        result = await self._run("deploy", config)
        if result is None:
            _logger.error("command.missing", "Service has no deploy command", service=name)
            return False
        return result.code == 0

    async def stop_service(self, name: str) -> None:
        result = await self._run("stop", self._service(name))
        if result is not None and result.code != 0:
            raise ControlPlaneError("stop", name, result.stderr or result.stdout or f"exit_{result.code}")

    async def remove_service(self, name: str) -> None:
        result = await self._run("remove", self._service(name))
        if result is not None and result.code != 0:
            raise ControlPlaneError("remove", name, result.stderr or result.stdout or f"exit_{result.code}")

    async def is_service_healthy(self, name: str) -> bool:
        result = await self._run("health", self._service(name))
        return result is None or result.code == 0
