from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

import yaml
from pydantic import ValidationError as SchemaError

from deployctl.errors import ConfigurationError
from deployctl.logger import get_logger
from deployctl.schemas.services import ServiceDefinition

_logger = get_logger("services.config_provider")


class ConfigurationProvider(Protocol):
    @property
    def environment(self) -> str: ...

    def get_all_services(self) -> Dict[str, ServiceDefinition]: ...

    def get_service_config(self, name: str) -> ServiceDefinition: ...


def parse_services(raw: Mapping[str, Any]) -> Dict[str, ServiceDefinition]:
    """Build ServiceDefinitions from a ``{name: {version, dependencies, config}}`` map."""
    services: Dict[str, ServiceDefinition] = {}
    for name, body in raw.items():
        body = body or {}
        if not isinstance(body, Mapping):
            raise ConfigurationError(f"service {name} must be a mapping")
        dependencies = body.get("dependencies") or []
        if isinstance(dependencies, str):
            dependencies = [dependencies]
        if not isinstance(dependencies, (list, tuple)):
            raise ConfigurationError(f"service {name}: dependencies must be a list")
        config = body.get("config") or {}
        if not isinstance(config, Mapping):
            raise ConfigurationError(f"service {name}: config must be a mapping")
        try:
            service = ServiceDefinition(
                name=str(name),
                version=str(body.get("version", "1.0.0")),
                dependencies=list(dependencies),
                config=dict(config),
                environment=body.get("environment"),
            )
        except SchemaError as exc:
            raise ConfigurationError(f"service {name} is invalid: {exc.errors()[0]['msg']}") from exc
        # Keyed by the normalised name so lookups and dependency edges agree.
        if service.name in services:
            raise ConfigurationError(f"service {service.name} is declared more than once")
        services[service.name] = service
    return services


class StaticConfigurationProvider:
    """In-memory provider; also the base of the YAML provider."""

    def __init__(self, services: Mapping[str, ServiceDefinition], environment: str) -> None:
        self._services = dict(services)
        self._environment = environment

    @property
    def environment(self) -> str:
        return self._environment

    def get_all_services(self) -> Dict[str, ServiceDefinition]:
        return dict(self._services)

    def get_service_config(self, name: str) -> ServiceDefinition:
        service = self._services.get(name)
        if service is None:
            raise ConfigurationError(f"service {name} not found in configuration")
        return service


class YamlConfigurationProvider(StaticConfigurationProvider):
    """Services declared in a YAML file.

    Layout::

        environment: staging        # optional, overrides the default
        services:
          db:
            version: "15.2"
            dependencies: []
            config: {...}
          api:
            dependencies: [db]
    """

    def __init__(self, path: str | Path, environment: str) -> None:
        self.path = Path(path)
        document = self._read()
        declared = document.get("environment")
        if declared is not None and not isinstance(declared, str):
            raise ConfigurationError(f"{self.path}: environment must be a string")
        raw_services = document.get("services") or {}
        if not isinstance(raw_services, Mapping):
            raise ConfigurationError(f"{self.path}: services must be a mapping")
        super().__init__(parse_services(raw_services), declared or environment)
        _logger.info(
            "config.load",
            "Loaded service definitions",
            path=str(self.path),
            services=len(self._services),
            environment=self.environment,
        )

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"cannot read {self.path}: {exc}") from exc
        try:
            document: Optional[Any] = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"cannot parse {self.path}: {exc}") from exc
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigurationError(f"{self.path}: top level must be a mapping")
        return document
