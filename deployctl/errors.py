from __future__ import annotations

from typing import Sequence


class DeploymentError(RuntimeError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class ConfigurationError(DeploymentError):
    def __init__(self, detail: str) -> None:
        super().__init__("config", detail)


class CircularDependencyError(DeploymentError):
    def __init__(self, service: str, cycle: Sequence[str] = ()) -> None:
        self.service = service
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle) if self.cycle else service
        super().__init__("dependency.resolve", f"circular dependency detected for service {service} ({path})")


class ServiceDeployError(DeploymentError):
    def __init__(self, service: str, detail: str) -> None:
        self.service = service
        super().__init__("service.deploy", f"{service}: {detail}")


class HealthCheckTimeoutError(DeploymentError):
    def __init__(self, service: str, attempts: int) -> None:
        self.service = service
        self.attempts = attempts
        super().__init__(
            "service.health",
            f"{service} did not report healthy after {attempts} attempts",
        )


class DeploymentCancelledError(DeploymentError):
    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__("service.health", f"{service}: health check cancelled")


class ValidationError(DeploymentError):
    def __init__(self, service: str, reasons: Sequence[str]) -> None:
        self.service = service
        self.reasons = list(reasons)
        super().__init__("deployment.validate", f"{service} failed validation: {'; '.join(self.reasons)}")


class StoreIOError(DeploymentError):
    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        super().__init__(f"store.{operation}", detail)


class DeploymentLockedError(DeploymentError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__("run.lock", f"another deployment run holds {path}")


class ControlPlaneError(DeploymentError):
    def __init__(self, action: str, service: str, detail: str) -> None:
        self.service = service
        super().__init__(f"control_plane.{action}", f"{service}: {detail}")
