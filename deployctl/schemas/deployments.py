from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

STATE_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    PENDING = "pending"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class DeploymentUpdate(BaseModel):
    status: DeploymentStatus
    environment: str
    version: str
    health: HealthStatus = HealthStatus.UNKNOWN
    metrics: Dict[str, Any] = Field(default_factory=dict)
    configuration: Dict[str, Any] = Field(default_factory=dict)


class DeploymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    service_name: str
    status: DeploymentStatus
    environment: str
    version: str
    health: HealthStatus = HealthStatus.UNKNOWN
    metrics: Dict[str, Any] = Field(default_factory=dict)
    configuration: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    last_health_check: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status == DeploymentStatus.DEPLOYED and self.health == HealthStatus.HEALTHY


class DeploymentState(BaseModel):
    deployments: Dict[str, DeploymentRecord] = Field(default_factory=dict)
    last_update: datetime = Field(default_factory=utcnow)
    version: int = STATE_SCHEMA_VERSION


class HistoricalSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    state: DeploymentState
