from deployctl.models.base import Base
from deployctl.models.deployment import Deployment, DeploymentStateMeta
from deployctl.models.snapshot import DeploymentSnapshot

__all__ = [
    "Base",
    "Deployment",
    "DeploymentSnapshot",
    "DeploymentStateMeta",
]
