from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from deployctl.models.base import Base


class DeploymentSnapshot(Base):
    __tablename__ = "deployment_snapshots"
    __table_args__ = (Index("ix_deployment_snapshots_created_at", "created_at"),)

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    state: Mapped[Dict[str, Any]] = mapped_column(JSON)
