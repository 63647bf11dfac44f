from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from deployctl.errors import StoreIOError
from deployctl.logger import get_logger
from deployctl.schemas.deployments import DeploymentState, HistoricalSnapshot

_logger = get_logger("services.file_backend")

_CURRENT_FILE = "current.json"
_HISTORY_DIR = "history"
_ID_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class FileStateBackend:
    """JSON documents on disk.

    ``<root>/current.json`` holds the current state; every snapshot is a
    separate ``<root>/history/<snapshot-id>.json`` that is never rewritten.
    Snapshot ids start with a UTC timestamp so file-name order is creation
    order.
    """

    name = "file"

    def __init__(self, state_dir: str | Path) -> None:
        self.root = Path(state_dir)
        self.current_path = self.root / _CURRENT_FILE
        self.history_dir = self.root / _HISTORY_DIR

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreIOError("read", f"{path}: {exc}") from exc

    def _write_atomic(self, path: Path, payload: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StoreIOError("write", f"{path}: {exc}") from exc

    def _load_snapshot(self, path: Path) -> HistoricalSnapshot:
        try:
            return HistoricalSnapshot.model_validate_json(self._read(path))
        except SchemaError as exc:
            raise StoreIOError("decode", f"{path}: {exc.error_count()} invalid fields") from exc

    def _snapshot_paths(self) -> list[Path]:
        if not self.history_dir.is_dir():
            return []
        return sorted(self.history_dir.glob("*.json"), key=lambda item: item.name, reverse=True)

    async def load_current(self) -> Optional[DeploymentState]:
        if not self.current_path.exists():
            return None
        try:
            return DeploymentState.model_validate_json(self._read(self.current_path))
        except SchemaError as exc:
            raise StoreIOError(
                "decode",
                f"{self.current_path}: {exc.error_count()} invalid fields",
            ) from exc

    async def save_current(self, state: DeploymentState) -> None:
        self._write_atomic(self.current_path, state.model_dump_json(indent=2))

    async def append_snapshot(self, snapshot: HistoricalSnapshot) -> None:
        path = self.history_dir / f"{snapshot.id}.json"
        if path.exists():
            raise StoreIOError("append", f"snapshot {snapshot.id} already exists")
        self._write_atomic(path, snapshot.model_dump_json(indent=2))

    async def iter_snapshots(self) -> AsyncIterator[HistoricalSnapshot]:
        for path in self._snapshot_paths():
            yield self._load_snapshot(path)

    def _snapshot_created_at(self, path: Path) -> Optional[datetime]:
        stamp = path.stem.split("-", 1)[0]
        try:
            return datetime.strptime(stamp, _ID_STAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            pass
        # Not a generated id; fall back to the document itself.
        try:
            return self._load_snapshot(path).created_at
        except StoreIOError as exc:
            _logger.warning("history.skip", "Unreadable snapshot left in place", path=str(path), error=str(exc))
            return None

    async def delete_snapshots_before(self, cutoff: datetime) -> int:
        deleted = 0
        for path in self._snapshot_paths():
            created_at = self._snapshot_created_at(path)
            if created_at is None or created_at >= cutoff:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StoreIOError("delete", f"{path}: {exc}") from exc
            deleted += 1
        if deleted:
            _logger.info("history.prune", "Deleted snapshot files", deleted=deleted, root=str(self.root))
        return deleted
