"""
Persistent key/value namespaces backing the CacheService.

StateNamespace is the seam: the cache only needs load() and
update_batch(). JsonFileNamespace is the on-disk implementation used by
the CLI; tests substitute in-memory fakes.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from localpilot.config import get_state_dir

logger = logging.getLogger(__name__)


@runtime_checkable
class StateNamespace(Protocol):
    """One flat key/value namespace."""

    async def load(self) -> dict[str, Any]:
        """Return every stored key."""
        ...

    async def update_batch(self, items: dict[str, Any]) -> None:
        """
        Store every item in one write.

        A value of None deletes the key.
        """
        ...


class JsonFileNamespace:
    """
    A namespace stored as one JSON object file.

    Writes go to a temp file that replaces the target, so a crash mid-write
    leaves the previous contents intact. Private namespaces are created
    with 0o600 permissions.
    """

    def __init__(self, path: Path, private: bool = False):
        self.path = Path(path)
        self.private = private
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"State file {self.path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        if self.private:
            os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def _apply(self, items: dict[str, Any]) -> None:
        data = self._read()
        for key, value in items.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._write(data)

    async def load(self) -> dict[str, Any]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def update_batch(self, items: dict[str, Any]) -> None:
        if not items:
            return
        async with self._lock:
            await asyncio.to_thread(self._apply, items)
        logger.debug(f"Persisted {len(items)} key(s) to {self.path.name}")


class StateStorage:
    """The three namespaces the cache persists to."""

    def __init__(
        self,
        global_state: StateNamespace,
        secrets: StateNamespace,
        workspace_state: StateNamespace,
    ):
        self.global_state = global_state
        self.secrets = secrets
        self.workspace_state = workspace_state

    @classmethod
    def open(cls, directory: Optional[Path] = None) -> "StateStorage":
        """
        File-backed storage under `directory` (default: LOCALPILOT_STATE_DIR).

        Workspace state is kept per working directory name.
        """
        directory = Path(directory) if directory else get_state_dir()
        workspace = Path.cwd().name or "default"
        return cls(
            global_state=JsonFileNamespace(directory / "global_state.json"),
            secrets=JsonFileNamespace(directory / "secrets.json", private=True),
            workspace_state=JsonFileNamespace(directory / "workspaces" / f"{workspace}.json"),
        )
