"""
CacheService - in-memory state with debounced background persistence.

Reads are synchronous and served from memory. Writes land in memory
immediately, mark their key dirty, and re-arm a single debounce timer.
When the timer fires, every dirty key in all three namespaces is
persisted concurrently in one pass.

The dirty sets are swapped out when a flush starts. Keys written while the
flush is in flight go into the fresh sets and are picked up by the next
timer; keys from a failed flush are merged back so nothing is lost.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from localpilot.config import PERSISTENCE_DELAY_SECONDS, ApiConfiguration
from localpilot.storage.backend import StateStorage
from localpilot.storage.state_keys import (
    API_CONFIGURATION_KEYS,
    GLOBAL_STATE_KEYS,
    LOCAL_STATE_KEYS,
    SECRET_KEYS,
    read_state_from_storage,
)

logger = logging.getLogger(__name__)


class CacheNotInitializedError(RuntimeError):
    """Raised when the cache is used before initialize() has completed."""

    def __init__(self):
        super().__init__("CacheService not initialized. Call initialize() first.")


class PersistenceErrorEvent(BaseModel):
    """Passed to on_persistence_error when a flush fails."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: BaseException


PersistenceErrorObserver = Callable[[PersistenceErrorEvent], None]


def _check_keys(keys, allowed: frozenset[str], namespace: str) -> None:
    unknown = [k for k in keys if k not in allowed]
    if unknown:
        raise KeyError(f"Unknown {namespace} key(s): {', '.join(sorted(unknown))}")


class CacheService:
    """
    Fast synchronous state access with async persistence.

    Setters must be called from a running event loop: they arm the
    debounce timer on it.
    """

    def __init__(self, storage: StateStorage, persistence_delay: float = PERSISTENCE_DELAY_SECONDS):
        self.storage = storage
        self.persistence_delay = persistence_delay
        self.on_persistence_error: Optional[PersistenceErrorObserver] = None

        self._global_state: dict[str, Any] = {}
        self._secrets: dict[str, Any] = {}
        self._workspace_state: dict[str, Any] = {}

        self._pending_global_state: set[str] = set()
        self._pending_secrets: set[str] = set()
        self._pending_workspace_state: set[str] = set()

        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CacheNotInitializedError()

    # ─────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load all persisted state. Must complete before any get/set."""
        try:
            state = await read_state_from_storage(self.storage)
        except Exception as e:
            logger.error(f"Failed to initialize CacheService: {e}")
            raise

        self._global_state = state["global_state"]
        self._secrets = state["secrets"]
        self._workspace_state = state["workspace_state"]
        self._initialized = True
        logger.debug(
            f"CacheService loaded {len(self._global_state)} global, "
            f"{len(self._secrets)} secret, {len(self._workspace_state)} workspace key(s)"
        )

    async def reinitialize(self) -> None:
        """
        Drop all in-memory state and pending writes, then reload from storage.

        Used as error recovery when the write path looks broken.
        """
        self._dispose()
        await self.initialize()

    def _dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1

        self._pending_global_state = set()
        self._pending_secrets = set()
        self._pending_workspace_state = set()

        self._global_state = {}
        self._secrets = {}
        self._workspace_state = {}
        self._initialized = False

    # ─────────────────────────────────────────────────────────────────
    # SETTERS
    # ─────────────────────────────────────────────────────────────────

    def set_global_state(self, key: str, value: Any) -> None:
        self.set_global_state_batch({key: value})

    def set_global_state_batch(self, updates: dict[str, Any]) -> None:
        """
        Raises:
            KeyError: for keys outside the global state namespace
            ValidationError: for API configuration values of the wrong type
        """
        self._require_initialized()
        _check_keys(updates, GLOBAL_STATE_KEYS, "global state")
        configuration_updates = {
            key: value for key, value in updates.items()
            if key in API_CONFIGURATION_KEYS and value is not None
        }
        if configuration_updates:
            validated = ApiConfiguration.model_validate(configuration_updates)
            updates = {**updates, **{key: getattr(validated, key) for key in configuration_updates}}
        self._global_state.update(updates)
        self._pending_global_state.update(updates)
        self._schedule_persistence()

    def set_secret(self, key: str, value: Optional[str]) -> None:
        self.set_secrets_batch({key: value})

    def set_secrets_batch(self, updates: dict[str, Optional[str]]) -> None:
        self._require_initialized()
        _check_keys(updates, SECRET_KEYS, "secret")
        self._secrets.update(updates)
        self._pending_secrets.update(updates)
        self._schedule_persistence()

    def set_workspace_state(self, key: str, value: Any) -> None:
        self.set_workspace_state_batch({key: value})

    def set_workspace_state_batch(self, updates: dict[str, Any]) -> None:
        self._require_initialized()
        _check_keys(updates, LOCAL_STATE_KEYS, "workspace state")
        self._workspace_state.update(updates)
        self._pending_workspace_state.update(updates)
        self._schedule_persistence()

    # ─────────────────────────────────────────────────────────────────
    # GETTERS
    # ─────────────────────────────────────────────────────────────────

    def get_global_state_key(self, key: str) -> Any:
        self._require_initialized()
        return self._global_state.get(key)

    def get_secret_key(self, key: str) -> Optional[str]:
        self._require_initialized()
        return self._secrets.get(key)

    def get_workspace_state_key(self, key: str) -> Any:
        self._require_initialized()
        return self._workspace_state.get(key)

    # ─────────────────────────────────────────────────────────────────
    # API CONFIGURATION
    # ─────────────────────────────────────────────────────────────────

    def get_api_configuration(self) -> ApiConfiguration:
        self._require_initialized()
        values = {key: self._global_state.get(key) for key in API_CONFIGURATION_KEYS}
        values["ollama_api_key"] = self._secrets.get("ollama_api_key")
        return ApiConfiguration.from_stored(values)

    def set_api_configuration(self, configuration: ApiConfiguration) -> None:
        """
        Write the fields of `configuration` that carry a value.

        Fields left unset keep their cached value. The Ollama API key goes
        to secrets; setting it explicitly to None or "" deletes it.
        """
        self._require_initialized()
        updates = {
            key: getattr(configuration, key)
            for key in configuration.model_fields_set & API_CONFIGURATION_KEYS
            if getattr(configuration, key) is not None
        }
        if updates:
            self.set_global_state_batch(updates)
        if "ollama_api_key" in configuration.model_fields_set:
            self.set_secrets_batch({"ollama_api_key": configuration.ollama_api_key})

    # ─────────────────────────────────────────────────────────────────
    # PERSISTENCE
    # ─────────────────────────────────────────────────────────────────

    def _schedule_persistence(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.persistence_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.ensure_future(self._persist_pending())

    async def flush(self) -> bool:
        """
        Persist every dirty key now instead of waiting for the timer.

        Returns False if persistence failed (the observer has been notified
        and the keys stay dirty).
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        return await self._persist_pending()

    async def _persist_pending(self) -> bool:
        generation = self._generation
        global_keys, self._pending_global_state = self._pending_global_state, set()
        secret_keys, self._pending_secrets = self._pending_secrets, set()
        local_keys, self._pending_workspace_state = self._pending_workspace_state, set()

        if not (global_keys or secret_keys or local_keys):
            return True

        # Values are captured now; a reinitialize() during the writes clears the dicts
        global_values = {key: self._global_state.get(key) for key in global_keys}
        # Empty secrets are deleted rather than stored
        secret_values = {key: self._secrets.get(key) or None for key in secret_keys}
        local_values = {key: self._workspace_state.get(key) for key in local_keys}

        try:
            await asyncio.gather(
                self._persist_batch(self.storage.global_state, global_values),
                self._persist_batch(self.storage.secrets, secret_values),
                self._persist_batch(self.storage.workspace_state, local_values),
            )
        except Exception as e:
            logger.error(f"Failed to persist pending changes: {e}")
            # A reinitialize() in the meantime discarded these keys for good
            if generation == self._generation:
                self._pending_global_state |= global_keys
                self._pending_secrets |= secret_keys
                self._pending_workspace_state |= local_keys
            if self.on_persistence_error is not None:
                self.on_persistence_error(PersistenceErrorEvent(error=e))
            return False
        return True

    @staticmethod
    async def _persist_batch(namespace, values: dict[str, Any]) -> None:
        if values:
            await namespace.update_batch(values)
