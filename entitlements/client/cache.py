"""User-scoped, TTL-bounded local cache for entitlement data."""

import time
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from entitlements.models.snapshot import ApiModel

logger = structlog.get_logger(__name__)

ENTITLEMENTS_CACHE_KEY = "entitlements_cache"
SUBSCRIPTION_CACHE_KEY = "subscription_cache"
TOKEN_BALANCE_CACHE_KEY = "token_balance_cache"
CACHE_KEYS = (ENTITLEMENTS_CACHE_KEY, SUBSCRIPTION_CACHE_KEY, TOKEN_BALANCE_CACHE_KEY)

DEFAULT_TTL_SECONDS = 300.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class KeyValueStorage(Protocol):
    """Durable string key/value storage."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStorage:
    """Process-local storage, for tests and platforms without a disk."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class FileStorage:
    """One JSON file per key inside ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # Write then rename so a crash never leaves a half-written entry
        tmp = self._path(key).with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(self._path(key))

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return [p.stem for p in self.directory.glob("*.json")]


class CacheEntry(ApiModel):
    """Stored form of a cached value: ``{data, timestamp, userId}``."""

    data: Any
    timestamp: float
    user_id: str


class LocalCacheStore:
    """
    TTL cache on top of a KeyValueStorage, scoped to the signed-in user.

    An entry is returned only while it is younger than the TTL and belongs to
    the requesting user; anything else (expired, another user's, unreadable)
    is purged and reported as a miss.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        # Entries whose write to storage failed are still served from here
        self._memory: dict[str, CacheEntry] = {}

    def _read(self, key: str) -> CacheEntry | None:
        try:
            raw = self.storage.get_item(key)
        except OSError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            raw = None

        if raw is None:
            return self._memory.get(key)

        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("cache_entry_malformed", key=key)
            self.invalidate(key)
            return None

    def get(self, key: str, user_id: str | None, model: type[ModelT] | None = None) -> Any:
        """Return the cached value for ``user_id`` or None on a miss.

        With ``model`` the stored data is validated into that pydantic type.
        """
        if not user_id:
            return None

        entry = self._read(key)
        if entry is None:
            return None

        if entry.user_id != user_id:
            logger.info("cache_user_mismatch", key=key)
            self.invalidate(key)
            return None

        age = self.clock() - entry.timestamp
        if age >= self.ttl_seconds:
            self.invalidate(key)
            return None

        if model is None:
            return entry.data
        try:
            return model.model_validate(entry.data)
        except ValidationError:
            logger.warning("cache_entry_malformed", key=key)
            self.invalidate(key)
            return None

    def set(self, key: str, data: Any, user_id: str) -> None:
        """Overwrite ``key`` with ``data`` owned by ``user_id``."""
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        entry = CacheEntry(data=data, timestamp=self.clock(), user_id=user_id)
        self._memory[key] = entry

        try:
            self.storage.set_item(key, entry.model_dump_json(by_alias=True))
        except (OSError, TypeError, ValueError) as e:
            # Quota/permission/serialization problems must not break the caller
            logger.warning("cache_write_failed", key=key, error=str(e))

    def invalidate(self, key: str) -> None:
        self._memory.pop(key, None)
        try:
            self.storage.remove_item(key)
        except OSError as e:
            logger.warning("cache_remove_failed", key=key, error=str(e))

    def clear(self, keys: list[str] | tuple[str, ...] | None = None) -> None:
        """Remove ``keys`` (every entitlement cache key by default)."""
        for key in keys or CACHE_KEYS:
            self.invalidate(key)
