"""Key pool management."""

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from keypool.config import Config
from keypool.errors import (
    InvalidArgument,
    KeyNotFound,
    PersistenceFailure,
    ServiceNotFound,
)
from keypool.migration import migrate_legacy
from keypool.models import (
    DEFAULT_MAX_USAGE,
    RESET_FREQUENCIES,
    RESET_NEVER,
    ApiKey,
    KeySelection,
    PoolState,
    Service,
    ServiceDefaults,
    UsageRecord,
    format_timestamp,
)
from keypool.scheduler import reconcile
from keypool.storage import PoolStore, default_document

logger = logging.getLogger(__name__)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class KeyManager:
    """Manages per-service API key pools with usage quotas.

    Every public operation holds one lock from the read of the in-memory pool
    until the resulting document has been written to the store. A failed write
    restores the pool to its state before the operation.
    """

    def __init__(self, store: PoolStore, config: Optional[Config] = None):
        self.config = config or Config()
        self.store = store
        self.pool: PoolState = PoolState(
            default_service_config=ServiceDefaults(
                max_usage=self.config.default_max_usage
            )
        )
        self._tz = self.config.tz
        self._lock: asyncio.Lock = asyncio.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _save(self, snapshot: PoolState) -> None:
        try:
            await self.store.save(self.pool.to_document())
        except PersistenceFailure:
            logger.error("Key pool not persisted, rolling back in-memory changes")
            self.pool = snapshot
            raise

    async def load(self) -> None:
        """Read the pool from the store, migrating and reconciling it once."""
        async with self._lock:
            document = await self.store.load()
            needs_saving = False

            if document is None:
                document = default_document(self.config.default_max_usage)
                needs_saving = True
            else:
                document, needs_saving = migrate_legacy(
                    document,
                    self.config.legacy_service_name,
                    self.config.legacy_service_host,
                    self.config.default_max_usage,
                )

            try:
                pool = PoolState.from_document(document)
            except (KeyError, TypeError, ValueError) as exc:
                raise PersistenceFailure(f"Malformed key pool document: {exc}") from exc

            now = self._now()
            for service in pool.services.values():
                if reconcile(now, service, self._tz):
                    needs_saving = True

            snapshot = self.pool
            self.pool = pool
            if needs_saving:
                await self._save(snapshot)

            logger.info(
                "Key pool loaded (services=%d, keys=%d)",
                len(pool.services),
                sum(len(service.keys) for service in pool.services.values()),
            )

    async def select_key(self, service_name: str) -> KeySelection:
        async with self._lock:
            service = self.pool.services.get(service_name)
            if service is not None:
                snapshot = copy.deepcopy(self.pool)
                if reconcile(self._now(), service, self._tz):
                    await self._save(snapshot)

            if service is None or not service.keys:
                logger.error("No API keys configured for service: %s", service_name)
                raise ServiceNotFound(service_name)

            eligible = [
                api_key
                for api_key in service.keys
                if api_key.usage_count < service.max_usage
            ]
            candidates = eligible or service.keys
            selected = min(candidates, key=lambda item: item.usage_count)
            remaining = service.remaining(selected)

            if remaining <= 0:
                logger.warning(
                    "All API keys for %s have reached maximum usage (key=%s, usage=%d)",
                    service_name,
                    selected.key_prefix(),
                    selected.usage_count,
                )
            else:
                logger.debug(
                    "Using key %s for %s (%d uses remaining)",
                    selected.key_prefix(),
                    service_name,
                    remaining,
                )

            return KeySelection(
                service=service_name,
                key=selected.key,
                host=service.host,
                remaining=remaining,
                exhausted=remaining <= 0,
            )

    async def record_use(self, service_name: str, key: str) -> Optional[UsageRecord]:
        """Count one use of ``key``. Returns None if the service or key is gone."""
        if not isinstance(key, str):
            return None

        async with self._lock:
            service = self.pool.services.get(service_name)
            if service is None:
                logger.warning("Usage reported for unknown service %s", service_name)
                return None

            api_key = service.find_key(key)
            if api_key is None:
                logger.warning(
                    "Usage reported for unknown key %s... in service %s",
                    key[:8],
                    service_name,
                )
                return None

            snapshot = copy.deepcopy(self.pool)
            api_key.usage_count += 1
            api_key.last_used_time = self._now()
            await self._save(snapshot)

            remaining = service.remaining(api_key)
            logger.debug(
                "Key %s for %s used (usage=%d, remaining=%d)",
                api_key.key_prefix(),
                service_name,
                api_key.usage_count,
                remaining,
            )
            return UsageRecord(usage_count=api_key.usage_count, remaining=remaining)

    async def add_service(
        self,
        name: str,
        host: str,
        max_usage: int = DEFAULT_MAX_USAGE,
        reset_frequency: str = RESET_NEVER,
    ) -> bool:
        """Register a service, or update it in place if it already exists.

        Returns True when the service was created.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("Service name is required")
        if not isinstance(host, str) or not host.strip():
            raise InvalidArgument("Host is required")
        if not _is_int(max_usage) or max_usage < 1:
            raise InvalidArgument("maxUsage must be a positive integer")
        if reset_frequency not in RESET_FREQUENCIES:
            raise InvalidArgument(
                "Invalid reset frequency. Must be one of: "
                + ", ".join(RESET_FREQUENCIES)
            )

        async with self._lock:
            snapshot = copy.deepcopy(self.pool)
            service = self.pool.services.get(name)
            created = service is None

            if service is None:
                self.pool.services[name] = Service(
                    name=name,
                    host=host,
                    max_usage=max_usage,
                    reset_frequency=reset_frequency,
                )
            else:
                service.host = host
                service.max_usage = max_usage
                service.reset_frequency = reset_frequency

            await self._save(snapshot)

            logger.info(
                "Service %s %s (host=%s, max_usage=%d, reset=%s)",
                name,
                "added" if created else "updated",
                host,
                max_usage,
                reset_frequency,
            )
            return created

    async def add_key(
        self,
        service_name: str,
        key: str,
        initial_remaining: Optional[int] = None,
    ) -> bool:
        """Add ``key`` to a service. Returns False if it is already present."""
        if not isinstance(key, str) or not key:
            raise InvalidArgument("API key is required")
        if initial_remaining is not None and (
            not _is_int(initial_remaining) or initial_remaining < 0
        ):
            raise InvalidArgument("remainingUses must be a non-negative integer")

        async with self._lock:
            service = self.pool.services.get(service_name)
            if service is None:
                logger.warning(
                    "Failed to add API key: service %s not found", service_name
                )
                raise ServiceNotFound(service_name)

            if service.find_key(key) is not None:
                logger.warning(
                    "API key %s... already exists for service %s",
                    key[:8],
                    service_name,
                )
                return False

            usage_count = 0
            if initial_remaining is not None:
                usage_count = max(0, service.max_usage - initial_remaining)

            snapshot = copy.deepcopy(self.pool)
            api_key = ApiKey(
                key=key,
                usage_count=usage_count,
                last_reset_time=self._now(),
            )
            service.keys.append(api_key)
            await self._save(snapshot)

            logger.info(
                "API key %s added to service %s (usage=%d)",
                api_key.key_prefix(),
                service_name,
                usage_count,
            )
            return True

    async def set_remaining_uses(
        self, service_name: str, key: str, remaining: int
    ) -> bool:
        """Align a key's counter with the upstream provider's remaining quota."""
        if not isinstance(key, str) or not key:
            raise InvalidArgument("API key is required")
        if not _is_int(remaining) or remaining < 0:
            raise InvalidArgument("remainingUses must be a non-negative integer")

        async with self._lock:
            service = self.pool.services.get(service_name)
            if service is None:
                raise ServiceNotFound(service_name)

            api_key = service.find_key(key)
            if api_key is None:
                raise KeyNotFound(service_name, f"{key[:8]}...")

            snapshot = copy.deepcopy(self.pool)
            api_key.usage_count = max(0, service.max_usage - remaining)
            await self._save(snapshot)

            logger.info(
                "Remaining uses updated for key %s in service %s (remaining=%d, usage=%d)",
                api_key.key_prefix(),
                service_name,
                remaining,
                api_key.usage_count,
            )
            return True

    async def get_stats(self, service_name: Optional[str] = None) -> Dict[str, Any]:
        """Per-key usage for one service, or for every service keyed by name."""
        async with self._lock:
            if service_name is not None:
                service = self.pool.services.get(service_name)
                if service is None:
                    raise ServiceNotFound(service_name)
                services = [service]
            else:
                services = list(self.pool.services.values())

            snapshot = copy.deepcopy(self.pool)
            now = self._now()
            changed = False
            for service in services:
                if reconcile(now, service, self._tz):
                    changed = True
            if changed:
                await self._save(snapshot)

            if service_name is not None:
                return self._format_service_stats(services[0])
            return {
                service.name: self._format_service_stats(service)
                for service in services
            }

    def get_status(self) -> Dict[str, object]:
        """Counts for health checks. Does not reconcile or touch the store."""
        keys_available = 0
        total_keys = 0
        for service in self.pool.services.values():
            total_keys += len(service.keys)
            keys_available += sum(
                1 for api_key in service.keys if service.remaining(api_key) > 0
            )
        return {
            "total_services": len(self.pool.services),
            "total_keys": total_keys,
            "keys_available": keys_available,
        }

    def _format_service_stats(self, service: Service) -> Dict[str, Any]:
        return {
            "host": service.host,
            "maxUsage": service.max_usage,
            "resetFrequency": service.reset_frequency,
            "keys": [self._format_key_stats(service, api_key) for api_key in service.keys],
        }

    def _format_key_stats(self, service: Service, api_key: ApiKey) -> Dict[str, Any]:
        return {
            "key": api_key.key_prefix(),
            "usageCount": api_key.usage_count,
            "remaining": service.remaining(api_key),
            "lastReset": format_timestamp(api_key.last_reset_time),
            "lastUsed": format_timestamp(api_key.last_used_time),
        }

    def service_names(self) -> List[str]:
        return list(self.pool.services.keys())
