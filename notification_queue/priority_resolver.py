"""
Notification Queue - Priority Resolver.

============================================================
PURPOSE
============================================================
Assign a dispatch priority (1=critical .. 4=low) to an event.

CASCADE (first match wins):
1. priorityRules.deviceOverrides[deviceId]      deviceOverride
2. priorityRules.deviceProfiles[deviceProfile]  deviceProfile
3. priorityRules.globalDefault                  customerGlobal
4. System fallback (3 = Medium)                 systemGlobal

============================================================
FAILURE MODE
============================================================
Resolution never raises. Out-of-range values are corrected to
Medium with a warning; fetch failures or malformed documents
degrade to the system fallback.

============================================================
CACHING
============================================================
Tenant documents are cached in a PriorityCache owned by the
caller (TTL 5 minutes by default). "Not found" is cached as
None so repeated misses do not hit storage. Expiry is lazy:
an expired slot is treated as a miss on read.

============================================================
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from notification_queue.clock import Clock, get_default_clock
from notification_queue.logging_utils import log_config_load, log_priority_resolution
from notification_queue.storage.base import TenantConfigSource
from notification_queue.types import (
    BackoffStrategy,
    Priority,
    PrioritySource,
    SYSTEM_FALLBACK_PRIORITY,
    TenantPriorityConfig,
)


logger = logging.getLogger(__name__)


DEFAULT_CACHE_TTL_SECONDS = 300


# ============================================================
# CACHE
# ============================================================

class PriorityCache:
    """
    TTL cache of tenant configurations.

    Distinguishes a cached None ("tenant has no config") from a
    miss. All mutations happen under an asyncio.Lock.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Optional[Clock] = None,
    ):
        self._ttl_ms = int(ttl_seconds * 1000)
        self._clock = clock or get_default_clock()
        self._values: Dict[str, Optional[TenantPriorityConfig]] = {}
        self._timestamps: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    async def get(self, tenant_id: str) -> Tuple[bool, Optional[TenantPriorityConfig]]:
        """
        Look up a tenant.

        Returns:
            (hit, value). value may be None on a hit.
        """
        async with self._lock:
            if tenant_id not in self._values:
                return False, None

            if self._clock.now_ms() - self._timestamps[tenant_id] > self._ttl_ms:
                del self._values[tenant_id]
                del self._timestamps[tenant_id]
                return False, None

            return True, self._values[tenant_id]

    async def set(self, tenant_id: str, value: Optional[TenantPriorityConfig]) -> None:
        async with self._lock:
            self._values[tenant_id] = value
            self._timestamps[tenant_id] = self._clock.now_ms()

    async def invalidate(self, tenant_id: str) -> bool:
        async with self._lock:
            self._timestamps.pop(tenant_id, None)
            return self._values.pop(tenant_id, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._values)
            self._values.clear()
            self._timestamps.clear()
            return count

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._values),
            "ttl_ms": self._ttl_ms,
            "customer_ids": list(self._values.keys()),
        }


# ============================================================
# RESOLVER
# ============================================================

@dataclass(frozen=True)
class PriorityResolution:
    """Resolved priority plus the cascade level that produced it."""

    priority: int
    source: PrioritySource


class PriorityResolver:
    """
    Resolves priorities through the tenant rule cascade.
    """

    def __init__(
        self,
        config_source: TenantConfigSource,
        cache: Optional[PriorityCache] = None,
        clock: Optional[Clock] = None,
    ):
        self._config_source = config_source
        self._cache = cache or PriorityCache(clock=clock)

    @property
    def cache(self) -> PriorityCache:
        return self._cache

    async def resolve_priority(
        self,
        tenant_id: str,
        device_id: str,
        device_profile: str,
    ) -> int:
        """Resolve a priority (1..4). Never raises."""
        resolution = await self.resolve(tenant_id, device_id, device_profile)
        return resolution.priority

    async def resolve(
        self,
        tenant_id: str,
        device_id: str,
        device_profile: str,
    ) -> PriorityResolution:
        """
        Resolve a priority and report which cascade level matched.

        Never raises: any internal error yields the system fallback.
        """
        try:
            config = await self.fetch_tenant_config(tenant_id)
            raw, source = _cascade(config, device_id, device_profile)

            priority = _coerce_priority(raw)
            if priority is None:
                logger.warning(
                    f"Invalid priority {raw!r} for device {device_id}, using Medium (3)"
                )
                priority = int(SYSTEM_FALLBACK_PRIORITY)
                source = PrioritySource.SYSTEM_GLOBAL

            log_priority_resolution(device_id, device_profile, priority, source.value)
            return PriorityResolution(priority, source)

        except Exception as e:
            logger.error(
                f"resolve_priority failed (customer_id={tenant_id}, "
                f"device_id={device_id}, device_profile={device_profile}): {e}"
            )
            return PriorityResolution(int(SYSTEM_FALLBACK_PRIORITY), PrioritySource.SYSTEM_GLOBAL)

    async def fetch_tenant_config(self, tenant_id: str) -> Optional[TenantPriorityConfig]:
        """
        Fetch a tenant's configuration, cache first.

        Absent or structurally invalid documents are cached as None.
        Fetch errors return None without caching.
        """
        hit, cached = await self._cache.get(tenant_id)
        if hit:
            return cached

        try:
            document = await self._config_source.fetch_tenant_config(tenant_id)
        except Exception as e:
            logger.error(f"fetch_tenant_config failed (customer_id={tenant_id}): {e}")
            return None

        config = None
        if document is None:
            log_config_load(tenant_id, found=False)
        elif not isinstance(document, dict) or not isinstance(document.get("priorityRules"), dict):
            logger.warning(f"Invalid config structure for customer {tenant_id}, using defaults")
        else:
            try:
                config = TenantPriorityConfig.from_dict(document)
                log_config_load(tenant_id, found=True, enabled=config.enabled)
            except (TypeError, ValueError) as e:
                logger.warning(f"Unparsable config for customer {tenant_id}: {e}")

        await self._cache.set(tenant_id, config)
        return config

    async def invalidate_cache(self, tenant_id: str) -> None:
        await self._cache.invalidate(tenant_id)
        logger.info(f"Cache invalidated for customer {tenant_id}")

    async def clear_all_cache(self) -> int:
        count = await self._cache.clear()
        logger.info(f"Cleared {count} cached priority rules")
        return count

    def get_cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()


def _cascade(
    config: Optional[TenantPriorityConfig],
    device_id: str,
    device_profile: str,
) -> Tuple[Any, PrioritySource]:
    if config is None:
        return SYSTEM_FALLBACK_PRIORITY, PrioritySource.SYSTEM_GLOBAL

    rules = config.priority_rules
    if rules.device_overrides.get(device_id) is not None:
        return rules.device_overrides[device_id], PrioritySource.DEVICE_OVERRIDE
    if rules.device_profiles.get(device_profile) is not None:
        return rules.device_profiles[device_profile], PrioritySource.DEVICE_PROFILE
    if rules.global_default is not None:
        return rules.global_default, PrioritySource.CUSTOMER_GLOBAL
    return SYSTEM_FALLBACK_PRIORITY, PrioritySource.SYSTEM_GLOBAL


def _coerce_priority(value: Any) -> Optional[int]:
    """Integer 1..4 from an int, integral float or digit string; else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    return int(value) if Priority.is_valid(value) else None


# ============================================================
# CONFIGURATION HELPERS
# ============================================================

def get_device_profile_default_priority(device_profile: Optional[str]) -> int:
    """Suggested priority for a device profile name."""
    profile = (device_profile or "").upper()

    if any(name in profile for name in ("ENTRADA", "RELOGIO", "TRAFO", "SUBESTACAO")):
        return int(Priority.CRITICAL)
    if "3F_MEDIDOR" in profile or "HIDROMETRO" in profile:
        return int(Priority.HIGH)
    if "TERMOSTATO" in profile:
        return int(Priority.LOW)
    return int(Priority.MEDIUM)


DEFAULT_CONFIG_DOCUMENT: Dict[str, Any] = {
    "enabled": True,
    "priorityRules": {
        "deviceProfiles": {
            "3F_MEDIDOR": int(Priority.HIGH),
            "HIDROMETRO": int(Priority.HIGH),
            "ENTRADA": int(Priority.CRITICAL),
            "TERMOSTATO": int(Priority.LOW),
        },
        "deviceOverrides": {},
        "globalDefault": int(Priority.MEDIUM),
    },
    "rateControl": {
        "batchSize": 5,
        "delayBetweenBatchesSeconds": 60,
        "maxRetries": 3,
        "retryBackoff": BackoffStrategy.EXPONENTIAL.value,
    },
    "telegram": {
        "botToken": "",
        "chatId": "",
    },
}


def build_default_config_document(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Default configuration document, deep-merged with overrides."""
    return _merge_deep(DEFAULT_CONFIG_DOCUMENT, overrides or {})


def build_default_tenant_config(overrides: Optional[Dict[str, Any]] = None) -> TenantPriorityConfig:
    """Default tenant configuration, deep-merged with overrides."""
    return TenantPriorityConfig.from_dict(build_default_config_document(overrides))


def validate_tenant_config(document: Optional[Dict[str, Any]]) -> Tuple[bool, List[str]]:
    """
    Validate a tenant configuration document.

    Returns:
        (valid, errors)
    """
    errors: List[str] = []

    if not document:
        return False, ["Configuration is null or empty"]

    if not isinstance(document.get("enabled"), bool):
        errors.append("enabled must be a boolean")

    rules = document.get("priorityRules")
    if not rules:
        errors.append("priorityRules is required")
    else:
        if not isinstance(rules.get("deviceProfiles"), dict):
            errors.append("priorityRules.deviceProfiles must be an object")
        if not isinstance(rules.get("deviceOverrides"), dict):
            errors.append("priorityRules.deviceOverrides must be an object")

    rate = document.get("rateControl")
    if not rate:
        errors.append("rateControl is required")
    else:
        if not _is_number(rate.get("batchSize")) or rate["batchSize"] <= 0:
            errors.append("rateControl.batchSize must be a positive number")
        delay = rate.get("delayBetweenBatchesSeconds")
        if not _is_number(delay) or delay < 0:
            errors.append("rateControl.delayBetweenBatchesSeconds must be a non-negative number")
        if not _is_number(rate.get("maxRetries")) or rate["maxRetries"] < 0:
            errors.append("rateControl.maxRetries must be a non-negative number")
        if rate.get("retryBackoff") not in {s.value for s in BackoffStrategy}:
            errors.append('rateControl.retryBackoff must be "exponential" or "linear"')

    telegram = document.get("telegram")
    if not telegram:
        errors.append("telegram configuration is required")
    else:
        if not telegram.get("botToken") or not isinstance(telegram.get("botToken"), str):
            errors.append("telegram.botToken is required and must be a string")
        if not telegram.get("chatId") or not isinstance(telegram.get("chatId"), str):
            errors.append("telegram.chatId is required and must be a string")

    return len(errors) == 0, errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _merge_deep(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    output = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(output.get(key), dict):
            output[key] = _merge_deep(output[key], value)
        else:
            output[key] = copy.deepcopy(value)
    return output
