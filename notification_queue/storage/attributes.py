"""
Queue Storage - ThingsBoard Attribute Backend.

============================================================
PURPOSE
============================================================
Queue storage on ThingsBoard SERVER_SCOPE customer attributes.

ATTRIBUTE LAYOUT:
- telegram_queue_entry_{queueId}        one entry (JSON)
- telegram_queue_index_priority_{1..4}  ids of PENDING/RETRY entries
- telegram_queue_ratelimit_{customerId} rate-limit state (JSON)
- telegram_queue_config                 tenant configuration (read-only)

AUTHENTICATION:
- Service account login (POST /api/auth/login) yields a JWT
- Sent as "X-Authorization: Bearer <jwt>"
- One re-login on HTTP 401

============================================================
CONCURRENCY
============================================================
The attribute API has no compare-and-set, so every
read-modify-write (save, claim, update, delete) runs under a
per-adapter asyncio.Lock. One dispatcher process per attribute
owner is assumed.

============================================================
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp

from notification_queue.clock import Clock, get_default_clock
from notification_queue.logging_utils import log_storage, mask_headers
from notification_queue.storage.base import (
    QueueStorageAdapter,
    TenantConfigSource,
    apply_entry_updates,
    attempted_before,
    is_due,
    owned_by,
    sort_entries,
)
from notification_queue.types import (
    ALL_PRIORITIES,
    EntryNotFoundError,
    QueueEntry,
    QueueStats,
    QueueStatus,
    RateLimitState,
    StatsAccumulator,
    StorageError,
)


logger = logging.getLogger(__name__)


# ============================================================
# ATTRIBUTE KEYS
# ============================================================

ENTRY_PREFIX = "telegram_queue_entry_"
INDEX_PREFIX = "telegram_queue_index_priority_"
RATE_LIMIT_PREFIX = "telegram_queue_ratelimit_"
CONFIG_KEY = "telegram_queue_config"


def entry_key(queue_id: str) -> str:
    return f"{ENTRY_PREFIX}{queue_id}"


def index_key(priority: int) -> str:
    return f"{INDEX_PREFIX}{int(priority)}"


def rate_limit_key(tenant_id: str) -> str:
    return f"{RATE_LIMIT_PREFIX}{tenant_id}"


# ============================================================
# ATTRIBUTE API CLIENT
# ============================================================

class ThingsboardAttributeClient:
    """
    Minimal ThingsBoard telemetry-plugin client for
    SERVER_SCOPE customer attributes.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout_seconds: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._auth_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def login(self) -> str:
        """Obtain a JWT for the service account."""
        if not self._username or not self._password:
            raise StorageError("Service account credentials are required")

        session = await self._get_session()
        url = f"{self._base_url}/api/auth/login"
        try:
            async with session.post(
                url,
                json={"username": self._username, "password": self._password},
                timeout=self._timeout,
            ) as response:
                if response.status != 200:
                    raise StorageError(
                        f"ThingsBoard login failed: HTTP {response.status}",
                        context={"status": response.status},
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            raise StorageError(f"ThingsBoard login failed: {e}") from e

        token = data.get("token")
        if not token:
            raise StorageError("ThingsBoard login returned no token")
        self._token = token
        logger.debug("ThingsBoard service account authenticated")
        return token

    async def _ensure_token(self) -> str:
        async with self._auth_lock:
            if self._token is None:
                await self.login()
            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        """
        Perform an authenticated request.

        Returns:
            Decoded JSON body, or None for 404 and empty bodies
        """
        session = await self._get_session()
        url = f"{self._base_url}{path}"

        for attempt in range(2):
            token = await self._ensure_token()
            headers = {
                "Content-Type": "application/json",
                "X-Authorization": f"Bearer {token}",
            }
            logger.debug(f"ThingsBoard {method} {path} headers={mask_headers(headers)}")
            try:
                async with session.request(
                    method, url, params=params, json=payload,
                    headers=headers, timeout=self._timeout,
                ) as response:
                    if response.status == 401 and attempt == 0:
                        logger.info("ThingsBoard token rejected, logging in again")
                        self._token = None
                        continue
                    if response.status == 404:
                        return None
                    if response.status >= 300:
                        text = await response.text()
                        raise StorageError(
                            f"{method} {path} failed: HTTP {response.status}",
                            context={"status": response.status, "body": text[:200]},
                        )
                    body = await response.text()
                    return json.loads(body) if body else None
            except aiohttp.ClientError as e:
                raise StorageError(f"{method} {path} failed: {e}") from e
            except asyncio.TimeoutError as e:
                raise StorageError(f"{method} {path} timed out") from e

        raise StorageError(f"{method} {path} failed: unauthorized")

    # --------------------------------------------------------
    # ATTRIBUTE OPERATIONS
    # --------------------------------------------------------

    async def get_attributes(
        self,
        customer_id: str,
        keys: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Read SERVER_SCOPE attributes (all of them when keys is None).

        JSON-encoded string values are decoded.
        """
        params = None
        if keys is not None:
            keys = list(keys)
            if not keys:
                return {}
            params = {"keys": ",".join(keys)}

        data = await self._request(
            "GET",
            f"/api/plugins/telemetry/CUSTOMER/{customer_id}/values/attributes/SERVER_SCOPE",
            params=params,
        )
        return _decode_attributes(data)

    async def set_attributes(self, customer_id: str, attributes: Dict[str, Any]) -> None:
        """Write SERVER_SCOPE attributes. Values are JSON-encoded."""
        if not attributes:
            return
        payload = {key: json.dumps(value) for key, value in attributes.items()}
        await self._request(
            "POST",
            f"/api/plugins/telemetry/CUSTOMER/{customer_id}/SERVER_SCOPE",
            payload=payload,
        )

    async def delete_attributes(self, customer_id: str, keys: Sequence[str]) -> None:
        """Delete SERVER_SCOPE attributes."""
        if not keys:
            return
        await self._request(
            "DELETE",
            f"/api/plugins/telemetry/CUSTOMER/{customer_id}/SERVER_SCOPE",
            params={"keys": ",".join(keys)},
        )


def _decode_attributes(data: Any) -> Dict[str, Any]:
    """Normalize both `[{key, value}]` and `{key: value}` response shapes."""
    if not data:
        return {}
    if isinstance(data, list):
        pairs = ((item.get("key"), item.get("value")) for item in data if isinstance(item, dict))
    elif isinstance(data, dict):
        pairs = data.items()
    else:
        return {}

    decoded = {}
    for key, value in pairs:
        if key is None:
            continue
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                pass
        decoded[key] = value
    return decoded


# ============================================================
# STORAGE ADAPTER
# ============================================================

class AttributeStorageAdapter(QueueStorageAdapter):
    """
    Queue storage on the attributes of one ThingsBoard customer.
    """

    backend_name = "thingsboard"

    def __init__(
        self,
        client: ThingsboardAttributeClient,
        customer_id: str,
        clock: Optional[Clock] = None,
    ):
        if not customer_id:
            raise ValueError("customer_id is required for ThingsBoard storage")
        self._client = client
        self._customer_id = customer_id
        self._clock = clock or get_default_clock()
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self._client.login()
        # Check access to the customer's attributes
        await self._client.get_attributes(self._customer_id, keys=[CONFIG_KEY])
        logger.info(f"ThingsBoard queue storage ready (customer {self._customer_id})")

    async def close(self) -> None:
        await self._client.close()

    async def _get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await self._client.get_attributes(self._customer_id, keys)

    async def _set(self, attributes: Dict[str, Any]) -> None:
        await self._client.set_attributes(self._customer_id, attributes)

    async def _get_index(self, priority: int) -> List[str]:
        key = index_key(priority)
        return list((await self._get([key])).get(key) or [])

    async def _read_entries(self, queue_ids: Sequence[str]) -> List[QueueEntry]:
        if not queue_ids:
            return []
        raw = await self._get(entry_key(q) for q in queue_ids)
        entries = []
        for queue_id in queue_ids:
            document = raw.get(entry_key(queue_id))
            if not isinstance(document, dict):
                continue
            try:
                entries.append(QueueEntry.from_dict(document))
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse entry {queue_id}: {e}")
        return entries

    async def _all_entries(self) -> List[QueueEntry]:
        raw = await self._client.get_attributes(self._customer_id)
        entries = []
        for key, document in raw.items():
            if not key.startswith(ENTRY_PREFIX) or not isinstance(document, dict):
                continue
            try:
                entries.append(QueueEntry.from_dict(document))
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse entry {key}: {e}")
        return entries

    # --------------------------------------------------------
    # ENTRY OPERATIONS
    # --------------------------------------------------------

    async def save(self, entry: QueueEntry) -> str:
        start = time.monotonic()
        async with self._lock:
            key = index_key(entry.priority)
            index = await self._get_index(entry.priority)
            if entry.status.is_dequeue_eligible() and entry.queue_id not in index:
                index.append(entry.queue_id)
            await self._set({
                entry_key(entry.queue_id): entry.to_dict(),
                key: index,
            })
        log_storage("save", 1, (time.monotonic() - start) * 1000)
        return entry.queue_id

    async def fetch_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int] = ALL_PRIORITIES,
        attempted_before_ms: Optional[int] = None,
    ) -> List[QueueEntry]:
        if limit <= 0:
            return []
        wanted = set(int(p) for p in priorities)
        entries = [
            e for e in await self._all_entries()
            if e.status == status
            and e.priority in wanted
            and attempted_before(e, attempted_before_ms)
        ]
        return sort_entries(entries)[:limit]

    async def claim_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int],
        now_ms: int,
        due_before_ms: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        if limit <= 0:
            return []

        claimed: List[QueueEntry] = []
        async with self._lock:
            for priority in sorted(int(p) for p in priorities):
                if len(claimed) >= limit:
                    break

                index = await self._get_index(priority)
                candidates = [
                    e for e in await self._read_entries(index)
                    if e.status == status
                    and is_due(e, due_before_ms)
                    and owned_by(e, tenant_id)
                ]
                picked = sort_entries(candidates)[:limit - len(claimed)]
                if not picked:
                    continue

                updates: Dict[str, Any] = {}
                for entry in picked:
                    entry.status = QueueStatus.SENDING
                    entry.last_attempt_at = now_ms
                    updates[entry_key(entry.queue_id)] = entry.to_dict()

                picked_ids = {e.queue_id for e in picked}
                updates[index_key(priority)] = [q for q in index if q not in picked_ids]
                await self._set(updates)
                claimed.extend(picked)

        log_storage("claim", len(claimed))
        return claimed

    async def update_entry(self, queue_id: str, fields: Dict[str, Any]) -> QueueEntry:
        async with self._lock:
            entries = await self._read_entries([queue_id])
            if not entries:
                raise EntryNotFoundError(queue_id)

            entry = entries[0]
            old_status = entry.status
            apply_entry_updates(entry, fields)

            attributes: Dict[str, Any] = {entry_key(queue_id): entry.to_dict()}
            if entry.status != old_status:
                index = await self._get_index(entry.priority)
                if entry.status.is_dequeue_eligible():
                    if queue_id not in index:
                        index.append(queue_id)
                        attributes[index_key(entry.priority)] = index
                elif queue_id in index:
                    attributes[index_key(entry.priority)] = [q for q in index if q != queue_id]

            await self._set(attributes)

        log_storage("update", 1)
        return entry

    async def get_entry(self, queue_id: str) -> Optional[QueueEntry]:
        entries = await self._read_entries([queue_id])
        return entries[0] if entries else None

    async def list_active_tenants(self) -> List[str]:
        queue_ids: List[str] = []
        for priority in ALL_PRIORITIES:
            queue_ids.extend(await self._get_index(priority))
        return sorted({
            e.customer_id for e in await self._read_entries(queue_ids)
            if e.status.is_dequeue_eligible()
        })

    async def get_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        accumulator = StatsAccumulator()
        for entry in await self._all_entries():
            if tenant_id and entry.customer_id != tenant_id:
                continue
            accumulator.add(entry)
        return accumulator.result()

    async def delete_older_than(
        self,
        timestamp_ms: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        async with self._lock:
            doomed: Dict[int, set] = {}
            keys = []
            for entry in await self._all_entries():
                if tenant_id and entry.customer_id != tenant_id:
                    continue
                if entry.created_at < timestamp_ms:
                    keys.append(entry_key(entry.queue_id))
                    doomed.setdefault(entry.priority, set()).add(entry.queue_id)

            if keys:
                await self._client.delete_attributes(self._customer_id, keys)

            index_updates = {}
            for priority, queue_ids in doomed.items():
                index = await self._get_index(priority)
                index_updates[index_key(priority)] = [q for q in index if q not in queue_ids]
            await self._set(index_updates)

        log_storage("delete", len(keys))
        return len(keys)

    # --------------------------------------------------------
    # RATE LIMIT STATE
    # --------------------------------------------------------

    async def get_rate_limit_state(self, tenant_id: str) -> RateLimitState:
        key = rate_limit_key(tenant_id)
        document = (await self._get([key])).get(key)
        if not isinstance(document, dict):
            return RateLimitState(updated_at=self._clock.now_ms())
        return RateLimitState.from_dict(document)

    async def update_rate_limit_state(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
    ) -> RateLimitState:
        key = rate_limit_key(tenant_id)
        async with self._lock:
            document = (await self._get([key])).get(key)
            state = RateLimitState.from_dict(document if isinstance(document, dict) else None)
            for name in ("last_dispatch_at", "batch_count"):
                if name in fields:
                    setattr(state, name, fields[name])
            state.updated_at = self._clock.now_ms()
            await self._set({key: state.to_dict()})
        return state


# ============================================================
# TENANT CONFIGURATION SOURCE
# ============================================================

class AttributeConfigSource(TenantConfigSource):
    """Reads `telegram_queue_config` from each tenant's attributes."""

    def __init__(self, client: ThingsboardAttributeClient):
        self._client = client

    async def fetch_tenant_config(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        attributes = await self._client.get_attributes(tenant_id, keys=[CONFIG_KEY])
        document = attributes.get(CONFIG_KEY)
        return document if isinstance(document, dict) else None

    async def close(self) -> None:
        await self._client.close()
