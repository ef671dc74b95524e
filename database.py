"""
Order storage for the bot hosting storefront
Two collections ("orders", "users") held in one in-process working set and
written through to a storage backend chosen once at startup:

- DocumentStorageBackend: pretty-printed JSON documents in DATA_DIR
- MemoryStorageBackend: process-lifetime only, used when the medium is read-only
"""

import os
import copy
import json
import errno
import asyncio
import logging
import secrets
import time
from typing import Optional, Dict, List, Any

from models.order_models import OrderStatus
from utils.timezone_utils import get_utc_for_db

logger = logging.getLogger(__name__)

ORDERS = 'orders'
USERS = 'users'

# Primary key of each collection
COLLECTION_KEYS = {
    ORDERS: 'id',
    USERS: 'owner_name',
}

READ_ONLY_ERRNOS = {errno.EROFS, errno.EACCES, errno.EPERM}


class StorageUnavailableError(Exception):
    """Raised by a backend when the durable medium refuses writes"""
    pass


def generate_order_id() -> str:
    """Order reference: WS + epoch milliseconds + 3 random digits"""
    return f"WS{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


# ====================================================================
# STORAGE BACKENDS
# ====================================================================

class StorageBackend:
    """Persistence medium for whole collections"""

    name = 'abstract'
    durable = False

    def load(self, collection: str) -> Any:
        raise NotImplementedError

    def save(self, collection: str, records: List[Dict[str, Any]]) -> None:
        raise NotImplementedError


class MemoryStorageBackend(StorageBackend):
    """Volatile backend; contents live as long as the process"""

    name = 'memory'
    durable = False

    def __init__(self, initial: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._collections: Dict[str, List[Dict[str, Any]]] = {
            ORDERS: [],
            USERS: [],
        }
        if initial:
            for collection, records in initial.items():
                self._collections[collection] = copy.deepcopy(records)

    def load(self, collection: str) -> Any:
        return copy.deepcopy(self._collections.get(collection, []))

    def save(self, collection: str, records: List[Dict[str, Any]]) -> None:
        self._collections[collection] = copy.deepcopy(records)


class DocumentStorageBackend(StorageBackend):
    """Durable backend writing one JSON document per collection"""

    name = 'document'
    durable = True

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def path_for(self, collection: str) -> str:
        return os.path.join(self.data_dir, f"{collection}.json")

    def load(self, collection: str) -> Any:
        """Raw parsed document, or [] when missing, empty or unparseable"""
        path = self.path_for(collection)
        if not os.path.exists(path):
            return []
        try:
            with open(path, 'r', encoding='utf-8') as fh:
                data = fh.read()
        except OSError as e:
            logger.warning(f"⚠️ Could not read {path}: {e}, starting empty")
            return []
        if not data.strip():
            return []
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ {collection}.json is not valid JSON ({e}), resetting to empty collection")
            return []

    def save(self, collection: str, records: List[Dict[str, Any]]) -> None:
        path = self.path_for(collection)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as fh:
                json.dump(records, fh, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, path)
        except OSError as e:
            if e.errno in READ_ONLY_ERRNOS:
                raise StorageUnavailableError(f"{self.data_dir} is not writable: {e}") from e
            raise


def is_writable_directory(data_dir: str) -> bool:
    """Check the medium by creating the directory and a scratch file"""
    scratch = os.path.join(data_dir, f".write-check-{os.getpid()}")
    try:
        os.makedirs(data_dir, exist_ok=True)
        with open(scratch, 'w', encoding='utf-8') as fh:
            fh.write('ok')
        os.remove(scratch)
        return True
    except OSError as e:
        logger.warning(f"⚠️ Data directory {data_dir} is not writable: {e}")
        return False


def select_backend(data_dir: str) -> StorageBackend:
    """Pick the backend once for the lifetime of the process"""
    if is_writable_directory(data_dir):
        logger.info(f"📁 Using document storage in {os.path.abspath(data_dir)}")
        return DocumentStorageBackend(data_dir)
    logger.warning("⚠️ File system is read-only, using in-memory storage")
    return MemoryStorageBackend()


# ====================================================================
# ORDER STORE - SINGLE SOURCE OF TRUTH
# ====================================================================

class OrderStore:
    """
    Keyed order/user store

    The backend is read once by initialize(); afterwards the working set is
    authoritative and every mutation is written through while holding a
    single lock. Callers always receive copies, never the stored dicts.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            ORDERS: {},
            USERS: {},
        }
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            for collection in (ORDERS, USERS):
                payload = await asyncio.to_thread(self.backend.load, collection)
                records, dirty = self._sanitize(collection, payload)
                self._collections[collection] = records
                logger.info(f"✅ {collection} loaded with {len(records)} records ({self.backend.name})")
                if dirty:
                    await self._persist(collection)
            self._initialized = True

    def _sanitize(self, collection: str, payload: Any):
        """Drop malformed records; a non-list payload resets the collection"""
        key = COLLECTION_KEYS[collection]
        if not isinstance(payload, list):
            logger.warning(f"⚠️ {collection} is not an array, resetting to empty array")
            return {}, True

        records: Dict[str, Dict[str, Any]] = {}
        dropped = 0
        for record in payload:
            if not isinstance(record, dict) or not record.get(key):
                dropped += 1
                continue
            records[str(record[key])] = record
        if dropped:
            logger.warning(f"⚠️ Found {dropped} invalid {collection} records missing '{key}', cleaning up")
        return records, bool(dropped)

    async def _persist(self, collection: str) -> None:
        """Write one collection through; caller holds the lock"""
        records = list(self._collections[collection].values())
        try:
            await asyncio.to_thread(self.backend.save, collection, records)
        except StorageUnavailableError as e:
            logger.warning(f"⚠️ Read-only file system detected ({e}), falling back to in-memory storage")
            # Permanent for this process
            self.backend = MemoryStorageBackend({
                name: list(items.values()) for name, items in self._collections.items()
            })

    async def _write_record(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        """
        Install one record and write the collection through; caller holds the lock

        If the write fails the previous record (or its absence) is restored
        before the error propagates, so the working set never holds a change
        the medium rejected.
        """
        items = self._collections[collection]
        previous = items.get(key)
        items[key] = record
        try:
            await self._persist(collection)
        except Exception:
            if previous is None:
                items.pop(key, None)
            else:
                items[key] = previous
            logger.error(f"❌ Write of {collection}/{key} failed, change rolled back")
            raise

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    # ----------------------------------------------------------------
    # Orders
    # ----------------------------------------------------------------

    async def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_initialized()
        async with self._lock:
            order = self._collections[ORDERS].get(order_id)
            return copy.deepcopy(order) if order is not None else None

    async def upsert(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Merge fields into an existing order or insert it, backfilling required fields"""
        await self._ensure_initialized()
        async with self._lock:
            orders = self._collections[ORDERS]
            now = get_utc_for_db()
            fields = copy.deepcopy(order)

            order_id = fields.get('id')
            if not order_id:
                order_id = generate_order_id()
                while order_id in orders:
                    order_id = generate_order_id()
                fields['id'] = order_id

            existing = orders.get(order_id)
            if existing is not None:
                merged = {**existing, **fields}
            else:
                merged = dict(fields)
                merged.setdefault('status', OrderStatus.PENDING.value)
                merged.setdefault('created_at', now)
            if not merged.get('created_at'):
                merged['created_at'] = now
            if not merged.get('status'):
                merged['status'] = OrderStatus.PENDING.value
            merged['updated_at'] = now

            await self._write_record(ORDERS, order_id, merged)
            return copy.deepcopy(merged)

    async def update_status(
        self,
        order_id: str,
        new_status: Any,
        provisioned_resource: Optional[Dict[str, Any]] = None,
        **extra_fields: Any
    ) -> Optional[Dict[str, Any]]:
        """
        Set an order's status, optionally attaching the provisioned resource

        Returns None without touching anything when the id is unknown.
        """
        await self._ensure_initialized()
        async with self._lock:
            current = self._collections[ORDERS].get(order_id)
            if current is None:
                logger.warning(f"⚠️ Order {order_id} not found for status update")
                return None

            order = copy.deepcopy(current)
            order['status'] = new_status.value if isinstance(new_status, OrderStatus) else str(new_status)
            if provisioned_resource is not None:
                order['provisioned_resource'] = copy.deepcopy(provisioned_resource)
            for key, value in extra_fields.items():
                order[key] = value
            order['updated_at'] = get_utc_for_db()

            await self._write_record(ORDERS, order_id, order)
            return copy.deepcopy(order)

    async def find_pending_by_owner(self, owner_name: str) -> Optional[Dict[str, Any]]:
        await self._ensure_initialized()
        async with self._lock:
            for order in self._collections[ORDERS].values():
                if order.get('owner_name') == owner_name and order.get('status') == OrderStatus.PENDING.value:
                    return copy.deepcopy(order)
            return None

    async def list_orders(self) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        async with self._lock:
            return copy.deepcopy(list(self._collections[ORDERS].values()))

    # ----------------------------------------------------------------
    # Users (panel credential cache)
    # ----------------------------------------------------------------

    async def save_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Merge by owner_name; created_at is set once, on the first save"""
        await self._ensure_initialized()
        owner_name = user.get('owner_name')
        if not owner_name:
            raise ValueError("user record requires owner_name")
        async with self._lock:
            existing = self._collections[USERS].get(owner_name, {})
            merged = {**existing, **copy.deepcopy(user)}
            merged['created_at'] = existing.get('created_at') or merged.get('created_at') or get_utc_for_db()
            merged['updated_at'] = get_utc_for_db()
            await self._write_record(USERS, owner_name, merged)
            return copy.deepcopy(merged)

    async def get_user(self, owner_name: str) -> Optional[Dict[str, Any]]:
        await self._ensure_initialized()
        async with self._lock:
            user = self._collections[USERS].get(owner_name)
            return copy.deepcopy(user) if user is not None else None

    async def counts(self) -> Dict[str, int]:
        await self._ensure_initialized()
        async with self._lock:
            return {
                'orders_count': len(self._collections[ORDERS]),
                'users_count': len(self._collections[USERS]),
            }


# Global store instance, set up by the application lifespan
_order_store: Optional[OrderStore] = None


def init_order_store(data_dir: str) -> OrderStore:
    """Create the process-wide store with a backend chosen now"""
    global _order_store
    _order_store = OrderStore(select_backend(data_dir))
    return _order_store


def get_order_store() -> OrderStore:
    """Get global order store, creating it from configuration on first use"""
    global _order_store
    if _order_store is None:
        from config import get_config
        _order_store = OrderStore(select_backend(get_config().storage.data_dir))
    return _order_store


def set_order_store(store: Optional[OrderStore]) -> None:
    global _order_store
    _order_store = store
