"""
WHT Rate Tables

The effective withholding rate for a procurement type is looked up from an
external table. The calculator only depends on the ``RateTable`` contract;
tables are injected where they are needed, and caching is a wrapper rather
than module-level state.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .storage import StorageInterface
from .tax import validate_rate
from .logging_config import get_logger

DEFAULT_PROCUREMENT_TYPE = "DEFAULT"


def normalize_procurement_type(procurement_type: Optional[str]) -> str:
    normalized = (procurement_type or "").strip().upper()
    return normalized or DEFAULT_PROCUREMENT_TYPE


class RateTable(ABC):
    """Contract for WHT rate lookups"""

    @abstractmethod
    def get_effective_rate(self, procurement_type: str) -> Decimal:
        """Return the WHT rate (fraction) for a procurement type, 0 if unknown"""
        pass


class StaticRateTable(RateTable):
    """Fixed rates supplied at construction, mainly for tests and scripts"""

    def __init__(self, rates: Dict[str, Any]):
        self._rates = {
            normalize_procurement_type(k): validate_rate(v, f"rate for {k}")
            for k, v in rates.items()
        }

    def get_effective_rate(self, procurement_type: str) -> Decimal:
        return self._rates.get(normalize_procurement_type(procurement_type), Decimal('0'))


class StorageRateTable(RateTable):
    """Procurement types and their WHT rates kept in storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "procurement_types"):
        self.storage = storage
        self.table_name = table_name
        self.logger = get_logger("voucher_ledger.rates")

    def set_rate(self, procurement_type: str, rate: Any, description: str = "") -> Decimal:
        """Create or update the rate for a procurement type"""
        key = normalize_procurement_type(procurement_type)
        rate = validate_rate(rate, f"rate for {key}")
        now = datetime.now(timezone.utc).isoformat()
        existing = self.storage.load(self.table_name, key)
        self.storage.save(self.table_name, key, {
            "id": key,
            "name": key,
            "wht_rate": str(rate),
            "description": description,
            "is_active": True,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        })
        return rate

    def deactivate(self, procurement_type: str) -> bool:
        key = normalize_procurement_type(procurement_type)
        record = self.storage.load(self.table_name, key)
        if not record:
            return False
        record["is_active"] = False
        record["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, key, record)
        return True

    def list_rates(self) -> List[Dict[str, Any]]:
        return sorted(self.storage.load_all(self.table_name), key=lambda r: r["name"])

    def get_effective_rate(self, procurement_type: str) -> Decimal:
        key = normalize_procurement_type(procurement_type)
        record = self.storage.load(self.table_name, key)
        if not record or not record.get("is_active", True):
            self.logger.warning("No WHT rate configured for procurement type %s", key)
            return Decimal('0')
        return validate_rate(record["wht_rate"], f"rate for {key}")


class CachedRateTable(RateTable):
    """TTL cache in front of another rate table"""

    def __init__(self, inner: RateTable, ttl_seconds: float = 600,
                 clock: Callable[[], float] = time.monotonic):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: Dict[str, Tuple[Decimal, float]] = {}
        self._lock = threading.Lock()

    def get_effective_rate(self, procurement_type: str) -> Decimal:
        key = normalize_procurement_type(procurement_type)
        now = self.clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached and cached[1] > now:
                return cached[0]
        rate = self.inner.get_effective_rate(key)
        with self._lock:
            self._cache[key] = (rate, now + self.ttl_seconds)
        return rate

    def invalidate(self, procurement_type: Optional[str] = None) -> None:
        """Drop one cached rate, or all of them"""
        with self._lock:
            if procurement_type is None:
                self._cache.clear()
            else:
                self._cache.pop(normalize_procurement_type(procurement_type), None)
