"""
Target writers: push mapped entities into the warehouse.

write(scope, item) -> bool reports per-entity success; write_batch returns
one bool per item. Where the warehouse has no batch endpoint, a batch is
sequential per-item calls in which one failure doesn't stop the rest.
"""
import logging
from typing import Any, Dict, List, Optional

from erpwms.warehouse.client import WarehouseError

logger = logging.getLogger(__name__)


class TargetWriteError(RuntimeError):
    """Raised by writers that cannot report per-item results."""


class TargetWriter:
    """Base writer; subclasses implement write()."""

    async def write(self, scope: str, item: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def write_batch(self, scope: str, items: List[Dict[str, Any]]) -> List[bool]:
        results = []
        for item in items:
            results.append(await self.write(scope, item))
        return results


class UpsertWriter(TargetWriter):
    """Existence check by natural key, then PUT or POST."""

    def __init__(self, wms, resource: str, key_field: str, payload_key: Optional[str] = None):
        """
        Args:
            wms: WarehouseClient (or AsyncMock in tests).
            resource: REST resource, e.g. "products".
            key_field: query parameter used for the lookup, e.g. "Sku".
            payload_key: payload field holding the key; defaults to key_field.
        """
        self.wms = wms
        self.resource = resource
        self.key_field = key_field
        self.payload_key = payload_key or key_field

    async def write(self, scope: str, item: Dict[str, Any]) -> bool:
        key = item.get(self.payload_key)
        try:
            await self.wms.upsert(self.resource, self.key_field, key, item)
        except WarehouseError as exc:
            logger.error("Failed to write %s %s for %s: %s", self.resource, key, scope, exc)
            return False
        logger.debug("Wrote %s %s for %s", self.resource, key, scope)
        return True


class CustomerBatchWriter(TargetWriter):
    """Uses the warehouse's native customers/batch endpoint."""

    def __init__(self, wms):
        self.wms = wms

    async def write(self, scope: str, item: Dict[str, Any]) -> bool:
        return (await self.write_batch(scope, [item]))[0]

    async def write_batch(self, scope: str, items: List[Dict[str, Any]]) -> List[bool]:
        if not items:
            return []
        try:
            await self.wms.upsert_customer_batch(items)
        except WarehouseError as exc:
            logger.error("Customer batch of %d failed for %s: %s", len(items), scope, exc)
            return [False] * len(items)
        logger.info("Sent batch of %d customers for %s", len(items), scope)
        return [True] * len(items)
