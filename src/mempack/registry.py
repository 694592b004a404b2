"""Explicit tenant to manager registry."""

import logging
import threading
from typing import Callable, Optional

from mempack.config import ResolvedConfig, config_fingerprint
from mempack.manager import MemorySearchManager
from mempack.models import Tenant

logger = logging.getLogger(__name__)

ManagerFactory = Callable[[Tenant, ResolvedConfig], MemorySearchManager]


class ManagerRegistry:
    """Holds one ``MemorySearchManager`` per tenant.

    Each entry remembers the fingerprint of the config it was built with;
    asking for a tenant with a different config closes the old manager and
    builds a new one.

    Args:
        factory: Builds a manager; defaults to ``MemorySearchManager``
    """

    def __init__(self, factory: Optional[ManagerFactory] = None):
        self._factory = factory or MemorySearchManager
        self._lock = threading.Lock()
        self._managers: dict[Tenant, tuple[str, MemorySearchManager]] = {}

    def get_or_create(self, tenant: Tenant, config: ResolvedConfig) -> MemorySearchManager:
        fingerprint = config_fingerprint(config)
        stale: Optional[MemorySearchManager] = None
        with self._lock:
            entry = self._managers.get(tenant)
            if entry is not None:
                if entry[0] == fingerprint:
                    return entry[1]
                stale = entry[1]
                del self._managers[tenant]
        if stale is not None:
            logger.info(f"Config changed for {tenant.key}; rebuilding memory manager")
            stale.close()

        # Built outside the lock: provider setup can load a model
        manager = self._factory(tenant, config)
        replaced: Optional[MemorySearchManager] = None
        with self._lock:
            entry = self._managers.get(tenant)
            if entry is not None and entry[0] == fingerprint:
                # Another caller won the race
                winner = entry[1]
            else:
                if entry is not None:
                    # Another caller installed a manager for a different config
                    replaced = entry[1]
                self._managers[tenant] = (fingerprint, manager)
                winner = None
        if winner is not None:
            manager.close()
            return winner
        if replaced is not None:
            logger.info(f"Replacing memory manager for {tenant.key} built from another config")
            replaced.close()
        return manager

    def get(self, tenant: Tenant) -> Optional[MemorySearchManager]:
        with self._lock:
            entry = self._managers.get(tenant)
            return entry[1] if entry else None

    def evict(self, tenant: Tenant) -> bool:
        """Close and forget a tenant's manager. Returns True if one existed."""
        with self._lock:
            entry = self._managers.pop(tenant, None)
        if entry is None:
            return False
        entry[1].close()
        return True

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._managers.values())
            self._managers.clear()
        for _, manager in entries:
            manager.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._managers)

    def __contains__(self, tenant: Tenant) -> bool:
        with self._lock:
            return tenant in self._managers
