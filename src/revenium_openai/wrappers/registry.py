"""
Instance Registry
=================
Identity-keyed side table of patched clients and their provider descriptors.
"""

import itertools
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from revenium_openai.providers import ProviderDescriptor

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    handle: int
    descriptor: ProviderDescriptor
    ref: Any


class InstanceRegistry:
    """
    Track which client instances are patched.

    Entries are keyed by object identity and hold only a weak reference,
    so a collected client drops out of the table. Objects that cannot be
    weakly referenced are held strongly.
    """

    def __init__(self) -> None:
        self._entries: dict[int, _Entry] = {}
        self._handles = itertools.count(1)
        self._lock = threading.RLock()

    def _lookup(self, instance: Any) -> Optional[_Entry]:
        entry = self._entries.get(id(instance))
        if entry is None:
            return None
        target = entry.ref() if isinstance(entry.ref, weakref.ref) else entry.ref
        return entry if target is instance else None

    def is_registered(self, instance: Any) -> bool:
        with self._lock:
            return self._lookup(instance) is not None

    def register(self, instance: Any, descriptor: ProviderDescriptor) -> int:
        """
        Register an instance; returns its handle.

        Registering an instance twice returns the existing handle.
        """
        key = id(instance)
        with self._lock:
            existing = self._lookup(instance)
            if existing is not None:
                return existing.handle

            handle = next(self._handles)

            def _purge(_ref: Any, key: int = key, handle: int = handle) -> None:
                with self._lock:
                    entry = self._entries.get(key)
                    if entry is not None and entry.handle == handle:
                        del self._entries[key]

            try:
                ref: Any = weakref.ref(instance, _purge)
            except TypeError:
                logger.debug("Client does not support weak references", client=type(instance).__name__)
                ref = instance

            self._entries[key] = _Entry(handle=handle, descriptor=descriptor, ref=ref)
            return handle

    def descriptor_for(self, instance: Any) -> Optional[ProviderDescriptor]:
        with self._lock:
            entry = self._lookup(instance)
            return entry.descriptor if entry else None

    def __len__(self) -> int:
        return len(self._entries)


registry = InstanceRegistry()
