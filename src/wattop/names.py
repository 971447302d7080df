"""Process name resolution with a bounded LRU cache."""

from collections import OrderedDict
from collections.abc import Iterable, Mapping
from typing import Protocol

import psutil
import structlog

log = structlog.get_logger()


def exited_placeholder(pid: int) -> str:
    """Placeholder name for a pid that cannot be resolved."""
    return f"[exited] PID {pid}"


class NameResolver(Protocol):
    """Batched pid to name lookup. Unknown pids are simply absent."""

    def resolve(self, pids: set[int]) -> dict[int, str]: ...


class PsutilNameResolver:
    """Resolve process names with a single psutil process scan."""

    def resolve(self, pids: set[int]) -> dict[int, str]:
        names: dict[int, str] = {}
        if not pids:
            return names

        for proc in psutil.process_iter(attrs=["pid", "name"]):
            try:
                info = proc.info
                pid = info.get("pid")
                if pid in pids and info.get("name"):
                    names[pid] = info["name"]
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return names


class ProcessNameCache:
    """
    Capacity-bounded, recency-ordered pid to name map.

    Hits move to the most-recent end; inserts past capacity evict the
    least-recently-used entry. OrderedDict gives O(1) for both.
    """

    def __init__(self, resolver: NameResolver, capacity: int = 1024) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self._resolver = resolver
        self._capacity = capacity
        self._entries: OrderedDict[int, str] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, pid: object) -> bool:
        return pid in self._entries

    def pids(self) -> list[int]:
        """Cached pids, least recently used first."""
        return list(self._entries)

    def resolve(
        self,
        pids: Iterable[int],
        fallbacks: Mapping[int, str] | None = None,
    ) -> dict[int, str]:
        """
        Resolve names for the given pids.

        Args:
            pids: Pids to resolve.
            fallbacks: Display names supplied by the telemetry provider, used
                for pids the OS lookup cannot resolve. Fallbacks are not cached.

        Returns:
            A name for every requested pid.
        """
        fallbacks = fallbacks or {}
        names: dict[int, str] = {}
        misses: set[int] = set()

        for pid in pids:
            if pid in self._entries:
                self._entries.move_to_end(pid)
                names[pid] = self._entries[pid]
            else:
                misses.add(pid)

        if not misses:
            return names

        try:
            resolved = self._resolver.resolve(misses)
        except Exception as e:
            log.warning("name_resolution_failed", error=str(e), pids=len(misses))
            resolved = {}

        for pid in misses:
            name = resolved.get(pid)
            if name:
                self._insert(pid, name)
                names[pid] = name
            else:
                names[pid] = fallbacks.get(pid) or exited_placeholder(pid)

        return names

    def _insert(self, pid: int, name: str) -> None:
        self._entries[pid] = name
        self._entries.move_to_end(pid)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
