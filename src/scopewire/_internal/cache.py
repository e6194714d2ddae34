from __future__ import annotations

import asyncio
import itertools
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass
from typing import Any, NamedTuple

from scopewire.exceptions import ContainerClosedError
from scopewire.lock_mode import LockMode
from scopewire.providers import Finalizer, UserDependency

LockFactory = Callable[[], AbstractContextManager[Any]]


def lock_factory_for(lock_mode: LockMode) -> LockFactory:
    """Return the lock constructor used by caches and flights in ``lock_mode``."""
    if lock_mode is LockMode.THREAD:
        return threading.Lock
    return nullcontext


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached instance and its creation order within the owning container."""

    instance: Any
    sequence: int


class FinalizerEntry(NamedTuple):
    """One Finalizer Stack frame: the instance and the finalizer releasing it."""

    key: UserDependency
    instance: Any
    finalizer: Finalizer


Actor = tuple[int, "asyncio.Task[Any] | None"]


def current_actor() -> Actor:
    """Identify the running thread and, inside an event loop, the running task."""
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    return threading.get_ident(), task


class Flight:
    """Track one in-progress factory call so concurrent callers share its result.

    Threads wait on a ``threading.Event``; asyncio tasks wait on a future of
    their own loop which is completed with ``call_soon_threadsafe``, so the
    owner may run in any thread or task.
    """

    __slots__ = ("_async_waiters", "_done", "_event", "_lock", "error", "key", "owner")

    def __init__(self, lock: AbstractContextManager[Any], key: UserDependency) -> None:
        self._lock = lock
        self._event = threading.Event()
        self._async_waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []
        self._done = False
        self.error: Exception | None = None
        """Error raised by the owner; ``None`` after success or when abandoned."""
        self.key = key
        self.owner = current_actor()

    @property
    def owner_thread(self) -> int:
        return self.owner[0]

    def wait(self) -> None:
        """Block the calling thread until the owner finishes."""
        self._event.wait()

    async def wait_async(self) -> None:
        """Suspend the calling task until the owner finishes."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        with self._lock:
            if self._done:
                return
            self._async_waiters.append((loop, future))
        await future

    def finish(self, error: Exception | None) -> None:
        """Record the outcome and wake every waiter."""
        with self._lock:
            self._done = True
            self.error = error
            waiters, self._async_waiters = self._async_waiters, []
        self._event.set()
        for loop, future in waiters:
            loop.call_soon_threadsafe(_wake, future)


class WaitForGraph:
    """Record which flight each blocked thread or task is waiting on.

    A waiter following the chain of owners back to itself would never be
    woken; ``enter`` reports that chain instead of registering the wait.
    The graph is shared by every container and guarded by one lock, so two
    owners blocking on each other cannot both miss the loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiting: dict[Actor, Flight] = {}

    def enter(self, actor: Actor, flight: Flight) -> tuple[UserDependency, ...] | None:
        """Register ``actor`` as waiting on ``flight``.

        Returns:
            ``None`` once registered, or the keys of the flights leading back
            to one owned by ``actor``, in which case nothing is registered.

        """
        with self._lock:
            keys: list[UserDependency] = []
            seen: set[int] = set()
            current: Flight | None = flight
            while current is not None and id(current) not in seen:
                seen.add(id(current))
                keys.append(current.key)
                if current.owner == actor:
                    return tuple(keys)
                current = self._waiting.get(current.owner)
            self._waiting[actor] = flight
            return None

    def leave(self, actor: Actor) -> None:
        with self._lock:
            self._waiting.pop(actor, None)


wait_for_graph = WaitForGraph()


class Claim(NamedTuple):
    """Outcome of ``Cache.claim``: a cached entry, or a flight to own or wait on."""

    entry: CacheEntry | None
    flight: Flight | None
    is_owner: bool


class Cache:
    """Hold one container's cached instances, in-flight claims and Finalizer Stack.

    Every mutation happens under the container's lock; the lock is never held
    while user code (factories, finalizers) runs.
    """

    def __init__(self, lock_factory: LockFactory) -> None:
        self._lock_factory = lock_factory
        self._lock = lock_factory()
        self._entries: dict[UserDependency, CacheEntry] = {}
        self._flights: dict[UserDependency, Flight] = {}
        self._finalizers: list[FinalizerEntry] = []
        self._sequence = itertools.count()
        self._closed = False

    def get(self, key: UserDependency) -> CacheEntry | None:
        """Return the cached entry for ``key``, if any."""
        with self._lock:
            return self._entries.get(key)

    def seed(self, key: UserDependency, value: Any) -> None:
        """Store a context value; seeded values are never finalized."""
        with self._lock:
            self._entries[key] = CacheEntry(instance=value, sequence=next(self._sequence))

    def claim(self, key: UserDependency) -> Claim:
        """Return the cached entry, the running flight, or a new flight owned by the caller.

        Raises:
            ContainerClosedError: If the cache was closed.

        """
        with self._lock:
            if self._closed:
                msg = "Container is closed."
                raise ContainerClosedError(msg)
            entry = self._entries.get(key)
            if entry is not None:
                return Claim(entry=entry, flight=None, is_owner=False)
            flight = self._flights.get(key)
            if flight is not None:
                return Claim(entry=None, flight=flight, is_owner=False)
            flight = Flight(self._lock_factory(), key)
            self._flights[key] = flight
            return Claim(entry=None, flight=flight, is_owner=True)

    def publish(
        self,
        key: UserDependency,
        flight: Flight,
        instance: Any,
        finalizer: Finalizer | None,
    ) -> CacheEntry:
        """Store the owner's result, push its finalizer and wake the waiters.

        Raises:
            ContainerClosedError: If the cache was closed while the factory ran.
                Waiters are released and nothing is stored; releasing the
                instance is left to the caller.

        """
        with self._lock:
            self._flights.pop(key, None)
            if self._closed:
                error: Exception | None = ContainerClosedError(
                    f"Container was closed while {key!r} was being created.",
                )
                entry = None
            else:
                error = None
                entry = CacheEntry(instance=instance, sequence=next(self._sequence))
                self._entries[key] = entry
                if finalizer is not None:
                    self._finalizers.append(FinalizerEntry(key, instance, finalizer))
        flight.finish(error)
        if error is not None:
            raise error
        return entry  # type: ignore[return-value]

    def release(self, key: UserDependency, flight: Flight, error: Exception | None) -> None:
        """Drop the owner's claim after a failure (``error``) or a cancellation (``None``)."""
        with self._lock:
            if self._flights.get(key) is flight:
                del self._flights[key]
        flight.finish(error)

    def has_async_finalizers(self) -> bool:
        """Return True when any pending finalizer must be awaited."""
        with self._lock:
            return any(entry.finalizer.is_async for entry in self._finalizers)

    def close(self) -> list[FinalizerEntry]:
        """Close the cache and return pending finalizers, last created first.

        Cached references are dropped; the returned frames keep finalized
        instances alive until their finalizers have run.
        """
        with self._lock:
            self._closed = True
            finalizers, self._finalizers = self._finalizers, []
            self._entries.clear()
        finalizers.reverse()
        return finalizers


def _wake(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)
