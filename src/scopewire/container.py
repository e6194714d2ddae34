from __future__ import annotations

import inspect
import logging
import threading
import weakref
from collections.abc import Mapping
from contextvars import ContextVar
from types import TracebackType
from typing import Any, NamedTuple, TypeVar, cast, overload

from scopewire._internal.cache import (
    Actor,
    Cache,
    CacheEntry,
    FinalizerEntry,
    Flight,
    current_actor,
    lock_factory_for,
    wait_for_graph,
)
from scopewire.exceptions import (
    AsyncFinalizerInSyncContextError,
    AsyncProviderInSyncContextError,
    ContainerClosedError,
    CycleDetectedError,
    EnterScopeError,
    InstantiatorFailedError,
    NoProviderFoundError,
    ScopeMismatchError,
    ScopeWireError,
)
from scopewire.lock_mode import LockMode
from scopewire.markers import dependency_key
from scopewire.providers import OMITTED, Provider, ProviderDependency, UserDependency
from scopewire.registry import Registry
from scopewire.scope import BaseScope

T = TypeVar("T")

logger = logging.getLogger(__name__)

_resolution_path: ContextVar[tuple[tuple[Container, UserDependency], ...]] = ContextVar(
    "scopewire_resolution_path",
    default=(),
)


class _Lookup(NamedTuple):
    entry: CacheEntry | None
    provider: Provider | None
    owner: Container | None


class Container:
    """Resolve dependencies for one scope of a container tree.

    A root container is created from a built ``Registry``; deeper containers
    are derived with ``enter_build()`` or ``enter()``. Each container owns the
    cache and the finalizer stack for values produced at its scope, while
    values of shallower scopes are produced and cached by the ancestor at
    that scope.

    Examples:
        .. code-block:: python

            registry = (
                RegistryBuilder()
                .provide(Engine, Scope.APP)
                .provide(Session, Scope.REQUEST)
                .add_finalizer(lambda session: session.close(), provides=Session)
                .build()
            )

            with Container(registry, scope=Scope.APP) as app:
                with app.enter_build() as request:
                    session = request.get(Session)

    """

    def __init__(
        self,
        registry: Registry,
        *,
        scope: BaseScope | None = None,
        lock_mode: LockMode = LockMode.THREAD,
        context: Mapping[UserDependency, Any] | None = None,
    ) -> None:
        """Initialize a root container.

        Args:
            registry: Built registry shared by the whole container tree.
            scope: Scope to start at. Defaults to the registry's root scope;
                any shallower scopes are created as implicit ancestors that
                close together with this container.
            lock_mode: Locking strategy inherited by every child.
            context: Values seeded into this container's cache.

        Raises:
            EnterScopeError: If ``scope`` is not part of the registry's scopes.

        """
        scopes = registry.scopes
        target = registry.root_scope if scope is None else scope
        if target not in scopes:
            msg = f"Scope {target!r} is not part of {type(scopes).__name__}."
            raise EnterScopeError(msg)

        parent: Container | None = None
        for ancestor_scope in scopes.ordered:
            if ancestor_scope is target:
                break
            parent = Container._spawn(
                registry,
                ancestor_scope,
                parent=parent,
                lock_mode=lock_mode,
                close_parent=parent is not None,
                context=None,
            )

        self._setup(
            registry,
            target,
            parent=parent,
            lock_mode=lock_mode,
            close_parent=parent is not None,
            context=context,
        )

    @classmethod
    def _spawn(
        cls,
        registry: Registry,
        scope: BaseScope,
        *,
        parent: Container | None,
        lock_mode: LockMode,
        close_parent: bool,
        context: Mapping[UserDependency, Any] | None,
    ) -> Container:
        container = cls.__new__(cls)
        container._setup(
            registry,
            scope,
            parent=parent,
            lock_mode=lock_mode,
            close_parent=close_parent,
            context=context,
        )
        return container

    def _setup(
        self,
        registry: Registry,
        scope: BaseScope,
        *,
        parent: Container | None,
        lock_mode: LockMode,
        close_parent: bool,
        context: Mapping[UserDependency, Any] | None,
    ) -> None:
        self._registry = registry
        self._scope = scope
        self._parent = parent
        self._lock_mode = lock_mode
        self._close_parent = close_parent
        lock_factory = lock_factory_for(lock_mode)
        self._cache = Cache(lock_factory)
        self._children_lock = lock_factory()
        self._children: list[weakref.ref[Container]] = []
        self._closing = False
        self._closed = False

        if context:
            for key, value in context.items():
                self._cache.seed(dependency_key(key), value)
        if parent is not None:
            parent._adopt(self)
        logger.debug("Container entered at %r (implicit parent: %s)", scope, close_parent)

    @property
    def registry(self) -> Registry:
        """The registry shared by this container tree."""
        return self._registry

    @property
    def scope(self) -> BaseScope:
        """The scope this container represents."""
        return self._scope

    @property
    def parent(self) -> Container | None:
        """The enclosing container, or ``None`` for the root."""
        return self._parent

    @property
    def closed(self) -> bool:
        """True once ``close()`` or ``aclose()`` has finished."""
        return self._closed

    @property
    def lock_mode(self) -> LockMode:
        """The locking strategy of this container tree."""
        return self._lock_mode

    def enter_build(self) -> Container:
        """Enter the next non-skippable scope below this container.

        Equivalent to ``enter()`` without arguments.

        Raises:
            EnterScopeError: If no deeper scope exists or only skippable ones do.
            ContainerClosedError: If this container is closed.

        """
        return self.enter()

    def enter(
        self,
        scope: BaseScope | None = None,
        *,
        context: Mapping[UserDependency, Any] | None = None,
    ) -> Container:
        """Create a child container at a deeper scope.

        Scopes between this container and the target are materialized as
        implicit intermediate containers, which close when the returned child
        closes. ``context`` values are seeded into every container created by
        this call and are never finalized.

        Args:
            scope: Target scope. Defaults to the next non-skippable scope.
            context: Values available to ``get`` and to factories running in
                the new containers.

        Returns:
            The container at the target scope.

        Raises:
            EnterScopeError: If the target is missing, not deeper than this
                container, or only skippable scopes remain.
            ContainerClosedError: If this container is closed.

        Examples:
            .. code-block:: python

                async with app.enter(Scope.REQUEST, context={Request: request}) as scoped:
                    handler = await scoped.aget(Handler)

        """
        self._ensure_open()
        descendants = self._registry.scopes.descendants(self._scope)
        if not descendants:
            msg = f"Cannot enter a scope below {self._scope!r}: it is the deepest scope."
            raise EnterScopeError(msg)

        if scope is None:
            target = next((candidate for candidate in descendants if not candidate.skippable), None)
            if target is None:
                msg = f"Cannot enter a scope below {self._scope!r}: only skippable scopes remain."
                raise EnterScopeError(msg)
        else:
            if not any(candidate is scope for candidate in descendants):
                msg = f"Cannot enter {scope!r} from {self._scope!r}: it is not a deeper scope."
                raise EnterScopeError(msg)
            target = scope

        container: Container = self
        for step_scope in descendants:
            container = Container._spawn(
                self._registry,
                step_scope,
                parent=container,
                lock_mode=self._lock_mode,
                close_parent=container is not self,
                context=context,
            )
            if step_scope is target:
                break
        return container

    @overload
    def get(self, dependency: type[T]) -> T: ...

    @overload
    def get(self, dependency: Any) -> Any: ...

    def get(self, dependency: Any) -> Any:
        """Resolve a dependency, reusing cached values.

        Args:
            dependency: Dependency key to resolve.

        Returns:
            The cached value when one exists in this container or the owning
            ancestor, otherwise a newly produced (and, when cacheable, cached)
            value.

        Raises:
            NoProviderFoundError: If nothing provides the key.
            ScopeMismatchError: If the key is only provided at deeper scopes or
                at a scope missing from this container's chain.
            CycleDetectedError: If the key is already being resolved on this path.
            InstantiatorFailedError: If the factory raised.
            AsyncProviderInSyncContextError: If the provider must be awaited.
            ContainerClosedError: If this container is closed.

        Notes:
            Typical fixes:
            1. Register the missing provider.
            2. Enter the required scope before resolving scoped dependencies.
            3. Switch to ``aget`` for async providers.

        """
        return self._resolve(dependency_key(dependency), transient=False)

    @overload
    def get_transient(self, dependency: type[T]) -> T: ...

    @overload
    def get_transient(self, dependency: Any) -> Any: ...

    def get_transient(self, dependency: Any) -> Any:
        """Produce a fresh value, bypassing cache reads and writes.

        Transient values are never finalized. Dependencies of the factory are
        resolved as the provider declares them.

        Raises:
            Same errors as ``get``.

        """
        return self._resolve(dependency_key(dependency), transient=True)

    @overload
    async def aget(self, dependency: type[T]) -> T: ...

    @overload
    async def aget(self, dependency: Any) -> Any: ...

    async def aget(self, dependency: Any) -> Any:
        """Resolve a dependency asynchronously, reusing cached values.

        Async factories are awaited and sync factories run inline. Concurrent
        callers of one cacheable key, from tasks or threads, share a single
        factory call.

        Raises:
            Same errors as ``get`` except ``AsyncProviderInSyncContextError``.

        """
        return await self._aresolve(dependency_key(dependency), transient=False)

    @overload
    async def aget_transient(self, dependency: type[T]) -> T: ...

    @overload
    async def aget_transient(self, dependency: Any) -> Any: ...

    async def aget_transient(self, dependency: Any) -> Any:
        """Asynchronously produce a fresh value, bypassing the cache."""
        return await self._aresolve(dependency_key(dependency), transient=True)

    def close(self) -> None:
        """Close live children, run finalizers and detach from the parent.

        Finalizers run in reverse creation order. A failing finalizer is
        logged and the remaining ones still run. Closing a closed container
        does nothing.

        Raises:
            AsyncFinalizerInSyncContextError: If any container this call would
                close holds an async finalizer. Nothing is closed in that case.

        """
        if self._closed or self._closing:
            return
        if self._pending_async_finalizers():
            msg = (
                f"Container at {self._scope!r} holds async finalizers; "
                "use `await container.aclose()`."
            )
            raise AsyncFinalizerInSyncContextError(msg)

        self._closing = True
        for child in self._live_children():
            child.close()
        for entry in self._cache.close():
            self._call_finalizer(entry)
        self._finish_close()
        if self._close_parent and self._parent is not None:
            self._parent.close()

    async def aclose(self) -> None:
        """Close the container, awaiting async finalizers.

        Same ordering and failure handling as ``close()``; sync finalizers run
        inline.
        """
        if self._closed or self._closing:
            return

        self._closing = True
        for child in self._live_children():
            await child.aclose()
        for entry in self._cache.close():
            await self._acall_finalizer(entry)
        self._finish_close()
        if self._close_parent and self._parent is not None:
            await self._parent.aclose()

    def __enter__(self) -> Container:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> Container:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}(scope={self._scope!r}, {state})"

    def _resolve(self, key: UserDependency, *, transient: bool) -> Any:
        self._ensure_open()
        if key is Container:
            return self

        token = _resolution_path.set(self._push_frame(key))
        try:
            lookup = self._lookup(key, transient=transient)
            if lookup.entry is not None:
                return lookup.entry.instance
            provider = cast("Provider", lookup.provider)
            owner = cast("Container", lookup.owner)
            if owner is not self:
                return owner._resolve(key, transient=transient)
            if provider.is_async:
                msg = (
                    f"Provider for {key!r} is async; "
                    "use `await container.aget(...)` instead of `get(...)`."
                )
                raise AsyncProviderInSyncContextError(msg)
            if transient or not provider.cacheable:
                return self._instantiate(provider)
            return self._resolve_cached(provider)
        finally:
            _resolution_path.reset(token)

    async def _aresolve(self, key: UserDependency, *, transient: bool) -> Any:
        self._ensure_open()
        if key is Container:
            return self

        token = _resolution_path.set(self._push_frame(key))
        try:
            lookup = self._lookup(key, transient=transient)
            if lookup.entry is not None:
                return lookup.entry.instance
            provider = cast("Provider", lookup.provider)
            owner = cast("Container", lookup.owner)
            if owner is not self:
                return await owner._aresolve(key, transient=transient)
            if transient or not provider.cacheable:
                return await self._ainstantiate(provider)
            return await self._aresolve_cached(provider)
        finally:
            _resolution_path.reset(token)

    def _push_frame(self, key: UserDependency) -> tuple[tuple[Container, UserDependency], ...]:
        path = _resolution_path.get()
        for index, (container, frame_key) in enumerate(path):
            if container is self and frame_key == key:
                cycle = [frame[1] for frame in path[index:]]
                cycle.append(key)
                logger.debug("Cycle detected while resolving %r", key)
                raise CycleDetectedError(cycle)
        return (*path, (self, key))

    def _lookup(self, key: UserDependency, *, transient: bool) -> _Lookup:
        providers = self._registry.providers_for(key)
        provider = self._registry.find_provider(key, self._scope)

        if not transient:
            stop_level = provider.scope.level if provider is not None else None
            entry = self._find_cached(key, stop_level)
            if entry is not None:
                logger.debug("Cache hit for %r at %r", key, self._scope)
                return _Lookup(entry=entry, provider=None, owner=None)
            logger.debug("Cache miss for %r at %r", key, self._scope)

        if not providers:
            logger.debug("No provider found for %r", key)
            raise NoProviderFoundError(key)
        if provider is None:
            logger.debug("Provider for %r requires a deeper scope than %r", key, self._scope)
            raise ScopeMismatchError(key, expected=providers[0].scope, actual=self._scope)

        owner = self._ancestor_at(provider.scope)
        if owner is None:
            logger.debug("Scope %r for %r is missing from the container chain", provider.scope, key)
            raise ScopeMismatchError(key, expected=provider.scope, actual=self._scope)
        return _Lookup(entry=None, provider=provider, owner=owner)

    def _find_cached(self, key: UserDependency, stop_level: int | None) -> CacheEntry | None:
        container: Container | None = self
        while container is not None:
            entry = container._cache.get(key)
            if entry is not None:
                return entry
            if stop_level is not None and container._scope.level <= stop_level:
                return None
            container = container._parent
        return None

    def _ancestor_at(self, scope: BaseScope) -> Container | None:
        container: Container | None = self
        while container is not None:
            if container._scope is scope:
                return container
            if container._scope.level < scope.level:
                return None
            container = container._parent
        return None

    def _resolve_cached(self, provider: Provider) -> Any:
        key = provider.provides
        while True:
            claim = self._cache.claim(key)
            if claim.entry is not None:
                return claim.entry.instance
            flight = cast("Flight", claim.flight)
            if claim.is_owner:
                break
            if flight.owner_thread == threading.get_ident():
                msg = (
                    f"{key!r} is being created asynchronously on this thread; "
                    "use `await container.aget(...)`."
                )
                raise AsyncProviderInSyncContextError(msg)
            actor = self._enter_wait(flight)
            try:
                flight.wait()
            finally:
                wait_for_graph.leave(actor)
            if flight.error is not None:
                raise flight.error

        try:
            instance = self._instantiate(provider)
        except Exception as error:
            self._cache.release(key, flight, error)
            raise
        except BaseException:
            self._cache.release(key, flight, None)
            raise
        try:
            return self._publish(flight, provider, instance)
        except ContainerClosedError:
            if provider.finalizer is not None:
                self._call_finalizer(FinalizerEntry(key, instance, provider.finalizer))
            raise

    async def _aresolve_cached(self, provider: Provider) -> Any:
        key = provider.provides
        while True:
            claim = self._cache.claim(key)
            if claim.entry is not None:
                return claim.entry.instance
            flight = cast("Flight", claim.flight)
            if claim.is_owner:
                break
            actor = self._enter_wait(flight)
            try:
                await flight.wait_async()
            finally:
                wait_for_graph.leave(actor)
            if flight.error is not None:
                raise flight.error

        try:
            instance = await self._ainstantiate(provider)
        except Exception as error:
            self._cache.release(key, flight, error)
            raise
        except BaseException:
            self._cache.release(key, flight, None)
            raise
        try:
            return self._publish(flight, provider, instance)
        except ContainerClosedError:
            if provider.finalizer is not None:
                await self._acall_finalizer(FinalizerEntry(key, instance, provider.finalizer))
            raise

    def _enter_wait(self, flight: Flight) -> Actor:
        actor = current_actor()
        chain = wait_for_graph.enter(actor, flight)
        if chain is None:
            return actor
        # The owners of ``chain`` wait on each other and the last one is this caller.
        path = [frame_key for _, frame_key in _resolution_path.get()]
        start = 0
        for index, frame_key in enumerate(path[:-1]):
            if frame_key == chain[-1]:
                start = index
        cycle = [*path[start:], *chain[1:]]
        logger.debug("Cycle detected while waiting for %r", flight.key)
        raise CycleDetectedError(cycle)

    def _publish(self, flight: Flight, provider: Provider, instance: Any) -> Any:
        self._cache.publish(provider.provides, flight, instance, provider.finalizer)
        logger.debug("Cached %r at %r", provider.provides, self._scope)
        if provider.finalizer is not None:
            logger.debug("Finalizer pushed for %r at %r", provider.provides, self._scope)
        return instance

    def _call_finalizer(self, entry: FinalizerEntry) -> None:
        try:
            result = entry.finalizer.callback(entry.instance)
        except Exception:
            logger.exception("Finalizer for %r failed", entry.key)
            return
        if inspect.isawaitable(result):
            logger.warning(
                "Finalizer for %r returned an awaitable that close() cannot await; use aclose()",
                entry.key,
            )
            if inspect.iscoroutine(result):
                result.close()
            return
        logger.debug("Finalizer called for %r", entry.key)

    async def _acall_finalizer(self, entry: FinalizerEntry) -> None:
        try:
            result = entry.finalizer.callback(entry.instance)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Finalizer for %r failed", entry.key)
        else:
            logger.debug("Finalizer called for %r", entry.key)

    def _is_omitted(self, dependency: ProviderDependency) -> bool:
        return (
            dependency.optional
            and dependency.key is not Container
            and not self._registry.providers_for(dependency.key)
            and self._find_cached(dependency.key, None) is None
        )

    def _instantiate(self, provider: Provider) -> Any:
        values = [
            OMITTED
            if self._is_omitted(dependency)
            else self._resolve(dependency.key, transient=dependency.transient)
            for dependency in provider.dependencies
        ]
        args, kwargs = provider.call_arguments(values)
        try:
            return provider.factory(*args, **kwargs)
        except ScopeWireError:
            raise
        except Exception as error:
            logger.debug("Provider for %r failed", provider.provides, exc_info=True)
            raise InstantiatorFailedError(provider.provides, error) from error

    async def _ainstantiate(self, provider: Provider) -> Any:
        values = [
            OMITTED
            if self._is_omitted(dependency)
            else await self._aresolve(dependency.key, transient=dependency.transient)
            for dependency in provider.dependencies
        ]
        args, kwargs = provider.call_arguments(values)
        try:
            instance = provider.factory(*args, **kwargs)
            if provider.is_async:
                instance = await instance
        except ScopeWireError:
            raise
        except Exception as error:
            logger.debug("Provider for %r failed", provider.provides, exc_info=True)
            raise InstantiatorFailedError(provider.provides, error) from error
        return instance

    def _ensure_open(self) -> None:
        if self._closed or self._closing:
            msg = f"Container at {self._scope!r} is closed."
            raise ContainerClosedError(msg)

    def _adopt(self, child: Container) -> None:
        with self._children_lock:
            self._children = [ref for ref in self._children if ref() is not None]
            self._children.append(weakref.ref(child))

    def _forget(self, child: Container) -> None:
        with self._children_lock:
            self._children = [
                ref for ref in self._children if ref() is not None and ref() is not child
            ]

    def _live_children(self) -> list[Container]:
        with self._children_lock:
            children = [ref() for ref in reversed(self._children)]
            self._children = []
        return [child for child in children if child is not None and not child._closed]

    def _pending_async_finalizers(self) -> bool:
        container = self
        while True:
            if container._subtree_has_async_finalizers():
                return True
            parent = container._parent
            if not container._close_parent or parent is None or parent._closing:
                return False
            container = parent

    def _subtree_has_async_finalizers(self) -> bool:
        if self._cache.has_async_finalizers():
            return True
        return any(child._subtree_has_async_finalizers() for child in self._live_children_snapshot())

    def _live_children_snapshot(self) -> list[Container]:
        with self._children_lock:
            children = [ref() for ref in self._children]
        return [child for child in children if child is not None and not child._closed]

    def _finish_close(self) -> None:
        self._closed = True
        if self._parent is not None:
            self._parent._forget(self)
        logger.debug("Container closed at %r", self._scope)
