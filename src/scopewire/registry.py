from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from scopewire.exceptions import (
    DuplicateFinalizerError,
    DuplicateProviderError,
    InvalidRegistrationError,
    UnknownScopeError,
)
from scopewire.markers import dependency_key
from scopewire.providers import (
    FactoryProvider,
    Finalizer,
    FinalizerCallback,
    FinalizerKeyExtractor,
    Provider,
    ProviderDependenciesExtractor,
    ProviderReturnTypeExtractor,
    UserDependency,
)
from scopewire.scope import BaseScope, BaseScopes, Scope

if TYPE_CHECKING:
    from typing_extensions import Self

logger = logging.getLogger(__name__)


class Registry:
    """Hold the immutable set of providers, finalizers and the scope chain.

    A registry is produced by ``RegistryBuilder.build`` and shared by every
    container of a tree. Nothing in it changes after construction.
    """

    __slots__ = ("_finalizers", "_providers", "_scopes")

    def __init__(
        self,
        *,
        scopes: BaseScopes,
        providers: Mapping[UserDependency, tuple[Provider, ...]],
        finalizers: Mapping[UserDependency, Finalizer],
    ) -> None:
        self._scopes = scopes
        self._providers = MappingProxyType(dict(providers))
        self._finalizers = MappingProxyType(dict(finalizers))

    @property
    def scopes(self) -> BaseScopes:
        """The scope collection every provider of this registry belongs to."""
        return self._scopes

    @property
    def root_scope(self) -> BaseScope:
        """The outermost scope; root containers start here by default."""
        return self._scopes.root

    def providers_for(self, key: UserDependency) -> tuple[Provider, ...]:
        """Return every provider registered for ``key``, shallowest scope first.

        Args:
            key: Dependency key to look up.

        """
        return self._providers.get(dependency_key(key), ())

    def find_provider(self, key: UserDependency, scope: BaseScope) -> Provider | None:
        """Return the deepest provider for ``key`` whose scope is not deeper than ``scope``.

        Args:
            key: Dependency key to look up.
            scope: Scope of the requesting container.

        """
        found: Provider | None = None
        for provider in self.providers_for(key):
            if provider.scope.level > scope.level:
                break
            found = provider
        return found

    def get_finalizer(self, key: UserDependency) -> Finalizer | None:
        """Return the finalizer attached to ``key``, if any.

        Args:
            key: Dependency key to look up.

        """
        return self._finalizers.get(dependency_key(key))

    def __contains__(self, key: object) -> bool:
        return dependency_key(key) in self._providers

    def __len__(self) -> int:
        return sum(len(providers) for providers in self._providers.values())

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(providers={len(self)}, "
            f"finalizers={len(self._finalizers)}, scopes={type(self._scopes).__name__})"
        )


class RegistryBuilder:
    """Collect provider and finalizer registrations and build a ``Registry``.

    Registration methods return the builder so calls can be chained. Key and
    dependency inference happens on each call; duplicate and scope checks run
    once in ``build()``.

    Examples:
        .. code-block:: python

            registry = (
                RegistryBuilder()
                .instance(Settings(dsn="sqlite://"))
                .provide(create_engine, Scope.APP)
                .provide(Session, Scope.REQUEST)
                .add_finalizer(lambda session: session.close(), provides=Session)
                .build()
            )

    """

    def __init__(self, scopes: BaseScopes = Scope) -> None:
        """Initialize a builder for the given scope collection.

        Args:
            scopes: Scope collection providers are registered against.

        """
        self._scopes = scopes
        self._providers: list[Provider] = []
        self._finalizers: list[Finalizer] = []
        self._built = False
        self._dependencies_extractor = ProviderDependenciesExtractor()
        self._return_type_extractor = ProviderReturnTypeExtractor()
        self._finalizer_key_extractor = FinalizerKeyExtractor()

    def provide(
        self,
        factory: FactoryProvider[Any],
        scope: BaseScope,
        *,
        provides: UserDependency | None = None,
        cache: bool = True,
    ) -> Self:
        """Register a factory that produces ``provides`` in ``scope``.

        Args:
            factory: Class, function or coroutine function producing the value.
                Its parameters declare its dependencies.
            scope: Scope whose container owns the produced value.
            provides: Explicit dependency key. Inferred from the class itself or
                the function's return annotation when omitted.
            cache: Cache the value per container. ``False`` builds a fresh value
                on every request.

        Raises:
            InvalidRegistrationError: If the builder was already built or the
                factory is not callable.
            InvalidProviderError: If the key or dependencies cannot be inferred.

        """
        self._ensure_not_built()
        if not callable(factory):
            msg = f"Provider factory must be callable, got {factory!r}."
            raise InvalidRegistrationError(msg)

        key = (
            dependency_key(provides)
            if provides is not None
            else self._return_type_extractor.extract_from_factory(factory)
        )
        self._providers.append(
            Provider(
                provides=key,
                factory=factory,
                scope=scope,
                cacheable=cache,
                is_async=self._return_type_extractor.is_factory_async(factory),
                dependencies=self._dependencies_extractor.extract_from_factory(factory),
            ),
        )
        return self

    def instance(
        self,
        value: Any,
        scope: BaseScope | None = None,
        *,
        provides: UserDependency | None = None,
    ) -> Self:
        """Register a pre-built value.

        The value is always cacheable and is returned as-is by every ``get``.

        Args:
            value: The value to provide.
            scope: Scope owning the value; the root scope when omitted.
            provides: Explicit dependency key; ``type(value)`` when omitted.

        """
        self._ensure_not_built()

        def provide_instance() -> Any:
            return value

        self._providers.append(
            Provider(
                provides=dependency_key(provides) if provides is not None else type(value),
                factory=provide_instance,
                scope=scope if scope is not None else self._scopes.root,
                cacheable=True,
            ),
        )
        return self

    def add_finalizer(
        self,
        callback: FinalizerCallback,
        *,
        provides: UserDependency | None = None,
    ) -> Self:
        """Attach a finalizer run for each cached instance of a key on close.

        Args:
            callback: Callable accepting the instance. Coroutine functions are
                awaited by ``aclose()``.
            provides: Explicit dependency key. Inferred from the annotation of
                the callback's first parameter when omitted.

        Raises:
            InvalidProviderError: If the key cannot be inferred.

        """
        self._ensure_not_built()
        if not callable(callback):
            msg = f"Finalizer must be callable, got {callback!r}."
            raise InvalidRegistrationError(msg)

        key = (
            dependency_key(provides)
            if provides is not None
            else self._finalizer_key_extractor.extract(callback)
        )
        self._finalizers.append(
            Finalizer(
                provides=key,
                callback=callback,
                is_async=self._finalizer_key_extractor.is_async(callback),
            ),
        )
        return self

    def build(self) -> Registry:
        """Validate the registrations and freeze them into a ``Registry``.

        Raises:
            UnknownScopeError: If a provider's scope is not in the scope collection.
            DuplicateProviderError: If a key is registered twice in one scope.
            DuplicateFinalizerError: If a key has two finalizers.
            InvalidRegistrationError: If the builder was already built or a key
                is not hashable.

        """
        self._ensure_not_built()

        finalizers: dict[UserDependency, Finalizer] = {}
        for finalizer in self._finalizers:
            self._ensure_hashable(finalizer.provides)
            if finalizer.provides in finalizers:
                raise DuplicateFinalizerError(finalizer.provides)
            finalizers[finalizer.provides] = finalizer

        providers: dict[UserDependency, dict[int, Provider]] = {}
        for provider in self._providers:
            self._ensure_hashable(provider.provides)
            if provider.scope not in self._scopes:
                raise UnknownScopeError(provider.provides, provider.scope)
            by_level = providers.setdefault(provider.provides, {})
            if provider.scope.level in by_level:
                raise DuplicateProviderError(provider.provides, provider.scope)
            by_level[provider.scope.level] = replace(
                provider,
                finalizer=finalizers.get(provider.provides),
            )

        self._built = True
        registry = Registry(
            scopes=self._scopes,
            providers={
                key: tuple(by_level[level] for level in sorted(by_level))
                for key, by_level in providers.items()
            },
            finalizers=finalizers,
        )
        logger.debug(
            "Registry built: %d providers, %d finalizers",
            len(registry),
            len(finalizers),
        )
        return registry

    def _ensure_not_built(self) -> None:
        if self._built:
            msg = "Registry was already built; create a new RegistryBuilder to register more providers."
            raise InvalidRegistrationError(msg)

    def _ensure_hashable(self, key: UserDependency) -> None:
        try:
            hash(key)
        except TypeError as error:
            msg = f"Dependency key {key!r} is not hashable."
            raise InvalidRegistrationError(msg) from error
