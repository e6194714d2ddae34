from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class ScopeWireError(Exception):
    """Represent a base class for all scopewire-specific failures.

    Catch this type when you want to handle any scopewire error path without
    matching each concrete exception class individually.
    """


class InvalidRegistrationError(ScopeWireError):
    """Signal invalid registration or scope collection configuration.

    Raised by ``RegistryBuilder`` methods when arguments are invalid, when a
    builder is reused after ``build()``, and by ``BaseScopes`` when a scope
    collection is empty or declares the same level twice.
    """


class InvalidProviderError(InvalidRegistrationError):
    """Signal that a provider's key or dependencies cannot be inferred.

    Common triggers are a factory function without a return annotation and
    without ``provides=``, or a required factory parameter without a type
    annotation.
    """


class DuplicateProviderError(InvalidRegistrationError):
    """Signal a second provider for the same key in the same scope.

    Raised by ``RegistryBuilder.build``. Registering the same key in a
    different scope is allowed and acts as an override for that scope.
    """

    def __init__(self, key: Any, scope: Any) -> None:
        self.key = key
        self.scope = scope
        super().__init__(f"Provider for {key!r} is already registered in scope {scope!r}.")


class DuplicateFinalizerError(InvalidRegistrationError):
    """Signal a second finalizer for the same key.

    At most one finalizer may be attached per dependency key.
    """

    def __init__(self, key: Any) -> None:
        self.key = key
        super().__init__(f"Finalizer for {key!r} is already registered.")


class UnknownScopeError(InvalidRegistrationError):
    """Signal a provider registered in a scope missing from the scope collection.

    Typical fix is registering providers with members of the same ``BaseScopes``
    collection that was passed to ``RegistryBuilder``.
    """

    def __init__(self, key: Any, scope: Any) -> None:
        self.key = key
        self.scope = scope
        super().__init__(f"Provider for {key!r} references unknown scope {scope!r}.")


class NoProviderFoundError(ScopeWireError):
    """Signal that a dependency key has no provider.

    Raised by ``get``/``aget`` and their transient variants when the key has
    neither a registration nor a context value in the container chain.
    """

    def __init__(self, key: Any) -> None:
        self.key = key
        super().__init__(f"No provider found for {key!r}.")


class ScopeMismatchError(ScopeWireError):
    """Signal resolution of a dependency from a too shallow scope.

    Raised when every provider for a key lives in a scope deeper than the
    requesting container, or when the provider's scope is not represented in
    the container chain.

    Typical fix is entering the required scope first, for example
    ``request = container.enter_build()`` followed by ``request.get(...)``.
    """

    def __init__(self, key: Any, expected: Any, actual: Any) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Provider for {key!r} is not accessible from the current container. "
            f"Expected scope: {expected!r}, actual scope: {actual!r}.",
        )


class CycleDetectedError(ScopeWireError):
    """Signal a dependency chain that requests a key already being resolved.

    ``path`` holds the keys from the first occurrence of the repeated key to
    the repeated request, inclusive.
    """

    def __init__(self, path: Sequence[Any]) -> None:
        self.path = tuple(path)
        chain = " -> ".join(_key_name(key) for key in self.path)
        super().__init__(f"Cyclic dependency detected: {chain}")


class InstantiatorFailedError(ScopeWireError):
    """Signal that a provider's factory raised.

    The original exception is available as ``error`` and as ``__cause__``.
    Nothing is cached when a factory fails.
    """

    def __init__(self, key: Any, error: BaseException) -> None:
        self.key = key
        self.error = error
        super().__init__(f"Provider for {key!r} failed: {error!r}")


class ContainerClosedError(ScopeWireError):
    """Signal use of a container after ``close()``/``aclose()``."""


class EnterScopeError(ScopeWireError):
    """Signal that no suitable deeper scope exists for ``enter``/``enter_build``.

    Raised when the container is already at the deepest scope, when only
    skippable scopes remain, or when an explicit target scope is not deeper
    than the current one.
    """


class AsyncProviderInSyncContextError(ScopeWireError):
    """Signal sync resolution of an async provider.

    Typical fix is switching to ``await container.aget(...)``.
    """


class AsyncFinalizerInSyncContextError(ScopeWireError):
    """Signal sync ``close()`` of a container holding async finalizers.

    The container is left open and untouched; call ``await container.aclose()``.
    """


def _key_name(key: Any) -> str:
    return getattr(key, "__qualname__", None) or repr(key)
