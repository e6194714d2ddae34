from scopewire.container import Container
from scopewire.exceptions import (
    AsyncFinalizerInSyncContextError,
    AsyncProviderInSyncContextError,
    ContainerClosedError,
    CycleDetectedError,
    DuplicateFinalizerError,
    DuplicateProviderError,
    EnterScopeError,
    InstantiatorFailedError,
    InvalidProviderError,
    InvalidRegistrationError,
    NoProviderFoundError,
    ScopeMismatchError,
    ScopeWireError,
    UnknownScopeError,
)
from scopewire.injection import inject
from scopewire.lock_mode import LockMode
from scopewire.markers import Component, Inject, InjectTransient
from scopewire.registry import Registry, RegistryBuilder
from scopewire.scope import BaseScope, BaseScopes, Scope, Scopes

__all__ = [
    "AsyncFinalizerInSyncContextError",
    "AsyncProviderInSyncContextError",
    "BaseScope",
    "BaseScopes",
    "Component",
    "Container",
    "ContainerClosedError",
    "CycleDetectedError",
    "DuplicateFinalizerError",
    "DuplicateProviderError",
    "EnterScopeError",
    "Inject",
    "InjectTransient",
    "InstantiatorFailedError",
    "InvalidProviderError",
    "InvalidRegistrationError",
    "LockMode",
    "NoProviderFoundError",
    "Registry",
    "RegistryBuilder",
    "Scope",
    "ScopeMismatchError",
    "ScopeWireError",
    "Scopes",
    "UnknownScopeError",
    "inject",
]
