"""Tests for container scopes and dependency resolution."""

from dataclasses import dataclass, field

import pytest

from scopewire import (
    AsyncProviderInSyncContextError,
    BaseScope,
    BaseScopes,
    Container,
    ContainerClosedError,
    CycleDetectedError,
    EnterScopeError,
    InstantiatorFailedError,
    LockMode,
    NoProviderFoundError,
    RegistryBuilder,
    Scope,
    ScopeMismatchError,
)


class Config:
    pass


class Database:
    def __init__(self, config: Config) -> None:
        self.config = config


class RequestId:
    def __init__(self, value: str) -> None:
        self.value = value


class Handler:
    def __init__(self, db: Database, request_id: RequestId) -> None:
        self.db = db
        self.request_id = request_id


class Missing:
    pass


class NeedsMissing:
    def __init__(self, missing: Missing) -> None:
        self.missing = missing


class CycleA:
    def __init__(self, b: "CycleB") -> None:
        self.b = b


class CycleB:
    def __init__(self, a: CycleA) -> None:
        self.a = a


class SelfLoop:
    def __init__(self, other: "SelfLoop") -> None:
        self.other = other


class Broken:
    def __init__(self) -> None:
        raise ValueError("boom")


class Greeting:
    def __init__(self, text: str) -> None:
        self.text = text


class UsesContainer:
    def __init__(self, container: Container) -> None:
        self.container = container


class Retrying:
    def __init__(self, retries: int = 3) -> None:
        self.retries = retries


async def make_async_config() -> Config:
    return Config()


def app_greeting() -> Greeting:
    return Greeting("app")


def request_greeting() -> Greeting:
    return Greeting("request")


@dataclass(frozen=True)
class TailSkippableScopes(BaseScopes):
    ROOT: BaseScope = field(default=BaseScope(0))
    WORK: BaseScope = field(default=BaseScope(1))
    HELPER: BaseScope = field(default=BaseScope(2, skippable=True))


class TestContainerCreation:
    def test_root_container_starts_at_root_scope(self) -> None:
        """Without scope= the container starts at the registry's root scope."""
        container = Container(RegistryBuilder().build())

        assert container.scope is Scope.RUNTIME
        assert container.parent is None
        assert container.closed is False

    def test_start_scope_creates_implicit_ancestors(self) -> None:
        """scope= creates the shallower scopes as implicit ancestors."""
        container = Container(RegistryBuilder().build(), scope=Scope.APP)

        assert container.scope is Scope.APP
        assert container.parent is not None
        assert container.parent.scope is Scope.RUNTIME

    def test_implicit_ancestors_close_with_container(self) -> None:
        """Closing a container started at a deeper scope closes its ancestors."""
        container = Container(RegistryBuilder().build(), scope=Scope.REQUEST)
        ancestors = []
        parent = container.parent
        while parent is not None:
            ancestors.append(parent)
            parent = parent.parent

        container.close()

        assert [ancestor.scope for ancestor in ancestors] == [
            Scope.SESSION,
            Scope.APP,
            Scope.RUNTIME,
        ]
        assert all(ancestor.closed for ancestor in ancestors)

    def test_lock_mode_is_inherited(self) -> None:
        """Children share the lock mode of their root."""
        app = Container(RegistryBuilder().build(), scope=Scope.APP, lock_mode=LockMode.NONE)

        assert app.enter_build().lock_mode is LockMode.NONE


class TestEnterScope:
    def test_enter_build_skips_skippable_scopes(self, empty_app: Container) -> None:
        """From APP the next non-skippable scope is REQUEST."""
        request = empty_app.enter_build()

        assert request.scope is Scope.REQUEST
        assert request.parent is not None
        assert request.parent.scope is Scope.SESSION
        assert request.parent.parent is empty_app

    def test_closing_child_closes_implicit_intermediate(self, empty_app: Container) -> None:
        """The materialized SESSION container closes with its REQUEST child."""
        request = empty_app.enter_build()
        session = request.parent
        assert session is not None

        request.close()

        assert session.closed is True
        assert empty_app.closed is False

    def test_enter_explicit_skippable_scope(self, empty_app: Container) -> None:
        """enter() may target a skippable scope explicitly."""
        session = empty_app.enter(Scope.SESSION)

        assert session.scope is Scope.SESSION
        assert session.parent is empty_app

    def test_enter_shallower_scope_fails(self, empty_app: Container) -> None:
        """The target scope must be deeper than the current one."""
        request = empty_app.enter_build()

        with pytest.raises(EnterScopeError, match="not a deeper scope"):
            request.enter(Scope.APP)

    def test_enter_below_deepest_scope_fails(self) -> None:
        """The deepest scope has no children."""
        step = Container(RegistryBuilder().build(), scope=Scope.STEP)

        with pytest.raises(EnterScopeError, match="deepest scope"):
            step.enter_build()

    def test_only_skippable_scopes_left_fails(self) -> None:
        """enter_build() never lands in a skippable scope."""
        scopes = TailSkippableScopes()
        work = Container(RegistryBuilder(scopes).build(), scope=scopes.WORK)

        with pytest.raises(EnterScopeError, match="only skippable"):
            work.enter_build()

    def test_context_manager_closes(self, empty_app: Container) -> None:
        """Leaving a with block closes the child."""
        with empty_app.enter_build() as request:
            pass

        assert request.closed is True


class TestResolution:
    def test_get_caches_per_container(self, lock_mode: LockMode) -> None:
        """Repeated get() returns the cached instance."""
        registry = RegistryBuilder().provide(Config, Scope.APP).build()
        app = Container(registry, scope=Scope.APP, lock_mode=lock_mode)

        assert app.get(Config) is app.get(Config)

    def test_get_transient_bypasses_cache(self) -> None:
        """get_transient() neither reads nor writes the cache."""
        registry = RegistryBuilder().provide(Config, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        transient = app.get_transient(Config)
        cached = app.get(Config)

        assert transient is not cached
        assert app.get_transient(Config) is not cached
        assert app.get(Config) is cached

    def test_uncached_provider_builds_every_time(self) -> None:
        """cache=False providers produce a new value on every get()."""
        registry = RegistryBuilder().provide(Config, Scope.APP, cache=False).build()
        app = Container(registry, scope=Scope.APP)

        assert app.get(Config) is not app.get(Config)

    def test_ancestor_scoped_value_shared_by_children(self) -> None:
        """APP values are created once in the APP container and shared."""
        registry = (
            RegistryBuilder()
            .provide(Config, Scope.APP)
            .provide(Database, Scope.APP)
            .build()
        )
        app = Container(registry, scope=Scope.APP)

        with app.enter_build() as first, app.enter_build() as second:
            db = first.get(Database)
            assert second.get(Database) is db

        assert app.get(Database) is db

    def test_deeper_provider_from_shallow_container_fails(self) -> None:
        """A REQUEST value cannot be resolved from APP."""
        registry = RegistryBuilder().provide(Config, Scope.REQUEST).build()
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(ScopeMismatchError) as exc_info:
            app.get(Config)

        assert exc_info.value.expected is Scope.REQUEST
        assert exc_info.value.actual is Scope.APP

    def test_unregistered_key_fails(self, empty_app: Container) -> None:
        """Keys without provider or context value are rejected."""
        with pytest.raises(NoProviderFoundError) as exc_info:
            empty_app.get(Missing)

        assert exc_info.value.key is Missing

    def test_nested_resolution_error_propagates_unchanged(self) -> None:
        """A missing sub-dependency is reported for that sub-dependency."""
        registry = RegistryBuilder().provide(NeedsMissing, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(NoProviderFoundError) as exc_info:
            app.get(NeedsMissing)

        assert exc_info.value.key is Missing

    def test_factory_failure_is_wrapped_and_not_cached(self) -> None:
        """Factory exceptions become InstantiatorFailedError with the cause attached."""
        registry = RegistryBuilder().provide(Broken, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(InstantiatorFailedError) as exc_info:
            app.get(Broken)

        assert exc_info.value.key is Broken
        assert isinstance(exc_info.value.error, ValueError)
        assert exc_info.value.__cause__ is exc_info.value.error
        with pytest.raises(InstantiatorFailedError):
            app.get(Broken)

    def test_sync_get_of_async_provider_fails(self) -> None:
        """Async providers require aget()."""
        registry = RegistryBuilder().provide(make_async_config, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(AsyncProviderInSyncContextError):
            app.get(Config)

    def test_container_key_resolves_to_requesting_container(self) -> None:
        """Factories may depend on the container that resolves them."""
        registry = RegistryBuilder().provide(UsesContainer, Scope.REQUEST).build()
        app = Container(registry, scope=Scope.APP)
        request = app.enter_build()

        assert app.get(Container) is app
        assert request.get(UsesContainer).container is request

    def test_instance_registration(self) -> None:
        """Registered instances are returned as-is."""
        config = Config()
        registry = RegistryBuilder().instance(config).build()
        app = Container(registry, scope=Scope.APP)

        assert app.get(Config) is config

    def test_root_instance_visible_from_root_and_child(self) -> None:
        """An instance registered at the root scope resolves from every depth."""
        registry = RegistryBuilder().instance(42).build()
        root = Container(registry)
        child = root.enter_build()

        assert root.scope is Scope.RUNTIME
        assert child.scope is Scope.APP
        assert root.get(int) == 42
        assert child.get(int) == 42

    def test_parameter_default_used_without_provider(self) -> None:
        """Annotated parameters with defaults keep the default when nothing provides them."""
        registry = RegistryBuilder().provide(Retrying, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        assert app.get(Retrying).retries == 3

    def test_registered_value_overrides_parameter_default(self) -> None:
        """A registered provider wins over the parameter default."""
        registry = RegistryBuilder().provide(Retrying, Scope.APP).instance(5).build()
        app = Container(registry, scope=Scope.APP)

        assert app.get(Retrying).retries == 5

    def test_context_value_overrides_parameter_default(self) -> None:
        """A context value wins over the parameter default."""
        registry = RegistryBuilder().provide(Retrying, Scope.REQUEST).build()
        app = Container(registry, scope=Scope.APP)
        request = app.enter(Scope.REQUEST, context={int: 7})

        assert request.get(Retrying).retries == 7


class TestContextValues:
    def test_context_value_visible_to_factories(self) -> None:
        """Values passed to enter() are injected into factories in that scope."""
        registry = (
            RegistryBuilder()
            .provide(Config, Scope.APP)
            .provide(Database, Scope.APP)
            .provide(Handler, Scope.REQUEST)
            .build()
        )
        app = Container(registry, scope=Scope.APP)
        request_id = RequestId("abc")

        with app.enter_build() as request, app.enter(context={RequestId: request_id}) as other:
            handler = other.get(Handler)
            assert handler.request_id is request_id
            with pytest.raises(NoProviderFoundError):
                request.get(Handler)

    def test_context_value_visible_to_descendants(self, empty_app: Container) -> None:
        """Context-only keys are searched through every ancestor."""
        request_id = RequestId("session")
        session = empty_app.enter(Scope.SESSION, context={RequestId: request_id})

        with session.enter_build() as request:
            assert request.get(RequestId) is request_id


class TestScopeOverrides:
    def test_deepest_registration_wins(self) -> None:
        """A REQUEST registration overrides the APP one inside requests."""
        registry = (
            RegistryBuilder()
            .provide(app_greeting, Scope.APP)
            .provide(request_greeting, Scope.REQUEST)
            .build()
        )
        app = Container(registry, scope=Scope.APP)

        assert app.get(Greeting).text == "app"
        with app.enter_build() as request:
            assert request.get(Greeting).text == "request"
            with request.enter_build() as action:
                assert action.get(Greeting) is request.get(Greeting)


class TestCycles:
    def test_two_node_cycle(self) -> None:
        """A -> B -> A is reported with the full path."""
        registry = (
            RegistryBuilder()
            .provide(CycleA, Scope.APP)
            .provide(CycleB, Scope.APP)
            .build()
        )
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(CycleDetectedError) as exc_info:
            app.get(CycleA)

        assert exc_info.value.path == (CycleA, CycleB, CycleA)
        assert "CycleA -> CycleB -> CycleA" in str(exc_info.value)

    def test_self_cycle(self) -> None:
        """A key depending on itself is a cycle."""
        registry = RegistryBuilder().provide(SelfLoop, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(CycleDetectedError) as exc_info:
            app.get(SelfLoop)

        assert exc_info.value.path == (SelfLoop, SelfLoop)

    def test_cycle_detected_from_child_container(self) -> None:
        """Cycles among ancestor-scoped providers are detected from children."""
        registry = (
            RegistryBuilder()
            .provide(CycleA, Scope.APP)
            .provide(CycleB, Scope.APP)
            .build()
        )
        app = Container(registry, scope=Scope.APP)

        with app.enter_build() as request, pytest.raises(CycleDetectedError) as exc_info:
            request.get(CycleB)

        assert exc_info.value.path == (CycleB, CycleA, CycleB)

    def test_container_usable_after_cycle(self) -> None:
        """A detected cycle leaves no resolution state behind."""
        registry = (
            RegistryBuilder()
            .provide(SelfLoop, Scope.APP)
            .provide(Config, Scope.APP)
            .build()
        )
        app = Container(registry, scope=Scope.APP)

        with pytest.raises(CycleDetectedError):
            app.get(SelfLoop)

        assert isinstance(app.get(Config), Config)


class TestClosedContainer:
    def test_operations_after_close_fail(self) -> None:
        """Every operation of a closed container raises ContainerClosedError."""
        registry = RegistryBuilder().provide(Config, Scope.APP).build()
        app = Container(registry, scope=Scope.APP)
        app.close()

        assert app.closed is True
        with pytest.raises(ContainerClosedError):
            app.get(Config)
        with pytest.raises(ContainerClosedError):
            app.get_transient(Config)
        with pytest.raises(ContainerClosedError):
            app.enter_build()

    def test_close_twice_is_noop(self, empty_app: Container) -> None:
        """A second close() does nothing."""
        empty_app.close()
        empty_app.close()

        assert empty_app.closed is True

    def test_parent_close_closes_live_children(self, empty_app: Container) -> None:
        """Closing a parent closes its open children first."""
        request = empty_app.enter_build()

        empty_app.close()

        assert request.closed is True
        with pytest.raises(ContainerClosedError):
            request.get(Container)
