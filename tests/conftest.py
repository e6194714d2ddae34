"""Shared pytest fixtures for scopewire tests."""

from collections.abc import Iterator

import pytest

from scopewire import Container, LockMode, RegistryBuilder, Scope


@pytest.fixture()
def builder() -> RegistryBuilder:
    """Fresh builder over the default scope ladder."""
    return RegistryBuilder()


@pytest.fixture()
def empty_app() -> Iterator[Container]:
    """APP-scope container over an empty registry, closed after the test."""
    container = Container(RegistryBuilder().build(), scope=Scope.APP)
    yield container
    container.close()


@pytest.fixture(params=[LockMode.THREAD, LockMode.NONE], ids=["thread", "none"])
def lock_mode(request: pytest.FixtureRequest) -> LockMode:
    """Both locking strategies; single-threaded behavior must not differ."""
    return request.param
