"""Tests for the inject decorator."""

import inspect

import pytest

from scopewire import (
    Container,
    Inject,
    InjectTransient,
    InvalidRegistrationError,
    RegistryBuilder,
    Scope,
    inject,
)


class Clock:
    pass


class Mailer:
    pass


def registry_with_services() -> RegistryBuilder:
    return RegistryBuilder().provide(Clock, Scope.APP).provide(Mailer, Scope.REQUEST)


@inject
def send(subject: str, mailer: Inject[Mailer], clock: InjectTransient[Clock]) -> tuple:
    return subject, mailer, clock


@inject(container_kwarg="scope")
async def send_async(subject: str, mailer: Inject[Mailer]) -> tuple:
    return subject, mailer


class TestInjectDecorator:
    def test_resolves_injected_parameters(self) -> None:
        """Injected parameters are resolved from the container argument."""
        app = Container(registry_with_services().build(), scope=Scope.APP)

        with app.enter_build() as request:
            subject, mailer, clock = send("hello", container=request)

            assert subject == "hello"
            assert mailer is request.get(Mailer)
            assert clock is not app.get(Clock)

    def test_explicit_arguments_win(self) -> None:
        """Callers may pass injected parameters themselves."""
        app = Container(registry_with_services().build(), scope=Scope.APP)
        mailer = Mailer()

        with app.enter_build() as request:
            _, resolved, _ = send("hello", mailer=mailer, container=request)

        assert resolved is mailer

    def test_signature_hides_injected_parameters(self) -> None:
        """The public signature lists passthrough parameters and the container."""
        parameters = inspect.signature(send).parameters

        assert list(parameters) == ["subject", "container"]
        assert parameters["container"].kind is inspect.Parameter.KEYWORD_ONLY

    def test_missing_container_argument(self) -> None:
        """Calling without the container keyword is a TypeError."""
        with pytest.raises(TypeError, match="'container'"):
            send("hello")

    def test_preserves_metadata(self) -> None:
        """functools.wraps keeps the original name."""
        assert send.__name__ == "send"

    def test_positional_only_injection_rejected(self) -> None:
        """Injected parameters must be passable by keyword."""

        def handler(mailer: Inject[Mailer], /) -> None:
            pass

        with pytest.raises(InvalidRegistrationError, match="positional-only"):
            inject(handler)

    def test_container_parameter_name_clash_rejected(self) -> None:
        """The wrapped callable must not already use the container keyword."""

        def handler(container: int, mailer: Inject[Mailer]) -> None:
            pass

        with pytest.raises(InvalidRegistrationError, match="already declares"):
            inject(handler)

    @pytest.mark.asyncio
    async def test_async_function_with_custom_keyword(self) -> None:
        """Async callables resolve with aget() under a custom keyword."""
        app = Container(registry_with_services().build(), scope=Scope.APP)

        async with app.enter_build() as request:
            subject, mailer = await send_async("hi", scope=request)

            assert subject == "hi"
            assert mailer is await request.aget(Mailer)
