from __future__ import annotations

import functools
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeVar, cast, get_type_hints, overload

from scopewire.exceptions import InvalidRegistrationError
from scopewire.markers import dependency_key, is_injection_annotation, is_transient_annotation

if TYPE_CHECKING:
    from scopewire.container import Container

InjectableF = TypeVar("InjectableF", bound=Callable[..., Any])

DEFAULT_CONTAINER_KWARG = "container"
INJECT_WRAPPER_MARKER = "__scopewire_inject_wrapper__"


@dataclass(frozen=True, slots=True)
class InjectedParameter:
    """Injected parameter metadata for callable wrapper generation."""

    name: str
    dependency: Any
    transient: bool


@dataclass(frozen=True, slots=True)
class InjectedCallableInspection:
    """Injection metadata derived from a callable signature and annotations."""

    signature: inspect.Signature
    injected_parameters: tuple[InjectedParameter, ...]
    public_signature: inspect.Signature


@dataclass(slots=True)
class InjectedCallableInspector:
    """Inspect callables for ``Inject[...]`` parameters and build the public signature."""

    container_kwarg: str = DEFAULT_CONTAINER_KWARG

    def inspect_callable(self, callable_obj: Callable[..., Any]) -> InjectedCallableInspection:
        """Build injection metadata and a public signature for a callable.

        Raises:
            InvalidRegistrationError: If an injected parameter is positional-only
                or the callable already declares the container parameter.

        """
        signature = inspect.signature(callable_obj)
        if self.container_kwarg in signature.parameters:
            msg = (
                f"{_callable_name(callable_obj)} already declares a parameter named "
                f"{self.container_kwarg!r}; pass another `container_kwarg` to inject()."
            )
            raise InvalidRegistrationError(msg)

        injected_parameters = self.extract_injected_parameters(
            callable_obj=callable_obj,
            signature=signature,
        )
        public_signature = self.build_public_injected_signature(
            signature=signature,
            hidden_parameter_names={parameter.name for parameter in injected_parameters},
        )
        return InjectedCallableInspection(
            signature=signature,
            injected_parameters=injected_parameters,
            public_signature=public_signature,
        )

    def extract_injected_parameters(
        self,
        *,
        callable_obj: Callable[..., Any],
        signature: inspect.Signature,
    ) -> tuple[InjectedParameter, ...]:
        """Extract injected parameter metadata from a callable."""
        resolved_annotations = self.resolved_annotations_for_injection(callable_obj=callable_obj)
        injected_parameters: list[InjectedParameter] = []
        for parameter in signature.parameters.values():
            annotation = resolved_annotations.get(parameter.name, parameter.annotation)
            if annotation is inspect.Signature.empty or isinstance(annotation, str):
                continue
            if not is_injection_annotation(annotation):
                continue
            if parameter.kind is inspect.Parameter.POSITIONAL_ONLY:
                msg = (
                    f"Injected parameter {parameter.name!r} of "
                    f"{_callable_name(callable_obj)} cannot be positional-only."
                )
                raise InvalidRegistrationError(msg)
            injected_parameters.append(
                InjectedParameter(
                    name=parameter.name,
                    dependency=dependency_key(annotation),
                    transient=is_transient_annotation(annotation),
                ),
            )
        return tuple(injected_parameters)

    def resolved_annotations_for_injection(
        self,
        *,
        callable_obj: Callable[..., Any],
    ) -> dict[str, Any]:
        """Resolve callable annotations with extras, falling back to an empty mapping."""
        try:
            return get_type_hints(callable_obj, include_extras=True)
        except (AttributeError, NameError, TypeError):
            return {}

    def build_public_injected_signature(
        self,
        *,
        signature: inspect.Signature,
        hidden_parameter_names: set[str],
    ) -> inspect.Signature:
        """Build a signature that hides injected parameters and accepts the container."""
        parameters = [
            parameter
            for parameter in signature.parameters.values()
            if parameter.name not in hidden_parameter_names
        ]
        container_parameter = inspect.Parameter(
            self.container_kwarg,
            inspect.Parameter.KEYWORD_ONLY,
        )
        insert_at = next(
            (
                index
                for index, parameter in enumerate(parameters)
                if parameter.kind is inspect.Parameter.VAR_KEYWORD
            ),
            len(parameters),
        )
        parameters.insert(insert_at, container_parameter)
        return signature.replace(parameters=parameters)


@overload
def inject(
    func: InjectableF,
    *,
    container_kwarg: str = DEFAULT_CONTAINER_KWARG,
) -> InjectableF: ...


@overload
def inject(
    func: Literal["from_decorator"] = "from_decorator",
    *,
    container_kwarg: str = DEFAULT_CONTAINER_KWARG,
) -> Callable[[InjectableF], InjectableF]: ...


def inject(
    func: InjectableF | Literal["from_decorator"] = "from_decorator",
    *,
    container_kwarg: str = DEFAULT_CONTAINER_KWARG,
) -> InjectableF | Callable[[InjectableF], InjectableF]:
    """Decorate a callable to resolve ``Inject`` and ``InjectTransient`` parameters.

    The wrapper takes the container as a keyword argument, resolves every
    injected parameter the caller did not pass explicitly, and forwards the
    remaining arguments unchanged. Injected parameters are hidden from the
    public signature.

    Args:
        func: Callable to wrap, or ``"from_decorator"`` for decorator form.
        container_kwarg: Name of the keyword argument carrying the container.

    Returns:
        Wrapped callable, or a decorator when ``func="from_decorator"``.

    Raises:
        InvalidRegistrationError: If ``func`` is not callable or declares a
            positional-only injected parameter.

    Examples:
        .. code-block:: python

            @inject
            def handle(value: int, service: Inject[Service]) -> str:
                return service.process(value)


            with app.enter_build() as request:
                result = handle(10, container=request)

    """
    inspector = InjectedCallableInspector(container_kwarg=container_kwarg)

    def decorator(callable_obj: InjectableF) -> InjectableF:
        return _inject_callable(callable_obj, inspector=inspector)

    func_value = cast("Any", func)
    if func_value == "from_decorator":
        return decorator
    if not callable(func_value):
        msg = "inject() parameter 'func' must be callable or 'from_decorator'."
        raise InvalidRegistrationError(msg)
    return decorator(func_value)


def _inject_callable(
    callable_obj: InjectableF,
    *,
    inspector: InjectedCallableInspector,
) -> InjectableF:
    inspection = inspector.inspect_callable(callable_obj)
    injected_parameters = inspection.injected_parameters
    container_kwarg = inspector.container_kwarg

    wrapped_callable: Callable[..., Any]
    if inspect.iscoroutinefunction(callable_obj):

        @functools.wraps(callable_obj)
        async def _async_injected(*args: Any, **kwargs: Any) -> Any:
            container = _pop_container(kwargs, container_kwarg, callable_obj)
            for parameter in injected_parameters:
                if parameter.name in kwargs:
                    continue
                if parameter.transient:
                    kwargs[parameter.name] = await container.aget_transient(parameter.dependency)
                else:
                    kwargs[parameter.name] = await container.aget(parameter.dependency)
            return await callable_obj(*args, **kwargs)

        wrapped_callable = _async_injected
    else:

        @functools.wraps(callable_obj)
        def _sync_injected(*args: Any, **kwargs: Any) -> Any:
            container = _pop_container(kwargs, container_kwarg, callable_obj)
            for parameter in injected_parameters:
                if parameter.name in kwargs:
                    continue
                if parameter.transient:
                    kwargs[parameter.name] = container.get_transient(parameter.dependency)
                else:
                    kwargs[parameter.name] = container.get(parameter.dependency)
            return callable_obj(*args, **kwargs)

        wrapped_callable = _sync_injected

    wrapped_callable.__signature__ = inspection.public_signature  # type: ignore[attr-defined]
    setattr(wrapped_callable, INJECT_WRAPPER_MARKER, True)
    return cast("InjectableF", wrapped_callable)


def _pop_container(
    kwargs: dict[str, Any],
    container_kwarg: str,
    callable_obj: Callable[..., Any],
) -> Container:
    try:
        return kwargs.pop(container_kwarg)
    except KeyError:
        msg = f"{_callable_name(callable_obj)}() missing required keyword argument {container_kwarg!r}."
        raise TypeError(msg) from None


def _callable_name(callable_obj: Callable[..., Any]) -> str:
    return getattr(callable_obj, "__qualname__", None) or repr(callable_obj)
