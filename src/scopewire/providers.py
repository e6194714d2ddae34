from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from inspect import Parameter
from typing import Any, TypeAlias, TypeVar, get_args, get_origin, get_type_hints

from scopewire.exceptions import InvalidProviderError
from scopewire.markers import dependency_key, is_transient_annotation
from scopewire.scope import BaseScope

T = TypeVar("T")

UserDependency: TypeAlias = Any
"""A dependency key registered by, or requested from, the user's code."""

FactoryProvider: TypeAlias = Callable[..., T] | Callable[..., Awaitable[T]]
"""A class, function or asynchronous function that produces a dependency."""

FinalizerCallback: TypeAlias = Callable[[Any], None] | Callable[[Any], Awaitable[None]]
"""A callable that releases a cached dependency when its container closes."""

_MISSING_ANNOTATION: Any = object()
OMITTED: Any = object()
"""Placeholder for an optional dependency left to its parameter default."""
_COROUTINE_RESULT_INDEX = 2
_COROUTINE_ARGUMENT_COUNT = 3


@dataclass(frozen=True, slots=True)
class ProviderDependency:
    """Represent a dependency key bound to a provider parameter."""

    name: str
    """Parameter name the resolved value is passed as."""
    key: UserDependency
    """Normalized dependency key to resolve."""
    transient: bool
    """Resolve with ``get_transient`` instead of ``get``."""
    positional: bool
    """Pass the value positionally (positional-only parameters)."""
    optional: bool = False
    """The parameter has a default, used when nothing supplies ``key``."""


@dataclass(frozen=True, slots=True)
class Finalizer:
    """A cleanup callback attached to a dependency key."""

    provides: UserDependency
    """The dependency key whose cached instances this finalizer releases."""
    callback: FinalizerCallback
    """The callable invoked with the cached instance."""
    is_async: bool
    """True when ``callback`` returns an awaitable and needs ``aclose()``."""


@dataclass(frozen=True, slots=True)
class Provider:
    """A factory descriptor stored in the registry.

    Providers are created at registration time, never mutated afterwards and
    shared read-only by every container built from the same registry.
    """

    provides: UserDependency
    """The dependency key this provider supplies."""
    factory: FactoryProvider[Any]
    """The callable producing the dependency."""
    scope: BaseScope
    """The scope whose container owns and caches the produced dependency."""
    cacheable: bool = True
    """Cache the result per container (``True``) or build it on every call."""
    is_async: bool = False
    """True when ``factory`` must be awaited."""
    dependencies: tuple[ProviderDependency, ...] = ()
    """Dependencies resolved and passed to ``factory`` on each invocation."""
    finalizer: Finalizer | None = None
    """Finalizer bound by ``RegistryBuilder.build`` for ``provides``."""

    def call_arguments(
        self,
        values: list[Any],
    ) -> tuple[list[Any], dict[str, Any]]:
        """Split resolved dependency values into call args and kwargs.

        Args:
            values: Resolved values in ``dependencies`` order. ``OMITTED``
                values are left out so the parameter default applies; a
                positional-only parameter after an omitted one falls back to
                its default as well.

        """
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        positional_open = True
        for dependency, value in zip(self.dependencies, values, strict=True):
            if value is OMITTED:
                if dependency.positional:
                    positional_open = False
                continue
            if dependency.positional:
                if positional_open:
                    args.append(value)
            else:
                kwargs[dependency.name] = value
        return args, kwargs


@dataclass(slots=True)
class ProviderDependenciesExtractor:
    """Extracts dependencies from user-defined factories."""

    def extract_from_factory(
        self,
        factory: FactoryProvider[Any],
    ) -> tuple[ProviderDependency, ...]:
        """Extract dependencies from a factory's parameters.

        ``Inject[T]`` and plain ``T`` annotations resolve with ``get``,
        ``InjectTransient[T]`` resolves with ``get_transient``. Parameters
        without annotation are allowed only when they have a default.

        Args:
            factory: Factory provider callable to inspect.

        Raises:
            InvalidProviderError: If a required parameter has no usable annotation.

        """
        provider_name = _provider_name(factory)
        annotations, annotation_error = self._resolved_type_hints(factory)
        dependencies: list[ProviderDependency] = []

        for parameter in self._provider_parameters(factory):
            if parameter.kind in (Parameter.VAR_POSITIONAL, Parameter.VAR_KEYWORD):
                continue
            annotation = self._resolve_parameter_annotation(
                parameter=parameter,
                annotations=annotations,
                annotation_error=annotation_error,
                provider_name=provider_name,
            )
            if annotation is _MISSING_ANNOTATION:
                continue

            dependencies.append(
                ProviderDependency(
                    name=parameter.name,
                    key=dependency_key(annotation),
                    transient=is_transient_annotation(annotation),
                    positional=parameter.kind is Parameter.POSITIONAL_ONLY,
                    optional=parameter.default is not Parameter.empty,
                ),
            )

        return tuple(dependencies)

    def _resolve_parameter_annotation(
        self,
        *,
        parameter: Parameter,
        annotations: dict[str, Any],
        annotation_error: Exception | None,
        provider_name: str,
    ) -> Any:
        annotation = annotations.get(parameter.name, _MISSING_ANNOTATION)
        if annotation is not _MISSING_ANNOTATION:
            return annotation

        raw_annotation = parameter.annotation
        if raw_annotation is not Parameter.empty and not isinstance(raw_annotation, str):
            return raw_annotation

        if parameter.default is not Parameter.empty:
            return _MISSING_ANNOTATION

        error_message = (
            f"Unable to infer dependency for required parameter '{parameter.name}' "
            f"in provider '{provider_name}'. Add a type annotation or a default value."
        )
        if annotation_error is None:
            raise InvalidProviderError(error_message)
        msg = f"{error_message} Original annotation error: {annotation_error}"
        raise InvalidProviderError(msg) from annotation_error

    def _provider_parameters(self, provider: Callable[..., Any]) -> tuple[Parameter, ...]:
        try:
            return tuple(inspect.signature(provider).parameters.values())
        except (TypeError, ValueError) as error:
            msg = f"Unable to inspect signature of provider '{_provider_name(provider)}'."
            raise InvalidProviderError(msg) from error

    def _resolved_type_hints(
        self,
        provider: Callable[..., Any],
    ) -> tuple[dict[str, Any], Exception | None]:
        annotations: dict[str, Any] = {}
        annotation_error: Exception | None = None

        if not inspect.isclass(provider):
            try:
                annotations = get_type_hints(provider, include_extras=True)
            except (AttributeError, NameError, TypeError) as error:
                annotation_error = error
            return annotations, annotation_error

        # Constructor hints win over class-level field hints.
        for member in (provider.__init__, provider):  # type: ignore[misc]
            try:
                member_annotations = get_type_hints(member, include_extras=True)
            except (AttributeError, NameError, TypeError) as error:
                if annotation_error is None:
                    annotation_error = error
                continue
            for parameter_name, parameter_annotation in member_annotations.items():
                annotations.setdefault(parameter_name, parameter_annotation)

        return annotations, annotation_error


@dataclass(slots=True)
class ProviderReturnTypeExtractor:
    """Extracts the provided key and async flag from user-defined factories."""

    def is_factory_async(
        self,
        factory: FactoryProvider[Any],
    ) -> bool:
        """Check whether a factory must be awaited.

        Args:
            factory: Factory provider callable to inspect.

        """
        if inspect.isclass(factory):
            return False
        if inspect.iscoroutinefunction(factory):
            return True
        call_method = getattr(factory, "__call__", None)  # noqa: B004
        if call_method is not None and inspect.iscoroutinefunction(call_method):
            return True
        return_annotation, _ = self._resolved_return_annotation(factory)
        return get_origin(return_annotation) in (Awaitable, Coroutine)

    def extract_from_factory(
        self,
        factory: FactoryProvider[Any],
    ) -> Any:
        """Extract the provided key from a factory.

        Classes provide themselves; functions provide their return annotation
        with ``Awaitable[T]``/``Coroutine[Any, Any, T]`` unwrapped.

        Args:
            factory: Factory provider callable to inspect.

        Raises:
            InvalidProviderError: If no usable return annotation exists.

        """
        if inspect.isclass(factory):
            return factory

        return_annotation, annotation_error = self._resolved_return_annotation(factory)
        provider_name = _provider_name(factory)
        if return_annotation is _MISSING_ANNOTATION or return_annotation is None:
            self._raise_invalid_return_annotation_error(
                provider_name=provider_name,
                annotation_error=annotation_error,
            )

        unwrapped_return_type = self._unwrap_factory_return_type(return_annotation)
        if unwrapped_return_type is _MISSING_ANNOTATION:
            self._raise_invalid_return_annotation_error(
                provider_name=provider_name,
                annotation_error=annotation_error,
            )

        return dependency_key(unwrapped_return_type)

    def _resolved_return_annotation(
        self,
        provider: Callable[..., Any],
    ) -> tuple[Any, Exception | None]:
        try:
            return_type_hints = get_type_hints(provider, include_extras=True)
            annotation_error: Exception | None = None
        except (AttributeError, NameError, TypeError) as error:
            return_type_hints = {}
            annotation_error = error

        resolved_return_annotation = return_type_hints.get("return", _MISSING_ANNOTATION)
        if resolved_return_annotation is not _MISSING_ANNOTATION:
            return resolved_return_annotation, annotation_error

        try:
            raw_return_annotation = inspect.signature(provider).return_annotation
        except (TypeError, ValueError) as error:
            return _MISSING_ANNOTATION, annotation_error or error

        if raw_return_annotation is inspect.Signature.empty or isinstance(
            raw_return_annotation,
            str,
        ):
            return _MISSING_ANNOTATION, annotation_error

        return raw_return_annotation, annotation_error

    def _unwrap_factory_return_type(
        self,
        return_annotation: Any,
    ) -> Any:
        origin = get_origin(return_annotation)
        annotation_args = get_args(return_annotation)
        if origin is Awaitable:
            if len(annotation_args) != 1:
                return _MISSING_ANNOTATION
            return annotation_args[0]
        if origin is Coroutine:
            if len(annotation_args) != _COROUTINE_ARGUMENT_COUNT:
                return _MISSING_ANNOTATION
            return annotation_args[_COROUTINE_RESULT_INDEX]
        return return_annotation

    def _raise_invalid_return_annotation_error(
        self,
        *,
        provider_name: str,
        annotation_error: Exception | None,
    ) -> None:
        msg = (
            f"Unable to infer return type for provider '{provider_name}'. "
            "Add a return type annotation or pass provides= explicitly."
        )
        if annotation_error is None:
            raise InvalidProviderError(msg)
        full_msg = f"{msg} Original annotation error: {annotation_error}"
        raise InvalidProviderError(full_msg) from annotation_error


@dataclass(slots=True)
class FinalizerKeyExtractor:
    """Extracts the dependency key a finalizer callback accepts."""

    def extract(self, callback: FinalizerCallback) -> Any:
        """Return the normalized annotation of the callback's first parameter.

        Args:
            callback: Finalizer callable to inspect.

        Raises:
            InvalidProviderError: If the first parameter is missing or unannotated.

        """
        callback_name = _provider_name(callback)
        try:
            parameters = list(inspect.signature(callback).parameters.values())
        except (TypeError, ValueError) as error:
            msg = f"Unable to inspect signature of finalizer '{callback_name}'."
            raise InvalidProviderError(msg) from error
        if not parameters:
            msg = f"Finalizer '{callback_name}' must accept the instance to finalize."
            raise InvalidProviderError(msg)

        first_parameter = parameters[0]
        try:
            annotation = get_type_hints(callback, include_extras=True).get(
                first_parameter.name,
                _MISSING_ANNOTATION,
            )
        except (AttributeError, NameError, TypeError):
            annotation = _MISSING_ANNOTATION
        if annotation is _MISSING_ANNOTATION:
            raw_annotation = first_parameter.annotation
            if raw_annotation is Parameter.empty or isinstance(raw_annotation, str):
                msg = (
                    f"Unable to infer the finalized type of '{callback_name}'. "
                    "Annotate its first parameter or pass provides= explicitly."
                )
                raise InvalidProviderError(msg)
            annotation = raw_annotation
        return dependency_key(annotation)

    def is_async(self, callback: FinalizerCallback) -> bool:
        """Check whether a finalizer callback must be awaited."""
        if inspect.iscoroutinefunction(callback):
            return True
        call_method = getattr(callback, "__call__", None)  # noqa: B004
        return call_method is not None and inspect.iscoroutinefunction(call_method)


def _provider_name(provider: Callable[..., Any]) -> str:
    return getattr(provider, "__qualname__", repr(provider))
