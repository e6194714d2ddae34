from typing import TYPE_CHECKING, Annotated, Any, NamedTuple, TypeVar, Union, get_args, get_origin

T = TypeVar("T")
_ANNOTATED_MARKER_MIN_ARGS = 2


class Component(NamedTuple):
    """Differentiate multiple providers for the same base type.

    Attach ``Component`` metadata to ``typing.Annotated`` so scopewire treats
    each annotated key as distinct at runtime.

    Examples:
        .. code-block:: python

            from typing import Annotated, TypeAlias


            class Database: ...


            ReplicaDb: TypeAlias = Annotated[Database, Component("replica")]
            PrimaryDb: TypeAlias = Annotated[Database, Component("primary")]

    """

    value: Any


class InjectMarker:
    """Mark a parameter resolved with ``Container.get`` (cached, shared)."""

    def __repr__(self) -> str:
        return "InjectMarker()"


class InjectTransientMarker:
    """Mark a parameter resolved with ``Container.get_transient`` (fresh each call)."""

    def __repr__(self) -> str:
        return "InjectTransientMarker()"


_INJECTION_MARKERS = (InjectMarker, InjectTransientMarker)


if TYPE_CHECKING:
    Inject = Union[T, T]  # noqa: UP007,PYI016
    """Mark a parameter for shared injection.

    At runtime ``Inject[T]`` becomes ``Annotated[T, InjectMarker()]``.

    Examples:
        .. code-block:: python

            def make_repository(session: Inject[Session]) -> Repository:
                return Repository(session)
    """

    InjectTransient = Union[T, T]  # noqa: UP007,PYI016
    """Mark a parameter for transient injection.

    At runtime ``InjectTransient[T]`` becomes
    ``Annotated[T, InjectTransientMarker()]``.
    """

else:

    class Inject:
        """Mark a parameter for shared injection.

        At runtime ``Inject[T]`` resolves to ``Annotated[T, InjectMarker()]``.
        The container resolves the parameter with ``get``, so cacheable
        providers hand back the instance held in the container cache.

        Examples:
            .. code-block:: python

                def make_repository(session: Inject[Session]) -> Repository:
                    return Repository(session)

        """

        def __class_getitem__(cls, item: T) -> Annotated[T, InjectMarker]:
            return _with_marker(item, InjectMarker())

    class InjectTransient:
        """Mark a parameter for transient injection.

        At runtime ``InjectTransient[T]`` resolves to
        ``Annotated[T, InjectTransientMarker()]``. The container resolves the
        parameter with ``get_transient`` and never reads or writes its cache.
        """

        def __class_getitem__(cls, item: T) -> Annotated[T, InjectTransientMarker]:
            return _with_marker(item, InjectTransientMarker())


def is_injection_annotation(annotation: Any) -> bool:
    """Return True when annotation carries an ``Inject``/``InjectTransient`` marker."""
    return _extract_injection_marker(annotation) is not None


def is_transient_annotation(annotation: Any) -> bool:
    """Return True when annotation is ``Annotated[..., InjectTransientMarker()]``."""
    return isinstance(_extract_injection_marker(annotation), InjectTransientMarker)


def dependency_key(annotation: Any) -> Any:
    """Normalize an annotation into the key used by registry and cache.

    Injection markers are stripped; any other ``Annotated`` metadata, such as
    ``Component``, stays part of the key.
    """
    if get_origin(annotation) is not Annotated:
        return annotation

    annotation_args = get_args(annotation)
    parameter_type = annotation_args[0]
    metadata = annotation_args[1:]
    filtered_metadata = tuple(item for item in metadata if not isinstance(item, _INJECTION_MARKERS))
    if not filtered_metadata:
        return parameter_type
    return build_annotated_key((parameter_type, *filtered_metadata))


def build_annotated_key(params: tuple[object, ...]) -> Any:
    """Return Annotated[...] with a pre-built params tuple (Py 3.10+ compatible)."""
    try:
        return Annotated.__class_getitem__(params)  # type: ignore[attr-defined]
    except AttributeError:
        return Annotated.__getitem__(params)  # type: ignore[attr-defined]


def _extract_injection_marker(annotation: Any) -> object | None:
    if get_origin(annotation) is not Annotated:
        return None
    annotation_args = get_args(annotation)
    if len(annotation_args) < _ANNOTATED_MARKER_MIN_ARGS:
        return None
    metadata = annotation_args[1:]
    return next(
        (item for item in metadata if isinstance(item, _INJECTION_MARKERS)),
        None,
    )


def _with_marker(item: Any, marker: object) -> Any:
    if get_origin(item) is Annotated:
        args = get_args(item)
        inner = args[0]
        metadata = tuple(entry for entry in args[1:] if not isinstance(entry, _INJECTION_MARKERS))
        return build_annotated_key((inner, *metadata, marker))
    return build_annotated_key((item, marker))
