from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from scopewire.exceptions import InvalidRegistrationError


class BaseScope(int):
    """Represent a numeric lifetime scope level with transition metadata.

    A scope behaves like an ``int`` so comparisons and ordering are based on
    ``level``: a higher level is a deeper (shorter lived) scope. ``skippable``
    marks helper scopes that ``enter_build()`` passes through when it looks for
    the next non-skippable scope.
    """

    def __new__(cls, *args: Any, **_kwargs: Any) -> BaseScope:  # noqa: PYI034
        return super().__new__(cls, *args)

    def __init__(self, level: int, *, skippable: bool = False) -> None:
        self.skippable = skippable
        self.level = level
        self.scope_name = f"LEVEL_{level}"

    def __set_name__(
        self,
        owner: type[BaseScopes],
        name: str,
    ) -> None:
        self.owner = owner
        self.scope_name = name

    def __repr__(self) -> str:
        return f"Scope.{self.scope_name}({self.level}, skippable={self.skippable})"


@dataclass(frozen=True, kw_only=True)
class BaseScopes:
    """Collect scope constants and derive the scope chain.

    Members form a single rooted chain ordered by level. The member with the
    lowest level is the root; the parent of any other member is the member
    with the next lower level.

    Raises:
        InvalidRegistrationError: If the collection has no scopes or two
            members share a level.

    """

    skippable: tuple[BaseScope, ...] = field(init=False)
    ordered: tuple[BaseScope, ...] = field(init=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self, key=lambda scope: scope.level))
        if not ordered:
            msg = f"Scope collection {type(self).__name__} declares no scopes."
            raise InvalidRegistrationError(msg)
        levels = [scope.level for scope in ordered]
        if len(set(levels)) != len(levels):
            msg = f"Scope collection {type(self).__name__} declares duplicate levels: {levels}."
            raise InvalidRegistrationError(msg)

        object.__setattr__(self, "ordered", ordered)
        object.__setattr__(
            self,
            "skippable",
            tuple(scope for scope in ordered if scope.skippable),
        )

    def __iter__(self) -> Iterator[BaseScope]:
        for value in self.__dict__.values():
            if isinstance(value, BaseScope):
                yield value

    def __contains__(self, scope: object) -> bool:
        return any(member is scope for member in self.ordered)

    @property
    def root(self) -> BaseScope:
        """Return the outermost scope of the chain."""
        return self.ordered[0]

    def parent(self, scope: BaseScope) -> BaseScope | None:
        """Return the scope directly above ``scope``, or ``None`` for the root."""
        index = self._index(scope)
        return self.ordered[index - 1] if index else None

    def descendants(self, scope: BaseScope) -> tuple[BaseScope, ...]:
        """Return the scopes deeper than ``scope``, nearest first."""
        return self.ordered[self._index(scope) + 1 :]

    def _index(self, scope: BaseScope) -> int:
        for index, member in enumerate(self.ordered):
            if member is scope:
                return index
        msg = f"Scope {scope!r} is not a member of {type(self).__name__}."
        raise InvalidRegistrationError(msg)


@dataclass(frozen=True)
class Scopes(BaseScopes):
    """Define the built-in scope ladder ordered by ``level``.

    ``RUNTIME`` and ``SESSION`` are skippable: ``enter_build()`` from ``APP``
    lands in ``REQUEST`` and materializes ``SESSION`` as an implicit parent.

    Examples:
        .. code-block:: python

            registry = (
                RegistryBuilder()
                .provide(Settings, Scope.APP)
                .provide(Session, Scope.REQUEST)
                .build()
            )

            with Container(registry, scope=Scope.APP) as app:
                with app.enter_build() as request:
                    session = request.get(Session)

    """

    RUNTIME: BaseScope = field(default=BaseScope(0, skippable=True))
    APP: BaseScope = field(default=BaseScope(1))
    SESSION: BaseScope = field(default=BaseScope(2, skippable=True))
    REQUEST: BaseScope = field(default=BaseScope(3))
    ACTION: BaseScope = field(default=BaseScope(4))
    STEP: BaseScope = field(default=BaseScope(5))


Scope = Scopes()
"""Provide the default scope constants used by registry and container APIs."""
