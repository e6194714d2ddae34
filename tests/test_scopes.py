"""Tests for scope constants and the scope chain."""

from dataclasses import dataclass, field

import pytest

from scopewire import BaseScope, BaseScopes, InvalidRegistrationError, Scope


@dataclass(frozen=True)
class JobScopes(BaseScopes):
    WORKER: BaseScope = field(default=BaseScope(0))
    JOB: BaseScope = field(default=BaseScope(1))
    TASK: BaseScope = field(default=BaseScope(2))


@dataclass(frozen=True)
class ClashingScopes(BaseScopes):
    FIRST: BaseScope = field(default=BaseScope(1))
    SECOND: BaseScope = field(default=BaseScope(1))


class TestDefaultScopes:
    def test_ordered_by_level(self) -> None:
        """Default scopes are ordered from the root outward."""
        assert Scope.ordered == (
            Scope.RUNTIME,
            Scope.APP,
            Scope.SESSION,
            Scope.REQUEST,
            Scope.ACTION,
            Scope.STEP,
        )

    def test_root_is_lowest_level(self) -> None:
        """The root scope is the one with the lowest level."""
        assert Scope.root is Scope.RUNTIME

    def test_skippable_scopes(self) -> None:
        """RUNTIME and SESSION are skippable helper scopes."""
        assert Scope.skippable == (Scope.RUNTIME, Scope.SESSION)

    def test_parent(self) -> None:
        """Every non-root scope has the next shallower scope as parent."""
        assert Scope.parent(Scope.RUNTIME) is None
        assert Scope.parent(Scope.APP) is Scope.RUNTIME
        assert Scope.parent(Scope.REQUEST) is Scope.SESSION

    def test_descendants(self) -> None:
        """Descendants are the deeper scopes, nearest first."""
        assert Scope.descendants(Scope.REQUEST) == (Scope.ACTION, Scope.STEP)
        assert Scope.descendants(Scope.STEP) == ()

    def test_scope_compares_as_int(self) -> None:
        """Scopes compare by level."""
        assert Scope.APP < Scope.REQUEST
        assert Scope.REQUEST == 3

    def test_repr_uses_attribute_name(self) -> None:
        """Scopes take their name from the collection attribute."""
        assert repr(Scope.APP) == "Scope.APP(1, skippable=False)"
        assert Scope.SESSION.scope_name == "SESSION"

    def test_membership_is_by_identity(self) -> None:
        """An equal level from another collection is not a member."""
        assert Scope.APP in Scope
        assert BaseScope(1) not in Scope


class TestCustomScopes:
    def test_custom_collection_builds_its_own_chain(self) -> None:
        """A subclass of BaseScopes defines an independent chain."""
        scopes = JobScopes()

        assert scopes.root is scopes.WORKER
        assert scopes.descendants(scopes.WORKER) == (scopes.JOB, scopes.TASK)
        assert scopes.skippable == ()

    def test_duplicate_levels_rejected(self) -> None:
        """Two members with the same level are rejected."""
        with pytest.raises(InvalidRegistrationError, match="duplicate levels"):
            ClashingScopes()

    def test_empty_collection_rejected(self) -> None:
        """A collection without scopes is rejected."""
        with pytest.raises(InvalidRegistrationError, match="declares no scopes"):
            BaseScopes()

    def test_foreign_scope_has_no_position(self) -> None:
        """Asking for the parent of a foreign scope fails."""
        with pytest.raises(InvalidRegistrationError):
            Scope.parent(JobScopes().JOB)
