"""
Update descriptor for attribute propagation.

Every attribute change is applied with an UpdateMode saying where it has to
go. A change that came from one side is never sent back to that side.
"""

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class UpdateMode:
    """Flags controlling how one attribute change is propagated."""
    toward_downstream: bool = False   # report to the downstream runtime
    toward_upstream: bool = False     # send to the upstream system
    suppress_derivation: bool = False  # don't recompute dependent attributes
    already_chained: bool = False     # this change was derived from another one
    defer_apply: bool = False         # record only, no hardware side effect yet
    forced: bool = False              # apply even if the value is unchanged

    @classmethod
    def from_upstream(cls, forced: bool = False) -> "UpdateMode":
        """A change pushed by the upstream system."""
        return cls(toward_downstream=True, forced=forced)

    @classmethod
    def from_downstream(cls, defer_apply: bool = False) -> "UpdateMode":
        """A change requested by the downstream runtime."""
        return cls(toward_upstream=True, defer_apply=defer_apply)

    @classmethod
    def initial(cls) -> "UpdateMode":
        """Initial state before a unit is installed: cache only."""
        return cls(forced=True)

    def chained(self) -> "UpdateMode":
        """Mode for a change derived from this one; it is always made visible downstream."""
        return replace(self, toward_downstream=True, toward_upstream=False, already_chained=True, forced=False)

    def with_flags(self, **flags) -> "UpdateMode":
        return replace(self, **flags)
