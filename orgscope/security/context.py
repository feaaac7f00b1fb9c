from __future__ import annotations

import contextvars
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from orgscope.security.levels import VisibilityTier

T = TypeVar("T")


@dataclass
class SecurityContext:
    """
    Per-request visibility context.

    Built once per request by the context-establishing layer and discarded at
    the end of it. It is mutable only in two places: the scope-suppression
    flag and the memo of resolved accessible units. Never share one instance
    between concurrent requests.

    `tenant_id == 0 or actor_id == 0` means "no authenticated actor". Such a
    context only bypasses filtering when it also carries `is_system=True`
    (see `SecurityContext.system()`).
    """

    tenant_id: int
    actor_id: int
    unit_id: int = 0
    tier: VisibilityTier | None = None
    is_admin: bool = False
    is_system: bool = False

    scope_disabled: bool = field(default=False, init=False)
    _unit_memo: dict[tuple[int, bool], frozenset[int]] = field(default_factory=dict, init=False, repr=False)
    _ended: bool = field(default=False, init=False, repr=False)

    @classmethod
    def begin(
        cls,
        tenant_id: int,
        actor_id: int,
        unit_id: int = 0,
        tier: VisibilityTier | int | None = None,
        is_admin: bool = False,
    ) -> SecurityContext:
        return cls(
            tenant_id=int(tenant_id or 0),
            actor_id=int(actor_id or 0),
            unit_id=int(unit_id or 0),
            tier=VisibilityTier(tier) if tier is not None else None,
            is_admin=bool(is_admin),
        )

    @classmethod
    def system(cls) -> SecurityContext:
        """Context for internal jobs: explicitly unrestricted."""
        return cls(tenant_id=0, actor_id=0, is_system=True)

    def end(self) -> None:
        self._unit_memo.clear()
        self.scope_disabled = False
        self._ended = True

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def is_authenticated(self) -> bool:
        return self.tenant_id > 0 and self.actor_id > 0

    @property
    def effective_tier(self) -> VisibilityTier:
        # Missing tier fails closed.
        return self.tier if self.tier is not None else VisibilityTier.SELF

    # ---- scope suppression ----------------------------------------------------------

    @contextmanager
    def suppressed_scope(self) -> Iterator[SecurityContext]:
        """Disable row scoping inside the block; the previous state always comes back."""
        previous = self.scope_disabled
        self.scope_disabled = True
        try:
            yield self
        finally:
            self.scope_disabled = previous

    def with_scope_disabled(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.suppressed_scope():
            return fn(*args, **kwargs)

    # ---- accessible-unit memo -------------------------------------------------------

    def memoized_units(self, unit_id: int, include_subtree: bool) -> frozenset[int] | None:
        return self._unit_memo.get((unit_id, include_subtree))

    def memoize_units(self, unit_id: int, include_subtree: bool, units: frozenset[int]) -> None:
        if self._ended:
            return
        self._unit_memo[(unit_id, include_subtree)] = units


# ---- task-local slot ------------------------------------------------------------------

_current_context: contextvars.ContextVar[SecurityContext | None] = contextvars.ContextVar(
    "orgscope_security_context", default=None
)


def current_context() -> SecurityContext | None:
    return _current_context.get()


@contextmanager
def bind_context(ctx: SecurityContext) -> Iterator[SecurityContext]:
    """
    Make `ctx` the current context for this task/thread.

    The previous value is restored and the context ended on every exit path.
    Setup and teardown may run in different copies of the contextvars
    context, so the restore is a plain `set()`.
    """

    previous = _current_context.get()
    _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.set(previous)
        ctx.end()
