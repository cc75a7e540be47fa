"""
Canonical workflow types (``escrow_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for state machines.  Contract status, contract
workflow status, milestone, job payment, withdrawal and offer lifecycles
are each declared once as a ``Workflow`` and consulted by the services;
no service compares status strings to decide legality on its own.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from escrow_kernel.exceptions import InvalidTransitionError


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Descriptive only; the owning service evaluates it.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    moves_money: bool = False


def _value(state: str | Enum) -> str:
    return state.value if isinstance(state, Enum) else state


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for an aggregate lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} not in states"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.from_state}->{t.to_state} "
                    "references an unknown state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    "has an outgoing transition"
                )

    def allows(self, from_state: str | Enum, to_state: str | Enum) -> bool:
        """True iff (from_state, to_state) appears in the transition table."""
        src, dst = _value(from_state), _value(to_state)
        return any(t.from_state == src and t.to_state == dst for t in self.transitions)

    def targets(self, from_state: str | Enum) -> tuple[str, ...]:
        src = _value(from_state)
        return tuple(t.to_state for t in self.transitions if t.from_state == src)

    def transition_for(self, from_state: str | Enum, action: str) -> Transition | None:
        src = _value(from_state)
        for t in self.transitions:
            if t.from_state == src and t.action == action:
                return t
        return None

    def is_terminal(self, state: str | Enum) -> bool:
        return _value(state) in self.terminal_states


def require_transition(
    workflow: Workflow,
    entity_type: str,
    entity_id: object,
    from_state: str | Enum,
    to_state: str | Enum,
    reason: str | None = None,
) -> None:
    """Raise ``InvalidTransitionError`` unless the table allows the move."""
    if not workflow.allows(from_state, to_state):
        raise InvalidTransitionError(
            entity_type,
            str(entity_id),
            _value(from_state),
            _value(to_state),
            reason,
        )


def require_action(
    workflow: Workflow,
    entity_type: str,
    entity_id: object,
    from_state: str | Enum,
    action: str,
) -> Transition:
    """Resolve the transition for ``action`` from ``from_state`` or raise."""
    transition = workflow.transition_for(from_state, action)
    if transition is None:
        raise InvalidTransitionError(
            entity_type,
            str(entity_id),
            _value(from_state),
            action,
            f"action '{action}' not allowed",
        )
    return transition
