from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException, status

from estatecrm.metrics import observe_status_transition


@dataclass(frozen=True)
class StateMachine:
    """Closed status vocabulary plus the transitions allowed between its members."""

    entity: str
    transitions: dict[str, frozenset[str]] = field(default_factory=dict)

    @property
    def states(self) -> frozenset[str]:
        return frozenset(self.transitions)

    def validate_state(self, value: str) -> str:
        if value not in self.transitions:
            observe_status_transition(self.entity, "rejected_unknown")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"invalid {self.entity} status '{value}'; expected one of: {', '.join(sorted(self.states))}",
            )
        return value

    def can_transition(self, current: str, target: str) -> bool:
        if current == target:
            return True
        return target in self.transitions.get(current, frozenset())

    def transition(self, current: str, target: str) -> bool:
        """Validate ``current -> target``. Returns False when the move is a no-op."""
        self.validate_state(target)
        if current == target:
            observe_status_transition(self.entity, "noop")
            return False
        if not self.can_transition(current, target):
            observe_status_transition(self.entity, "rejected_illegal")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{self.entity} cannot move from '{current}' to '{target}'",
            )
        observe_status_transition(self.entity, "applied")
        return True


def _open_graph(open_states: list[str], exits: dict[str, list[str]]) -> dict[str, frozenset[str]]:
    all_states = set(open_states) | set(exits)
    transitions: dict[str, frozenset[str]] = {}
    for state in open_states:
        transitions[state] = frozenset(all_states - {state})
    for state, targets in exits.items():
        transitions[state] = frozenset(targets)
    return transitions


LEAD_STATUSES = [
    "new",
    "contacted",
    "qualified",
    "meeting_scheduled",
    "tour",
    "proposal_sent",
    "offer",
    "negotiating",
    "nurturing",
]
PROPERTY_STATUSES = ["available", "pending", "under_offer"]
DEAL_STAGES = ["offer", "inspection", "legal", "payment"]
TASK_STATUSES = ["pending", "in_progress"]

lead_state_machine = StateMachine(
    entity="lead",
    transitions=_open_graph(LEAD_STATUSES, {"closed_won": [], "closed_lost": ["nurturing", "new"]}),
)
property_state_machine = StateMachine(
    entity="property",
    transitions=_open_graph(PROPERTY_STATUSES, {"sold": [], "withdrawn": ["available"]}),
)
deal_state_machine = StateMachine(
    entity="deal",
    transitions=_open_graph(DEAL_STAGES, {"handover": [], "cancelled": ["offer"]}),
)
task_state_machine = StateMachine(
    entity="task",
    transitions=_open_graph(TASK_STATUSES, {"completed": ["pending"]}),
)

ACTIVE_DEAL_STATUSES = frozenset(DEAL_STAGES)
CLOSED_DEAL_STATUSES = frozenset({"payment", "handover"})
QUALIFIED_LEAD_STATUSES = frozenset(
    {"qualified", "meeting_scheduled", "tour", "proposal_sent", "offer", "negotiating", "closed_won"}
)
