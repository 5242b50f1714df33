"""Deployment stages and the forward-only transition table.

Stages run in a fixed order:

    infrastructure -> contract_bootstrap -> workload_nodes -> observability

A chain segment for stage S may only be followed by a segment for
NEXT_STAGE[S]. Chains check this when they are built, never during deploy.
"""

from enum import Enum

from .errors import StageOrderError


class Stage(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    CONTRACT_BOOTSTRAP = "contract_bootstrap"
    WORKLOAD_NODES = "workload_nodes"
    OBSERVABILITY = "observability"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.INFRASTRUCTURE,
    Stage.CONTRACT_BOOTSTRAP,
    Stage.WORKLOAD_NODES,
    Stage.OBSERVABILITY,
)

NEXT_STAGE: dict[Stage, Stage | None] = {
    Stage.INFRASTRUCTURE: Stage.CONTRACT_BOOTSTRAP,
    Stage.CONTRACT_BOOTSTRAP: Stage.WORKLOAD_NODES,
    Stage.WORKLOAD_NODES: Stage.OBSERVABILITY,
    Stage.OBSERVABILITY: None,
}


def next_stage(stage: Stage) -> Stage | None:
    """Return the only stage allowed to follow `stage` (None if terminal)."""
    return NEXT_STAGE[stage]


def check_transition(current: Stage, following: Stage) -> None:
    """Raise StageOrderError unless `following` is the successor of `current`."""
    expected = NEXT_STAGE[current]
    if expected is None:
        raise StageOrderError(f"Stage '{current.value}' is terminal; nothing may follow it (got '{following.value}')")
    if following is not expected:
        raise StageOrderError(
            f"Stage '{following.value}' cannot follow '{current.value}'; expected '{expected.value}'"
        )


def later_stages(stage: Stage, inclusive: bool = True) -> tuple[Stage, ...]:
    """Stages at or after `stage` in the fixed order."""
    start = stage.order if inclusive else stage.order + 1
    return STAGE_ORDER[start:]
