"""
Role assignment for the L2 node group.

For N homogeneous node units with K sequencers:

- units 0..K-1 are sequencers; unit 0 starts active, 1..K-1 start standby
- units K..N-1 are validators
- a coordinator unit (op-conductor) exists iff K > 1

Container names are disambiguated by suffix: unit 0 has none, sequencer i
gets "sequencer-<i>", validator j gets "validator-<j+1>".
"""

from dataclasses import dataclass
from enum import Enum

from .errors import ConfigurationError


class NodeRole(str, Enum):
    SEQUENCER = "sequencer"
    VALIDATOR = "validator"


@dataclass(frozen=True)
class NodeUnit:
    index: int
    role: NodeRole
    # True only for the sequencer that produces blocks on start
    active: bool
    suffix: str

    @property
    def is_sequencer(self) -> bool:
        return self.role is NodeRole.SEQUENCER

    @property
    def standby(self) -> bool:
        return self.is_sequencer and not self.active

    def container_name(self, base: str) -> str:
        return f"{base}-{self.suffix}" if self.suffix else base


@dataclass(frozen=True)
class RoleAssignment:
    units: tuple[NodeUnit, ...]
    has_coordinator: bool

    @property
    def sequencers(self) -> tuple[NodeUnit, ...]:
        return tuple(u for u in self.units if u.is_sequencer)

    @property
    def validators(self) -> tuple[NodeUnit, ...]:
        return tuple(u for u in self.units if not u.is_sequencer)

    @property
    def active(self) -> NodeUnit:
        return self.units[0]


def validate_counts(node_count: int, sequencer_count: int) -> None:
    if node_count < 1:
        raise ConfigurationError(f"At least one L2 node is required (got l2_node_count={node_count})")
    if sequencer_count < 1:
        raise ConfigurationError(f"At least one sequencer is required (got sequencer_count={sequencer_count})")
    if sequencer_count > node_count:
        raise ConfigurationError(
            f"sequencer_count ({sequencer_count}) cannot exceed l2_node_count ({node_count})"
        )


def assign_roles(node_count: int, sequencer_count: int = 1) -> RoleAssignment:
    """Build the ordered unit list for a node group.

    Raises:
        ConfigurationError: if the counts are not 1 <= K <= N.
    """
    validate_counts(node_count, sequencer_count)

    units: list[NodeUnit] = []
    for i in range(sequencer_count):
        units.append(
            NodeUnit(
                index=i,
                role=NodeRole.SEQUENCER,
                active=i == 0,
                suffix="" if i == 0 else f"sequencer-{i}",
            )
        )
    for j in range(node_count - sequencer_count):
        units.append(
            NodeUnit(
                index=sequencer_count + j,
                role=NodeRole.VALIDATOR,
                active=False,
                suffix=f"validator-{j + 1}",
            )
        )

    return RoleAssignment(units=tuple(units), has_coordinator=sequencer_count > 1)
