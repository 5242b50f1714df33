"""
Execution context shared by every stage of a run.

One superset context is threaded through the chain. Each stage owns a set of
output slots; a stage may only read slots owned by strictly earlier stages.
`assert_stage_inputs` checks (in debug builds) that nothing owned by the
running stage or a later one is populated yet.
"""

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import DeploymentConfig
from .errors import ConfigurationError
from .handles import AnvilHandle, BootstrapHandle, L2NodeHandle, L2StackHandle, MonitoringHandle
from .stages import Stage, later_stages
from .topology import Topology

if TYPE_CHECKING:
    from .chain import CancellationToken
    from .docker_ops import DockerClientWrapper
    from .image_builder import ImageResolver


STAGE_OUTPUTS: dict[Stage, tuple[str, ...]] = {
    Stage.INFRASTRUCTURE: ("l1",),
    Stage.CONTRACT_BOOTSTRAP: ("contracts",),
    Stage.WORKLOAD_NODES: ("l2_nodes", "l2_stack"),
    Stage.OBSERVABILITY: ("monitoring",),
}


@dataclass
class ExecutionContext:
    docker: "DockerClientWrapper"
    images: "ImageResolver"
    config: DeploymentConfig
    topology: Topology
    outdata: Path
    cancel: "CancellationToken"

    # infrastructure
    l1: AnvilHandle | None = None
    # contract bootstrap
    contracts: BootstrapHandle | None = None
    # workload nodes; l2_nodes is visible to units that start after the node pairs
    l2_nodes: tuple[L2NodeHandle, ...] = ()
    l2_stack: L2StackHandle | None = None
    # observability
    monitoring: MonitoringHandle | None = None

    force_bootstrap: bool = False

    @property
    def network(self) -> str:
        return self.topology.docker_network

    @property
    def l1_chain_id(self) -> int:
        return self.config.l1_chain_id

    @property
    def l2_chain_id(self) -> int:
        return self.config.l2_chain_id

    @property
    def l2_stack_dir(self) -> Path:
        return self.outdata / "l2-stack"

    @property
    def sequencer_nodes(self) -> tuple[L2NodeHandle, ...]:
        return tuple(n for n in self.l2_nodes if n.is_sequencer)

    def require(self, slot: str) -> Any:
        """Read an earlier stage's output, failing loudly if it never ran."""
        value = getattr(self, slot)
        if value is None or value == ():
            raise ConfigurationError(f"Context slot '{slot}' is not populated; did its stage run?")
        return value

    def assert_stage_inputs(self, stage: Stage) -> None:
        if __debug__:
            for later in later_stages(stage):
                for slot in STAGE_OUTPUTS[later]:
                    value = getattr(self, slot)
                    assert value is None or value == (), (
                        f"Slot '{slot}' owned by stage '{later.value}' is already populated "
                        f"while '{stage.value}' is starting"
                    )

    def publish(self, stage: Stage, slot: str, value: Any) -> None:
        if slot not in STAGE_OUTPUTS[stage]:
            raise ValueError(f"Stage '{stage.value}' does not own context slot '{slot}'")
        setattr(self, slot, value)

    def with_nodes(self, nodes: tuple[L2NodeHandle, ...]) -> "ExecutionContext":
        """Copy of this context that exposes started node pairs to dependent units."""
        return dataclasses.replace(self, l2_nodes=tuple(nodes))
