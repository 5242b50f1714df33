"""Container names for a network. Deploy and health both derive names here."""

from dataclasses import dataclass

from .config import DeploymentConfig
from .roles import NodeUnit, RoleAssignment, assign_roles


@dataclass(frozen=True)
class NodeNames:
    unit: NodeUnit
    execution: str
    consensus: str


@dataclass(frozen=True)
class Topology:
    network_name: str
    roles: RoleAssignment
    monitoring: bool

    @classmethod
    def from_config(cls, config: DeploymentConfig) -> "Topology":
        config.require_resolved()
        return cls(
            network_name=config.network_name,
            roles=assign_roles(config.l2_node_count, config.sequencer_count),
            monitoring=config.monitoring,
        )

    def name(self, service: str) -> str:
        return f"{self.network_name}-{service}"

    @property
    def docker_network(self) -> str:
        return self.name("network")

    @property
    def anvil(self) -> str:
        return self.name("anvil")

    def op_deployer(self, step: str) -> str:
        return self.name(f"op-deployer-{step}")

    @property
    def nodes(self) -> tuple[NodeNames, ...]:
        return tuple(
            NodeNames(
                unit=unit,
                execution=unit.container_name(self.name("op-reth")),
                consensus=unit.container_name(self.name("kona-node")),
            )
            for unit in self.roles.units
        )

    @property
    def batcher(self) -> str:
        return self.name("op-batcher")

    @property
    def proposer(self) -> str:
        return self.name("op-proposer")

    @property
    def challenger(self) -> str:
        return self.name("op-challenger")

    @property
    def conductors(self) -> tuple[str, ...]:
        if not self.roles.has_coordinator:
            return ()
        return tuple(self.name(f"op-conductor-{u.index}") for u in self.roles.sequencers)

    @property
    def prometheus(self) -> str:
        return self.name("prometheus")

    @property
    def grafana(self) -> str:
        return self.name("grafana")

    def long_running_containers(self) -> list[str]:
        """Every container that stays up after a successful deploy, in start order."""
        names = [self.anvil]
        for node in self.nodes:
            names.extend([node.execution, node.consensus])
        names.extend([self.batcher, self.proposer, self.challenger])
        names.extend(self.conductors)
        if self.monitoring:
            names.extend([self.prometheus, self.grafana])
        return names
