"""Runtime handles of started units. Never persisted."""

from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .roles import NodeRole


@dataclass(frozen=True)
class ContainerHandle:
    container_id: str
    container_name: str
    # URL other containers use (container name on the run network)
    internal_url: str | None = None
    # URL reachable from the host, if the port is published
    host_url: str | None = None


@dataclass(frozen=True)
class Account:
    address: str
    private_key: str


# Anvil's pre-funded accounts, by index, map onto these roles.
ACCOUNT_ROLES: tuple[str, ...] = (
    "deployer",
    "l1_fee_vault_recipient",
    "sequencer_fee_vault_recipient",
    "l1_proxy_admin_owner",
    "l2_proxy_admin_owner",
    "system_config_owner",
    "unsafe_block_signer",
    "batcher",
    "proposer",
    "challenger",
)


@dataclass(frozen=True)
class AnvilHandle(ContainerHandle):
    chain_id: int = 0
    accounts: tuple[Account, ...] = ()

    def account(self, role: str) -> Account:
        """Return the pre-funded account assigned to an OP stack role."""
        return self.accounts[ACCOUNT_ROLES.index(role)]


@dataclass(frozen=True)
class BootstrapHandle:
    """Outputs of the contract bootstrap stage (files on disk)."""

    workdir: Path
    genesis_path: Path
    rollup_path: Path
    intent_path: Path
    state_path: Path
    skipped: bool = False
    addresses: dict[str, str] = field(default_factory=dict)

    @property
    def dispute_game_factory(self) -> str | None:
        return self.addresses.get("DisputeGameFactoryProxy")


@dataclass(frozen=True)
class L2NodeHandle:
    """Paired execution (op-reth) and consensus (kona-node) containers."""

    index: int
    role: NodeRole
    active: bool
    execution: ContainerHandle
    consensus: ContainerHandle
    jwt_path: Path
    # kona-node p2p address on the run network
    enode: str | None = None

    @property
    def name(self) -> str:
        return self.execution.container_name

    @property
    def is_sequencer(self) -> bool:
        return self.role is NodeRole.SEQUENCER


@dataclass(frozen=True)
class CoordinatorHandle:
    # sequencer execution container names, in unit order
    sequencers: tuple[str, ...]
    conductors: tuple[ContainerHandle, ...]


@dataclass(frozen=True)
class L2StackHandle:
    nodes: tuple[L2NodeHandle, ...]
    batcher: ContainerHandle
    proposer: ContainerHandle
    challenger: ContainerHandle
    coordinator: CoordinatorHandle | None = None

    @property
    def sequencers(self) -> tuple[L2NodeHandle, ...]:
        return tuple(n for n in self.nodes if n.is_sequencer)

    @property
    def validators(self) -> tuple[L2NodeHandle, ...]:
        return tuple(n for n in self.nodes if not n.is_sequencer)


@dataclass(frozen=True)
class MonitoringHandle:
    prometheus: ContainerHandle
    grafana: ContainerHandle


class DeploymentResult:
    """Named aggregate of every handle produced by a chain run."""

    def __init__(self) -> None:
        self._handles: OrderedDict[str, Any] = OrderedDict()

    def add(self, name: str, handle: Any) -> None:
        self._handles[name] = handle

    def get(self, name: str, default: Any = None) -> Any:
        return self._handles.get(name, default)

    def names(self) -> list[str]:
        return list(self._handles)

    def __getitem__(self, name: str) -> Any:
        return self._handles[name]

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __repr__(self) -> str:
        return f"DeploymentResult({', '.join(self._handles)})"
