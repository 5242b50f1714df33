"""Stage ordering: illegal chains are rejected when they are built."""

from itertools import product

import pytest

from devnet_deployer.chain import END, Deployer
from devnet_deployer.errors import ConfigurationError, StageOrderError
from devnet_deployer.service import Service
from devnet_deployer.stages import NEXT_STAGE, STAGE_ORDER, Stage, check_transition, later_stages, next_stage


class RecordingService(Service):
    """Records deploy calls; never expected to run in these tests."""

    calls: list[str] = []

    def __init__(self, stage: Stage, name: str | None = None):
        super().__init__(name or stage.value)
        self._stage = stage

    @property
    def stage(self) -> Stage:
        return self._stage

    async def deploy(self, ctx):
        RecordingService.calls.append(self.name)
        return self.name


LEGAL = {(s, NEXT_STAGE[s]) for s in Stage if NEXT_STAGE[s] is not None}
ILLEGAL = [(a, b) for a, b in product(Stage, Stage) if (a, b) not in LEGAL]


class TestTransitionTable:
    def test_order_is_fixed(self):
        assert STAGE_ORDER == (
            Stage.INFRASTRUCTURE,
            Stage.CONTRACT_BOOTSTRAP,
            Stage.WORKLOAD_NODES,
            Stage.OBSERVABILITY,
        )

    def test_observability_is_terminal(self):
        assert next_stage(Stage.OBSERVABILITY) is None

    @pytest.mark.parametrize("current,following", sorted(LEGAL))
    def test_legal_transitions_pass(self, current, following):
        check_transition(current, following)

    @pytest.mark.parametrize("current,following", ILLEGAL)
    def test_illegal_transitions_raise(self, current, following):
        with pytest.raises(StageOrderError):
            check_transition(current, following)

    def test_stage_order_error_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            check_transition(Stage.WORKLOAD_NODES, Stage.CONTRACT_BOOTSTRAP)

    def test_later_stages(self):
        assert later_stages(Stage.WORKLOAD_NODES) == (Stage.WORKLOAD_NODES, Stage.OBSERVABILITY)
        assert later_stages(Stage.WORKLOAD_NODES, inclusive=False) == (Stage.OBSERVABILITY,)


class TestChainConstruction:
    @pytest.fixture(autouse=True)
    def reset_calls(self):
        RecordingService.calls = []
        yield

    @pytest.mark.parametrize("current,following", ILLEGAL)
    def test_every_illegal_link_rejected_before_deploy(self, current, following):
        """Building the link fails; no service is ever deployed."""
        with pytest.raises(StageOrderError):
            Deployer(RecordingService(current), Deployer(RecordingService(following)))
        assert RecordingService.calls == []

    def test_workload_before_bootstrap_rejected(self):
        services = [
            RecordingService(Stage.INFRASTRUCTURE),
            RecordingService(Stage.WORKLOAD_NODES),
            RecordingService(Stage.CONTRACT_BOOTSTRAP),
        ]
        with pytest.raises(StageOrderError, match="workload_nodes"):
            Deployer.from_services(services)
        assert RecordingService.calls == []

    def test_skipping_a_stage_rejected(self):
        with pytest.raises(StageOrderError):
            Deployer.from_services([RecordingService(Stage.INFRASTRUCTURE), RecordingService(Stage.WORKLOAD_NODES)])

    def test_full_chain_builds(self):
        chain = Deployer.from_services([RecordingService(s) for s in STAGE_ORDER])
        assert [s.stage for s in chain.services()] == list(STAGE_ORDER)

    def test_chain_may_stop_before_observability(self):
        chain = Deployer.from_services([RecordingService(s) for s in STAGE_ORDER[:3]])
        assert len(chain.services()) == 3

    def test_end_terminates(self):
        link = Deployer(RecordingService(Stage.OBSERVABILITY), END)
        assert link.rest is END

    def test_bad_successor_type(self):
        with pytest.raises(TypeError):
            Deployer(RecordingService(Stage.INFRASTRUCTURE), "not a chain")

    def test_empty_chain(self):
        with pytest.raises(ValueError):
            Deployer.from_services([])
