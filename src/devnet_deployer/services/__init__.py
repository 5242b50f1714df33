"""Deployable units, one module per component."""

from .anvil import AnvilService
from .conductor import CoordinatorService
from .l2_node import L2NodeService
from .l2_stack import L2StackService
from .monitoring import MonitoringService
from .op_deployer import OpDeployerService
from .op_stack import BatcherService, ChallengerService, ProposerService

__all__ = [
    "AnvilService",
    "BatcherService",
    "ChallengerService",
    "CoordinatorService",
    "L2NodeService",
    "L2StackService",
    "MonitoringService",
    "OpDeployerService",
    "ProposerService",
]
