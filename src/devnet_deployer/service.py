import asyncio
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import docker.errors
import structlog

from .context import ExecutionContext
from .errors import DeployError, RuntimeClientError
from .stages import Stage

logger = structlog.get_logger()


class Service(ABC):
    """Base class for every deployable unit.

    Subclasses declare the stage they belong to and, optionally, the context
    slot their handle is published into for later stages to read.
    """

    stage: ClassVar[Stage]
    output: ClassVar[str | None] = None

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def deploy(self, ctx: ExecutionContext) -> Any:
        """
        Start the unit's container(s).

        Args:
            ctx: Context populated by every earlier stage

        Returns:
            The unit's handle
        """
        pass

    def start_timeout(self, ctx: ExecutionContext) -> float:
        return ctx.config.container_start_timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, stage={self.stage.value})"


async def deploy_unit(service: Service, ctx: ExecutionContext, timeout: float | None = None) -> Any:
    """Deploy one unit with a bounded wait, tagging any failure with unit and stage.

    Engine errors and timeouts become RuntimeClientError chained to the
    original; DeployErrors are tagged in place; anything else is wrapped in a
    DeployError. Nothing is retried.
    """
    stage = service.stage.value
    log = logger.bind(unit=service.name, stage=stage)
    log.debug("unit_deploying")
    try:
        if timeout is None:
            handle = await service.deploy(ctx)
        else:
            handle = await asyncio.wait_for(service.deploy(ctx), timeout=timeout)
    except DeployError as e:
        log.error("unit_failed", error=str(e))
        raise e.tag(service.name, stage)
    except docker.errors.DockerException as e:
        log.error("unit_failed", error=str(e))
        raise RuntimeClientError(f"Container engine error: {e}", unit=service.name, stage=stage) from e
    except asyncio.TimeoutError as e:
        log.error("unit_timed_out", timeout=timeout)
        message = f"Timed out after {timeout:.0f}s" if timeout is not None else str(e) or "Timed out"
        raise RuntimeClientError(message, unit=service.name, stage=stage) from e
    except Exception as e:
        log.exception("unit_failed", error=str(e))
        raise DeployError(f"{type(e).__name__}: {e}", unit=service.name, stage=stage) from e
    log.debug("unit_deployed")
    return handle
