"""
Deployer chain.

A chain is a recursive `Deployer(service, rest)` terminated by `END`:

    Deployer(anvil, Deployer(op_deployer, Deployer(l2_stack, END)))

Each link's successor must belong to the next stage; this is checked when
the link is constructed, so an out-of-order chain never starts a container.

`execute` walks the chain, folding handles into a DeploymentResult. If any
unit fails, or the run is cancelled, everything started so far is cleaned up
(newest first) and the original error is re-raised.
"""

import asyncio
from typing import Any, Awaitable, Iterable, Sequence

import structlog

from .cleanup import cleanup_run
from .context import ExecutionContext
from .errors import DeploymentCancelled
from .handles import DeploymentResult
from .service import Service, deploy_unit
from .stages import Stage, check_transition

logger = structlog.get_logger()


class CancellationToken:
    """Set by the signal handler, checked between stages and at task joins."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "interrupted") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Stage | None = None) -> None:
        if self.cancelled:
            raise DeploymentCancelled(
                f"Deployment cancelled ({self.reason})", stage=stage.value if stage else None
            )

    async def wait(self) -> None:
        await self._event.wait()


class End:
    """Terminates a chain. Executing it returns the accumulator unchanged."""

    _instance: "End | None" = None

    def __new__(cls) -> "End":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END"


END = End()


class Deployer:
    """One chain link: a service plus the rest of the chain."""

    def __init__(self, service: Service, rest: "Deployer | End" = END):
        if isinstance(rest, Deployer):
            check_transition(service.stage, rest.service.stage)
        elif not isinstance(rest, End):
            raise TypeError(f"Chain successor must be a Deployer or END, got {type(rest).__name__}")
        self.service = service
        self.rest = rest

    @classmethod
    def from_services(cls, services: Sequence[Service]) -> "Deployer":
        """Build a chain from an ordered list, one service per stage."""
        if not services:
            raise ValueError("A chain needs at least one service")
        chain: Deployer | End = END
        for service in reversed(services):
            chain = cls(service, chain)
        return chain

    @property
    def stage(self) -> Stage:
        return self.service.stage

    def services(self) -> list[Service]:
        node: Deployer | End = self
        result = []
        while isinstance(node, Deployer):
            result.append(node.service)
            node = node.rest
        return result

    async def execute(self, ctx: ExecutionContext, keep_running: bool = False) -> DeploymentResult:
        """
        Deploy every link in order.

        Args:
            ctx: Shared context; stage outputs are published into it
            keep_running: Skip cleanup on failure (containers are left for inspection)

        Returns:
            DeploymentResult with one handle per unit, keyed by unit name
        """
        result = DeploymentResult()
        try:
            return await _execute(self, ctx, result)
        except (Exception, asyncio.CancelledError, KeyboardInterrupt) as e:
            logger.error("deployment_failed", error=str(e) or type(e).__name__, deployed=result.names())
            if keep_running:
                logger.warning("cleanup_skipped", reason="keep_running")
            else:
                await _finish_cleanup(ctx)
            raise


async def _finish_cleanup(ctx: ExecutionContext) -> None:
    """Run cleanup to completion, even if this task is cancelled again meanwhile."""
    cleanup = asyncio.ensure_future(cleanup_run(ctx.docker, ctx.network))
    while not cleanup.done():
        try:
            await asyncio.shield(cleanup)
        except asyncio.CancelledError:
            if not cleanup.done():
                logger.warning("cleanup_interrupt_ignored", network_name=ctx.network)


async def _execute(node: Deployer | End, ctx: ExecutionContext, acc: DeploymentResult) -> DeploymentResult:
    if isinstance(node, End):
        return acc

    service = node.service
    ctx.cancel.raise_if_cancelled(service.stage)
    ctx.assert_stage_inputs(service.stage)

    logger.info("stage_started", stage=service.stage.value, unit=service.name)
    handle = await deploy_unit(service, ctx)
    ctx.cancel.raise_if_cancelled(service.stage)

    if service.output is not None:
        ctx.publish(service.stage, service.output, handle)
    acc.add(service.name, handle)
    logger.info("stage_finished", stage=service.stage.value, unit=service.name)

    return await _execute(node.rest, ctx, acc)


async def join_all(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """Run awaitables concurrently and wait for every one to settle.

    Returns results in submission order. If any failed, raises the first
    failure by completion order, but only after all siblings have finished,
    so no container start is still in flight when cleanup begins.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    first_error: BaseException | None = None
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                await next_done
            except Exception as e:
                if first_error is None:
                    first_error = e
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if first_error is not None:
        raise first_error
    return [task.result() for task in tasks]
