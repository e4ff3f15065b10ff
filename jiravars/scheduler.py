"""Per-metric poll scheduler.

``PollScheduler.run`` starts one asyncio task per metric definition.  Each
task polls its search immediately, then once per interval, until the
shared stop event is set.  A failed poll is logged and leaves the
previously published values in place; it never affects the other tasks.
``run`` returns once every task has exited.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

import structlog

from jiravars.config import MetricDefinition
from jiravars.errors import QueryError
from jiravars.metrics import ExporterMetrics
from jiravars.query import QueryExecutor
from jiravars.registry import MetricRegistry

logger = structlog.get_logger(__name__)


class PollScheduler:
    """Drives one independent polling loop per metric definition.

    Parameters:
        definitions: Metric definitions to poll.
        registry: Registry whose families receive the poll results.  Must
                  already be set up for *definitions*.
        executor: Shared query executor.
        metrics: Optional exporter self-metrics to record poll outcomes in.
    """

    def __init__(
        self,
        definitions: Sequence[MetricDefinition],
        registry: MetricRegistry,
        executor: QueryExecutor,
        metrics: ExporterMetrics | None = None,
    ) -> None:
        self.definitions = list(definitions)
        self.registry = registry
        self.executor = executor
        self.metrics = metrics

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until *stop* is set, then wait for every task to exit.

        If a task fails outside its poll cycle the remaining tasks are
        cancelled and awaited before the error propagates.
        """
        if not self.definitions:
            await stop.wait()
            return

        tasks = [
            asyncio.create_task(
                self._poll_loop(definition, stop),
                name=f"poll:{definition.name}",
            )
            for definition in self.definitions
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            # Survivors of a crashed task are cancelled; every task is joined.
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_loop(self, definition: MetricDefinition, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        interval = definition.interval_seconds
        next_tick = loop.time()
        await logger.ainfo(
            "poll_worker_started",
            metric=definition.name,
            interval_seconds=interval,
        )

        while not stop.is_set():
            await self.run_cycle(definition)

            # Fixed cadence; ticks missed by a slow cycle collapse into one.
            next_tick += interval
            now = loop.time()
            if next_tick < now:
                next_tick = now
            try:
                await asyncio.wait_for(stop.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                continue

        await logger.ainfo("poll_worker_stopped", metric=definition.name)

    async def run_cycle(self, definition: MetricDefinition) -> bool:
        """Run one poll cycle for *definition*.

        Returns:
            ``True`` if the registry was updated, ``False`` if the cycle
            failed and the previous values were kept.
        """
        await logger.adebug("poll_cycle", metric=definition.name)
        start = time.perf_counter()
        try:
            observations = await self.executor.fetch(definition)
        except QueryError as exc:
            await logger.aerror(
                "poll_failed",
                metric=exc.metric,
                stage=exc.stage,
                url=exc.url,
                error=str(exc),
            )
            self._record_failure(definition, exc.stage, start)
            return False
        except Exception:
            await logger.aexception("poll_crashed", metric=definition.name)
            self._record_failure(definition, "internal", start)
            return False

        first = not self.registry.family(definition).written
        self.registry.write(definition, observations)
        if first:
            await logger.ainfo(
                "metric_published",
                metric=definition.name,
                gauge=definition.metric_name,
                values=len(observations),
            )
        if self.metrics is not None:
            self.metrics.record_success(definition.name, time.perf_counter() - start)
        await logger.adebug(
            "poll_succeeded",
            metric=definition.name,
            values=len(observations),
        )
        return True

    def _record_failure(self, definition: MetricDefinition, stage: str, start: float) -> None:
        if self.metrics is not None:
            self.metrics.record_failure(
                definition.name, stage, time.perf_counter() - start
            )
