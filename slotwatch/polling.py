import asyncio
from datetime import datetime, timedelta
from logging import getLogger
from typing import Callable, List, Optional, Sequence

import slotwatch.bigquery_helpers as bigquery_helpers
from slotwatch.aggregation import aggregate
from slotwatch.error_handling import ErrorHandlerConfiguration
from slotwatch.model import JobRecord, UsageRow
from slotwatch.validation import filter_attributed

logger = getLogger(__name__)

JobSource = Callable[[], Sequence[JobRecord]]
"""Returns a fresh snapshot of job records each time it is called. May block."""

UsageSink = Callable[[List[UsageRow]], None]
"""Receives each newly aggregated hierarchy."""


class LiveMode:
    """
    Whether a view should keep refreshing itself ("live") or stay on the last snapshot.
    """

    def __init__(self, is_live: bool = False) -> None:
        self._is_live = is_live
        super().__init__()

    @property
    def is_live(self) -> bool:
        return self._is_live

    def turn_on(self) -> None:
        self._is_live = True

    def turn_off(self) -> None:
        self._is_live = False

    def toggle(self) -> bool:
        """
        Flips between live and paused, returning the new state.
        """

        self._is_live = not self._is_live
        return self._is_live


class UsageMonitor:
    """
    Periodically refreshes the reservation usage hierarchy from a job source, while in live mode.
    """

    DEFAULT_POLLING_INTERVAL = timedelta(seconds=30)
    """How long to wait between refreshes. In other words, how stale the published usage is permitted to be."""

    _polling_task: Optional["asyncio.Task[None]"]
    """The ongoing polling task, if live."""

    def __init__(
        self,
        source: JobSource,
        sink: UsageSink,
        error_handler: ErrorHandlerConfiguration,
        polling_interval: timedelta = DEFAULT_POLLING_INTERVAL,
        tooltips: bool = True,
    ) -> None:
        if polling_interval <= timedelta(0):
            raise ValueError(f"Polling interval must be positive, got {polling_interval}")

        poll_count_per_day = timedelta(days=1) / polling_interval
        if poll_count_per_day > bigquery_helpers.PERMITTED_OPERATIONS_PER_DAY:
            logger.warning(
                f"Expected number of polls {poll_count_per_day} would exceed permitted {bigquery_helpers.PERMITTED_OPERATIONS_PER_DAY}"
            )

        self._source = source
        self._sink = sink
        self._error_handler = error_handler
        self._polling_interval = polling_interval
        self._tooltips = tooltips
        self._polling_task = None
        self.live_mode = LiveMode()
        self.refresh_count = 0
        super().__init__()

    @property
    def polling_interval(self) -> timedelta:
        return self._polling_interval

    def refresh(self) -> List[UsageRow]:
        """
        Takes one snapshot from the source, aggregates it and publishes the result to the sink.

        Returns the published rows.
        """

        records = filter_attributed(self._source())
        rows = aggregate(records, tooltips=self._tooltips)
        self._sink(rows)

        self.refresh_count += 1
        logger.info(
            f"Published {len(rows)} usage rows from {len(records)} job records"
        )
        return rows

    async def _polling_loop(self, iterations: Optional[int]) -> None:
        loop = asyncio.get_running_loop()
        completed = 0

        while self.live_mode.is_live:
            with self._error_handler("Exception while refreshing usage:"):
                await loop.run_in_executor(None, self.refresh)

            completed += 1
            if iterations is not None and completed >= iterations:
                logger.info(f"Finished {completed} polling iterations")
                self.live_mode.turn_off()
                break

            next_wake_up = datetime.now() + self._polling_interval
            logger.debug(f"Polling again at {next_wake_up}")
            await asyncio.sleep(self._polling_interval.total_seconds())

    def start(self, iterations: Optional[int] = None) -> "asyncio.Task[None]":
        """
        Enters live mode, refreshing immediately and then once every polling interval.

        Must be called from within a running event loop. If `iterations` is given, live mode ends after that many refreshes.
        """

        if self._polling_task is not None and not self._polling_task.done():
            logger.debug("Already live, ignoring start request")
            return self._polling_task

        self.live_mode.turn_on()
        self._polling_task = asyncio.create_task(self._polling_loop(iterations))
        logger.info(f"Started live polling every {self._polling_interval}")
        return self._polling_task

    def stop(self) -> None:
        """
        Leaves live mode, cancelling any pending refresh.
        """

        self.live_mode.turn_off()

        task = self._polling_task
        self._polling_task = None
        if task is not None and not task.done():
            task.cancel()

        logger.info("Stopped live polling")

    def toggle(self) -> bool:
        """
        Starts polling if paused, or stops it if live. Returns whether the monitor is now live.
        """

        if self.live_mode.is_live:
            self.stop()
        else:
            self.start()

        return self.live_mode.is_live
