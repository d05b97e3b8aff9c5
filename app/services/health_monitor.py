import logging
from typing import Callable, Dict, Optional

from tortoise import timezone

from app.core.config import HealthConfig
from app.core.db import ping_db
from app.models.checkpoint import ProjectorCheckpoint
from app.models.dead_letter import DeadLetterEntry
from app.schemas.health import ComponentStatus, DeadLetterBacklog, ProjectionLag, ReadinessReport

log = logging.getLogger("health_monitor")


class HealthMonitor:
    """
    Derives readiness from projection lag and the dead-letter backlog.
    Reports only; it never retries or repairs anything.
    """

    def __init__(self, config: Optional[HealthConfig] = None, clock: Callable = timezone.now):
        self.config = config or HealthConfig()
        self.clock = clock

    async def lag_ms(self, channel_name: str) -> Optional[float]:
        """Milliseconds since the channel's checkpoint last advanced, None if it never has."""
        checkpoint = await ProjectorCheckpoint.get_or_none(channel_name=channel_name)
        if checkpoint is None:
            return None
        return max((self.clock() - checkpoint.updated_at).total_seconds() * 1000, 0.0)

    async def dead_letter_count(self) -> int:
        return await DeadLetterEntry.filter(resolved_at__isnull=True).count()

    async def readiness(self) -> ReadinessReport:
        threshold = self.config.lag_threshold_ms
        ceiling = self.config.dead_letter_ceiling

        try:
            await ping_db()
        except Exception as e:
            log.error(f"Readiness: database check failed: {e}")
            return ReadinessReport(
                ready=False,
                database=ComponentStatus.UNHEALTHY,
                projection_lag=ProjectionLag(threshold_ms=threshold),
                dead_letters=DeadLetterBacklog(count=0, ceiling=ceiling),
            )

        channels: Dict[str, Optional[float]] = {}
        for channel in self.config.channels:
            channels[channel] = await self.lag_ms(channel)

        # Worst channel decides; a channel without a checkpoint counts as unbounded lag
        missing = [channel for channel, lag in channels.items() if lag is None]
        measured = {channel: lag for channel, lag in channels.items() if lag is not None}
        worst_channel: Optional[str] = None
        worst_lag: Optional[float] = None
        if missing:
            worst_channel = missing[0]
        elif measured:
            worst_channel = max(measured, key=measured.get)
            worst_lag = measured[worst_channel]
        lag_ok = not missing and all(lag < threshold for lag in measured.values())

        dead_letters = await self.dead_letter_count()
        backlog_ok = dead_letters < ceiling

        report = ReadinessReport(
            ready=lag_ok and backlog_ok,
            database=ComponentStatus.HEALTHY,
            projection_lag=ProjectionLag(channel=worst_channel, lag_ms=worst_lag, threshold_ms=threshold),
            dead_letters=DeadLetterBacklog(count=dead_letters, ceiling=ceiling),
            channels=channels,
        )
        if not report.ready:
            log.warning(
                f"Readiness: NOT READY (lag={worst_lag}ms on {worst_channel}, threshold={threshold}ms, "
                f"dead letters={dead_letters}/{ceiling})"
            )
        return report
