"""Select the restore points to test from the backup catalog."""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from surebackup.catalog.client import CatalogClient
from surebackup.catalog.models import Backup, Job
from surebackup.models.restore import RestorePoint

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def matches_keywords(keywords: Iterable[str], *values: str | None) -> bool:
    """Case-insensitive substring match of any keyword against any value."""
    lowered = [value.lower() for value in values if value]
    return any(keyword.lower() in value for keyword in keywords for value in lowered)


def latest_per_vm(points: Iterable[RestorePoint]) -> Sequence[RestorePoint]:
    """Keep the most recent restore point of each VM.

    VMs keep the order in which they were first enumerated.
    """
    latest: dict[str, RestorePoint] = {}
    for point in points:
        current = latest.get(point.vm_name)
        if current is None or point.creation_time > current.creation_time:
            latest[point.vm_name] = point
    return list(latest.values())


@dataclass(frozen=True, kw_only=True)
class RestorePointSelector:
    """Discovers eligible restore points and picks one candidate per VM."""

    catalog: CatalogClient
    cloud_job_keywords: Sequence[str] = ("azure", "cloud")
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)

    async def select_candidates(
        self,
        max_age_days: float,
        job_name_filter: Sequence[str] = (),
        max_count: int = 3,
    ) -> Sequence[RestorePoint]:
        """Return at most ``max_count`` restore points, one per VM.

        Candidates keep the natural enumeration order of backups and
        restore points; they are not ranked.
        """
        cutoff = self.clock() - timedelta(days=max_age_days)
        backups = await self._qualifying_backups(job_name_filter)

        points: list[RestorePoint] = []
        for backup, job_name in backups:
            records = await self.catalog.list_restore_points(backup.id)
            fresh = [r for r in records if _aware(r.creation_time) > cutoff]
            log.debug(
                "Backup %s: %d restore point(s), %d within %s day(s)",
                backup.name,
                len(records),
                len(fresh),
                max_age_days,
            )
            points.extend(
                RestorePoint(
                    backup_name=backup.name,
                    backup_id=backup.id,
                    restore_point_id=record.id,
                    vm_name=record.name,
                    creation_time=_aware(record.creation_time),
                    job_name=job_name,
                )
                for record in fresh
            )

        candidates = latest_per_vm(points)[:max_count]
        log.info(
            "Selected %d restore point(s) from %d eligible across %d backup(s)",
            len(candidates),
            len(points),
            len(backups),
        )
        return candidates

    async def _qualifying_backups(
        self, job_name_filter: Sequence[str]
    ) -> Sequence[tuple[Backup, str | None]]:
        jobs = [job for job in await self.catalog.list_jobs() if self._is_cloud(job)]
        if job_name_filter:
            allowed = {name.lower() for name in job_name_filter}
            jobs = [job for job in jobs if job.name.lower() in allowed]

        backups = await self.catalog.list_backups()

        if jobs:
            job_names = {job.id: job.name for job in jobs}
            log.info("Found %d qualifying job(s)", len(jobs))
            return [
                (backup, job_names[backup.job_id])
                for backup in backups
                if backup.job_id in job_names
            ]

        # Without usable job metadata, fall back to a looser scan of all backups.
        log.warning(
            "No qualifying backup jobs found, scanning all %d backup(s) by name",
            len(backups),
        )
        return [
            (backup, None)
            for backup in backups
            if matches_keywords(
                self.cloud_job_keywords,
                backup.name,
                backup.platform_name,
                backup.policy_tag,
            )
        ]

    def _is_cloud(self, job: Job) -> bool:
        return not job.is_disabled and matches_keywords(
            self.cloud_job_keywords, job.type, job.name
        )


def _aware(value: datetime) -> datetime:
    """Treat naive timestamps from the catalog as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
