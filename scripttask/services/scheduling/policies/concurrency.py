"""
Concurrency admission for schedule firings.

Counts jobs in pending or running against per-node, per-mesh and global
ceilings. Every configured limit must have headroom. Lookup errors admit the
job: availability wins over strictness for admission gates.
"""

from dataclasses import dataclass
from typing import Optional

from scripttask.core.config import settings
from scripttask.models.scheduling import Schedule
from scripttask.utils.logger import get_logger

from ..nodes import NodeDirectory
from ..repository import SchedulingRepository

logger = get_logger(__name__)


@dataclass
class ConcurrencyLimits:
    """Concurrency limits configuration; None means unconstrained"""

    max_per_node: Optional[int] = None
    max_per_mesh: Optional[int] = None
    max_global: Optional[int] = None

    @classmethod
    def from_schedule(cls, schedule: Schedule) -> "ConcurrencyLimits":
        return cls(
            max_per_node=schedule.max_per_node,
            max_per_mesh=schedule.max_per_mesh,
            max_global=schedule.max_global,
        )


class ConcurrencyGate:
    """Decides whether one more job may be queued for a node"""

    def __init__(
        self,
        repository: SchedulingRepository,
        node_directory: NodeDirectory,
        system_limit: Optional[int] = None,
    ):
        self.repository = repository
        self.node_directory = node_directory
        self.system_limit = (
            system_limit
            if system_limit is not None
            else settings.SCHEDULER_MAX_CONCURRENT_JOBS
        )

    def check_concurrency(self, schedule: Schedule, node_id: str) -> bool:
        """
        Check if a new job for `node_id` fits within the schedule's limits.

        Returns:
            True if execution is allowed, False otherwise
        """
        limits = ConcurrencyLimits.from_schedule(schedule)

        try:
            if limits.max_per_node is not None:
                node_count = self.repository.count_active_jobs(node_id=node_id)
                if node_count >= limits.max_per_node:
                    logger.info(
                        "Node concurrency limit reached",
                        schedule_id=schedule.id,
                        node_id=node_id,
                        active=node_count,
                        limit=limits.max_per_node,
                    )
                    return False

            if limits.max_per_mesh is not None:
                mesh_id = self.node_directory.mesh_of(node_id)
                if mesh_id is not None:
                    mesh_count = self.repository.count_active_jobs(mesh_id=mesh_id)
                    if mesh_count >= limits.max_per_mesh:
                        logger.info(
                            "Mesh concurrency limit reached",
                            schedule_id=schedule.id,
                            mesh_id=mesh_id,
                            active=mesh_count,
                            limit=limits.max_per_mesh,
                        )
                        return False

            global_count = self.repository.count_active_jobs()
            if limits.max_global is not None and global_count >= limits.max_global:
                logger.info(
                    "Global concurrency limit reached",
                    schedule_id=schedule.id,
                    active=global_count,
                    limit=limits.max_global,
                )
                return False

            if global_count >= self.system_limit:
                logger.warning(
                    "System concurrency ceiling reached",
                    active=global_count,
                    limit=self.system_limit,
                )
                return False

            return True

        except Exception as e:
            logger.error(
                f"Error checking concurrency, allowing execution: {e}",
                schedule_id=schedule.id,
                node_id=node_id,
                exc_info=True,
            )
            return True
