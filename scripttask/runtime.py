"""
Process wiring for the scheduler and the remediation engine.

Builds every component around one session factory and one node directory.
The surrounding platform feeds the node directory and reports job results
through the projector.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import sentry_sdk
from sqlalchemy.orm import sessionmaker

from scripttask.core.config import settings
from scripttask.core.database import SessionLocal, engine, init_db
from scripttask.monitoring.alerting.notification import NotificationManager
from scripttask.services.remediation import (
    ActionHandler,
    EmailSender,
    EscalationManager,
    RemediationEngine,
    RemediationRepository,
)
from scripttask.services.scheduling import (
    CronScheduler,
    JobQueueProjector,
    NodeDirectory,
    SchedulingRepository,
    StaticNodeDirectory,
)
from scripttask.services.scheduling.policies import ConcurrencyGate
from scripttask.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class Runtime:
    scheduling_repository: SchedulingRepository
    remediation_repository: RemediationRepository
    node_directory: NodeDirectory
    projector: JobQueueProjector
    scheduler: CronScheduler
    remediation: RemediationEngine

    @classmethod
    def build(
        cls,
        session_factory: Optional[sessionmaker] = None,
        node_directory: Optional[NodeDirectory] = None,
        email_sender: Optional[EmailSender] = None,
        notifier: Optional[NotificationManager] = None,
    ) -> "Runtime":
        session_factory = session_factory or SessionLocal
        node_directory = node_directory or StaticNodeDirectory()

        scheduling_repository = SchedulingRepository(session_factory=session_factory)
        remediation_repository = RemediationRepository(session_factory=session_factory)

        gate = ConcurrencyGate(scheduling_repository, node_directory)
        projector = JobQueueProjector(scheduling_repository, node_directory, gate)
        scheduler = CronScheduler(
            scheduling_repository,
            node_directory,
            concurrency_gate=gate,
            projector=projector,
        )

        actions = ActionHandler(
            remediation_repository,
            projector,
            email_sender=email_sender,
            notifier=notifier,
        )
        remediation = RemediationEngine(
            remediation_repository,
            projector,
            actions=actions,
            escalation=EscalationManager(remediation_repository, actions, projector),
        )

        return cls(
            scheduling_repository=scheduling_repository,
            remediation_repository=remediation_repository,
            node_directory=node_directory,
            projector=projector,
            scheduler=scheduler,
            remediation=remediation,
        )

    async def start(self) -> None:
        await self.remediation.initialize()
        await self.scheduler.start()
        logger.info("Runtime started", app=settings.APP_NAME, environment=settings.APP_ENV)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.remediation.shutdown()
        logger.info("Runtime stopped", app=settings.APP_NAME)


async def serve(runtime: Optional[Runtime] = None) -> None:
    runtime = runtime or Runtime.build()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await runtime.start()
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main() -> None:
    configure_logging()

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.APP_ENV,
            traces_sample_rate=0.1,
        )
        logger.info("Sentry initialized", environment=settings.APP_ENV)
    else:
        logger.info("Sentry not configured (SENTRY_DSN not set)")

    init_db(engine)
    logger.info("Starting service", app=settings.APP_NAME, environment=settings.APP_ENV)
    asyncio.run(serve())


if __name__ == "__main__":
    main()
