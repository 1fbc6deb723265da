"""
Worker process entry point: python -m marketplace_jobs.workers

Serves the queues in WORKER_QUEUES with the handlers exported as PROCESSORS
by HANDLERS_MODULE. With ENABLE_SCHEDULER=true this process also runs the
recurring scheduler, the roadmap processor and the stuck-job detector.
Exactly one process per deployment may enable the scheduler role.
"""
import asyncio
import importlib
import logging
import signal

from marketplace_jobs.db.session import engine, wait_for_db
from marketplace_jobs.domain.errors import ConfigurationError
from marketplace_jobs.queues.registry import QueueRegistry
from marketplace_jobs.roadmap.processor import RoadmapProcessor
from marketplace_jobs.scheduler.recurring import get_scheduled_jobs, initialize_scheduled_jobs
from marketplace_jobs.scheduler.service import PeriodicService
from marketplace_jobs.scheduler.ticker import run_ticker
from marketplace_jobs.services.pause_control import PauseControl
from marketplace_jobs.services.stuck_detector import StuckTaskDetector
from marketplace_jobs.settings import settings
from marketplace_jobs.workers.config import build_worker_configs
from marketplace_jobs.workers.dispatch import Dispatcher, Processors, merge_processors
from marketplace_jobs.workers.maintenance import build_maintenance_processors
from marketplace_jobs.workers.pool import WorkerPool

logger = logging.getLogger("marketplace_jobs.workers")

def load_processors(module_path) -> Processors:
    if not module_path:
        logger.warning("HANDLERS_MODULE not set; only built-in maintenance handlers are available")
        return {}
    module = importlib.import_module(module_path)
    processors = getattr(module, "PROCESSORS", None)
    if processors is None:
        raise ConfigurationError(f"{module_path} does not define PROCESSORS")
    return processors

def build_scheduler_services(registry: QueueRegistry) -> list[PeriodicService]:
    pause_control = PauseControl()
    roadmap = RoadmapProcessor(registry, pause_control)
    detector = StuckTaskDetector()
    return [
        PeriodicService("scheduler", lambda: run_ticker(registry), settings.SCHEDULER_TICK_SECONDS, run_immediately=True),
        PeriodicService("roadmap", roadmap.process_all_site_roadmaps, settings.ROADMAP_INTERVAL_SECONDS, run_immediately=True),
        PeriodicService("stuck-detector", detector.detect_stuck_tasks, settings.STUCK_CHECK_INTERVAL_SECONDS),
    ]

async def main():
    configs = build_worker_configs(settings)
    registry = QueueRegistry()
    dispatcher = Dispatcher(merge_processors(
        build_maintenance_processors(registry),
        load_processors(settings.HANDLERS_MODULE),
    ))

    await wait_for_db()

    pool = WorkerPool(configs, dispatcher)
    services: list[PeriodicService] = []

    if settings.ENABLE_SCHEDULER:
        await initialize_scheduled_jobs()
        for definition in get_scheduled_jobs():
            logger.info("  %-24s %-14s %s", definition.job_type, definition.cron_expression, definition.description)
        services = build_scheduler_services(registry)
    else:
        logger.info("Scheduler role disabled on this worker (ENABLE_SCHEDULER=false)")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await pool.start()
    for service in services:
        await service.start()

    logger.info("Worker %s ready on %s queues", pool.worker_id, len(configs))
    await stop_event.wait()
    logger.info("Shutdown signal received")

    for service in services:
        await service.stop()
    await pool.stop()
    await engine.dispose()

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(main())
