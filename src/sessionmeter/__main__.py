import asyncio
import signal
from pathlib import Path

import structlog
from prometheus_client import start_http_server

from sessionmeter.cache import ProjectCache
from sessionmeter.cli import parse_args
from sessionmeter.config import Config
from sessionmeter.decoder import get_decoder
from sessionmeter.dispatcher import ParseDispatcher, ProcessExecutor
from sessionmeter.lifecycle import SessionLifecycleTracker
from sessionmeter.logging import setup_logging
from sessionmeter.metrics import MetricsUpdater
from sessionmeter.notifier import ChangeNotifier
from sessionmeter.scheduler import AggregationScheduler
from sessionmeter.watcher import ChangeWatcher

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


async def handle_changes(
    paths: "list[str]",
    tracker: "SessionLifecycleTracker",
    scheduler: "AggregationScheduler",
) -> "None":
    """
    feeds one debounced batch of changed paths to the lifecycle tracker,
    then asks the scheduler to refresh. The refreshes start together so
    the in-flight pass absorbs the whole batch.
    """
    for path in paths:
        tracker.on_file_change(path)
    await asyncio.gather(*(scheduler.refresh(path) for path in paths))


async def serve(config: "Config", metrics_updater: "MetricsUpdater") -> "None":
    projects_dir = Path(config.projects_dir).expanduser().resolve()
    stop_event = asyncio.Event()

    notifier = ChangeNotifier(metrics=metrics_updater)
    cache = ProjectCache(projects_dir, enabled=config.use_cache)
    dispatcher = ParseDispatcher(
        ProcessExecutor(timeout_seconds=config.worker_timeout),
        projects_dir,
        metrics_updater,
        max_workers=config.max_workers,
        use_workers=config.use_workers and config.max_workers > 0,
        decoder=config.decoder,
        max_open_files=config.max_open_files,
        log_level=config.log_level,
    )
    scheduler = AggregationScheduler(
        projects_dir,
        cache,
        dispatcher,
        notifier,
        metrics_updater,
        refresh_interval_seconds=config.refresh_interval,
    )

    async def _on_shutdown() -> "None":
        stop_event.set()

    tracker = SessionLifecycleTracker(
        projects_dir,
        notifier,
        idle_timeout_seconds=config.session_idle_timeout,
        grace_period_seconds=config.grace_period,
        sweep_interval_seconds=config.sweep_interval,
        disable_shutdown=config.disable_shutdown,
        on_shutdown=_on_shutdown,
        metrics=metrics_updater,
    )

    async def _on_change(paths: "list[str]") -> "None":
        await handle_changes(paths, tracker, scheduler)

    watcher = ChangeWatcher(projects_dir, _on_change, debounce_ms=config.watch_debounce_ms)

    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, stop every task gracefully
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    tasks = [asyncio.create_task(scheduler.run(), name="scheduler")]
    if config.watch:
        tasks.append(asyncio.create_task(watcher.run(), name="watcher"))
    tracker.start()

    try:
        await stop_event.wait()
    finally:
        logger.info("shutting_down")
        scheduler.stop()
        watcher.stop()
        await tracker.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        notifier.close_all()
        logger.info("shutdown_complete")


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    # the decoder name is resolved again in every worker; fail early here
    try:
        get_decoder(config.decoder)
    except ValueError as e:
        raise SystemExit(str(e)) from e

    metrics_updater = MetricsUpdater()
    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)
    logger.info(
        "config_loaded",
        projects_dir=config.projects_dir,
        max_workers=config.max_workers,
        use_workers=config.use_workers,
        use_cache=config.use_cache,
        watch=config.watch,
    )

    asyncio.run(serve(config, metrics_updater))


if __name__ == "__main__":
    main()
