import asyncio
import logging
import socket
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from kubernetes import client
from kubernetes import config as k8s_config

from config import Settings, load_settings
from k8s_watcher import Backoff, EventWatchClient, init_k8s
from metrics import MetricsRegistry, declare_pod_counters
from reconciler import EventReconciler, NotificationSource, watch_events_loop
from routes import http_metrics_middleware, router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StartupError(Exception):
    """Fataler Fehler beim Start: Listener oder Kubernetes-Client."""

    def __init__(self, component: str, cause: BaseException) -> None:
        super().__init__(f"{component}: {cause}")
        self.component = component
        self.cause = cause


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# ============================================================
# TASKGROUP RUNNER
# ============================================================

async def run_taskgroup(
    source: NotificationSource,
    reconciler: EventReconciler,
    shutdown_event: asyncio.Event,
) -> None:
    """Startet den Reconciler in einer TaskGroup und bricht ihn beim Shutdown ab."""
    logger.info("Starting TaskGroup...")

    async with asyncio.TaskGroup() as tg:
        watch_task = tg.create_task(
            watch_events_loop(source, reconciler, shutdown_event),
            name="watch_events_loop",
        )
        logger.info("watcher_task started")

        logger.debug("Waiting for shutdown_event...")
        await shutdown_event.wait()

        logger.info("shutdown_event triggered → cancelling watcher")
        watch_task.cancel()

    logger.info("TaskGroup exited cleanly")


# ============================================================
# FASTAPI APP + LIFESPAN
# ============================================================

def create_app(
    registry: MetricsRegistry,
    source: Optional[NotificationSource] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Baut die HTTP-App; mit source läuft der Reconciler im Hintergrund mit."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Startup initiated")

        shutdown_event = asyncio.Event()
        app.state.shutdown_event = shutdown_event

        taskgroup_task: Optional[asyncio.Task] = None
        if source is not None:
            reconciler = EventReconciler(registry)
            taskgroup_task = asyncio.create_task(
                run_taskgroup(source, reconciler, shutdown_event), name="taskgroup"
            )
            logger.info("TaskGroup started in background")

        logger.info("Startup complete")
        yield  # /ping und /metrics sind ab hier erreichbar

        # ============================================================
        # SHUTDOWN
        # ============================================================

        logger.info("Shutdown initiated")

        shutdown_event.set()

        # TaskGroup nur awaiten, wenn sie noch läuft
        if taskgroup_task and not taskgroup_task.done():
            logger.info("Waiting for TaskGroup to finish...")
            try:
                await asyncio.wait_for(taskgroup_task, timeout=settings.shutdown_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("TaskGroup timeout, forcing shutdown")
                taskgroup_task.cancel()
            except Exception as e:
                logger.error(f"TaskGroup failed: {e}", exc_info=True)
        else:
            logger.debug("TaskGroup already finished")

        logger.info("Shutdown complete")

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.registry = registry
    app.middleware("http")(http_metrics_middleware)
    app.include_router(router)
    return app


# ============================================================
# STARTUP
# ============================================================

def bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def startup(settings: Settings) -> tuple[socket.socket, client.CoreV1Api]:
    """Bindet den Listener und lädt die Kubernetes-Config.

    Schlägt eins von beiden fehl, bleibt kein Socket offen.
    """
    try:
        sock = bind_socket(settings.metrics_host, settings.metrics_port)
    except OSError as e:
        raise StartupError("listener", e) from e

    try:
        api = init_k8s()
    except (k8s_config.ConfigException, OSError) as e:
        sock.close()
        raise StartupError("kubernetes", e) from e

    return sock, api


def main() -> None:
    try:
        settings = load_settings()
    except ValueError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)

    try:
        sock, api = startup(settings)
    except StartupError as e:
        logger.error(f"Fatal startup error ({e.component}): {e.cause!r}")
        sys.exit(1)

    registry = MetricsRegistry()
    declare_pod_counters(registry)

    watcher = EventWatchClient(
        api,
        settings.namespace,
        timeout_seconds=settings.watch_timeout_seconds,
        page_size=settings.list_page_size,
        backoff=Backoff(settings.backoff_initial_seconds, settings.backoff_max_seconds),
    )
    app = create_app(registry, watcher, settings)

    server = uvicorn.Server(uvicorn.Config(
        app,
        log_config=None,  # Logging kommt aus setup_logging
        access_log=False,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    ))

    logger.info(
        f"Serving metrics on {settings.metrics_host}:{settings.metrics_port}, "
        f"watching events in ns={settings.namespace}"
    )
    try:
        asyncio.run(server.serve(sockets=[sock]))
    except KeyboardInterrupt:
        logger.info("Kill signal received, stopping...")
    finally:
        sock.close()


if __name__ == "__main__":
    main()
