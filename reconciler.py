import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

from classifier import Action, classify, extract_labels
from metrics import (
    POD_CREATE_COUNTER,
    POD_DELETE_COUNTER,
    WATCH_ERRORS,
    WATCH_RESTARTS,
    WATCH_RESYNCS,
    MetricsRegistry,
)
from models import Apply, Delete, Error, Init, InitDone, WatchNotification

logger = logging.getLogger(__name__)

RESTART_DELAY = 2.0

_INFO_MESSAGES = {
    "image-pulled": "image for Pod {} pulled",
    "scheduled": "Pod {} scheduled",
    "started": "Pod {} allocated and started",
    "updated": "Pod {} updated",
}


class NotificationSource(Protocol):
    def stream(self) -> AsyncIterator[WatchNotification]: ...


class EventReconciler:
    """Einziger Konsument des Watch-Streams.

    Verarbeitet Notifications strikt in Lieferreihenfolge und zählt jede
    qualifizierende Notification genau einmal. Eine erneut gelieferte
    Notification (z.B. nach einem Resync) wird erneut gezählt; es gibt
    bewusst keine Deduplizierung.
    """

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry
        self._inits = 0

    def handle(self, notification: WatchNotification) -> None:
        if isinstance(notification, Init):
            self._inits += 1
            if self._inits > 1:
                self.registry.increment(WATCH_RESYNCS)
            logger.info("Starting the watch stream...")
            return

        if isinstance(notification, InitDone):
            logger.info("Watch stream up and running!")
            return

        if isinstance(notification, Error):
            self.registry.increment(WATCH_ERRORS)
            logger.error(f"Error on receiving update: {notification.cause!r}")
            return

        if not isinstance(notification, (Apply, Delete)):
            return

        classified = classify(notification)
        ev = notification.event

        if classified.action is Action.CREATED:
            labels = extract_labels(ev)
            self.registry.increment(POD_CREATE_COUNTER, labels.as_metric_labels())
            logger.info(f"Pod {ev.name} created")
        elif classified.action is Action.DELETED:
            labels = extract_labels(ev)
            self.registry.increment(POD_DELETE_COUNTER, labels.as_metric_labels())
            logger.info(f"Killing Pod {ev.name}")
        elif classified.action is Action.INFORMATIONAL:
            template = _INFO_MESSAGES.get(classified.detail or "", "Pod {} event")
            logger.info(template.format(ev.name))

    async def run(
        self,
        notifications: AsyncIterator[WatchNotification],
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Konsumiert Notifications bis der Stream endet oder Shutdown gesetzt ist."""
        async for notification in notifications:
            if shutdown_event is not None and shutdown_event.is_set():
                break
            self.handle(notification)


# ============================================================
# HAUPTSCHLEIFE
# ============================================================

async def watch_events_loop(
    source: NotificationSource,
    reconciler: EventReconciler,
    shutdown_event: asyncio.Event,
    restart_delay: float = RESTART_DELAY,
) -> None:
    """Startet den Reconciler und startet ihn neu, falls der Stream unerwartet endet."""
    logger.info("watch_events_loop starting...")

    while not shutdown_event.is_set():
        stream = source.stream()
        try:
            await reconciler.run(stream, shutdown_event)
        except asyncio.CancelledError:
            logger.info("watch_events_loop cancelled")
            raise
        except Exception as e:
            logger.error(f"Reconciler ended with exception: {e}", exc_info=True)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not shutdown_event.is_set():
            reconciler.registry.increment(WATCH_RESTARTS)
            logger.warning("Watch stream ended unexpectedly, restarting...")
            await asyncio.sleep(restart_delay)

    logger.info("watch_events_loop exiting")
