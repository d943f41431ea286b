import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from kubernetes import client, config, watch

from models import Apply, Delete, Error, Event, Init, InitDone, WatchNotification

logger = logging.getLogger(__name__)

HTTP_GONE = 410

# Pause nach einer leeren Watch-Runde, sonst Endlosschleife gegen den API-Server
EMPTY_ROUND_DELAY = 1.0

# ============================================================
# HELFER
# ============================================================

def init_k8s() -> client.CoreV1Api:
    """Lädt die Kubernetes-Config (in-cluster, sonst kubeconfig).

    Wirft config.ConfigException, wenn beides fehlschlägt.
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local kubeconfig")
    return client.CoreV1Api()


def _is_gone(exc: BaseException) -> bool:
    return isinstance(exc, client.exceptions.ApiException) and exc.status == HTTP_GONE


class WatchGone(Exception):
    """ERROR-Event im Watch-Stream mit Code 410."""


class Backoff:
    """Exponentieller Backoff mit Obergrenze."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0) -> None:
        self.initial = initial
        self.maximum = maximum
        self._current = initial

    def next(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial


# ============================================================
# WATCH CLIENT MIT BACKOFF + RESYNC
# ============================================================

class EventWatchClient:
    """Liefert einen endlosen Strom von WatchNotifications für core/v1 Events.

    Ablauf pro Zyklus: Init, paginierter LIST (nur für die resourceVersion,
    gelistete Items werden nicht geliefert), InitDone, danach Watch-Runden ab
    der resourceVersion des LIST. Erst nach InitDone ist alles live.
    Bei 410 Gone wird sofort neu gelistet, bei anderen Fehlern erst ein
    Error geliefert und mit Backoff gewartet. Der Client beendet sich nie
    von selbst.
    """

    def __init__(
        self,
        api: client.CoreV1Api,
        namespace: str,
        timeout_seconds: int = 30,
        page_size: int = 500,
        backoff: Optional[Backoff] = None,
        watch_factory: Callable[[], Any] = watch.Watch,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self.backoff = backoff or Backoff()
        self._watch_factory = watch_factory
        self._sleep = sleep
        self._thread_count = 0

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Führt einen blockierenden API-Call in einem Daemon-Thread aus.

        Daemon-Threads werden beim Beenden des Interpreters nicht gejoint,
        eine hängende Watch-Runde verzögert den Shutdown also nicht.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _deliver(result: Any, exc: Optional[BaseException]) -> None:
            if future.done():
                return
            if exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(result)

        def _target() -> None:
            try:
                result, exc = fn(*args), None
            except Exception as e:
                result, exc = None, e
            try:
                loop.call_soon_threadsafe(_deliver, result, exc)
            except RuntimeError:
                # Loop schon geschlossen, das Ergebnis wird nicht mehr gebraucht
                logger.debug(f"Dropping watch result for ns={self.namespace}, event loop closed")

        self._thread_count += 1
        threading.Thread(
            target=_target,
            name=f"event-watch-{self._thread_count}",
            daemon=True,
        ).start()
        return await future

    def _list_page(self, continue_token: Optional[str]):
        """Synchrone Hilfsfunktion für eine LIST-Seite."""
        kwargs = {"namespace": self.namespace, "limit": self.page_size}
        if continue_token:
            kwargs["_continue"] = continue_token
        return self.api.list_namespaced_event(**kwargs)

    def _watch_events(self, resource_version: Optional[str]) -> list:
        """Synchrone Hilfsfunktion für eine Watch-Runde."""
        w = self._watch_factory()
        return list(w.stream(
            self.api.list_namespaced_event,
            namespace=self.namespace,
            resource_version=resource_version,
            timeout_seconds=self.timeout_seconds,
        ))

    async def _wait_backoff(self) -> None:
        delay = self.backoff.next()
        logger.info(f"Backing off {delay:.1f}s before resubscribing to ns={self.namespace}")
        await self._sleep(delay)

    async def stream(self) -> AsyncIterator[WatchNotification]:
        while True:
            yield Init()

            # ============================================================
            # 1) Paginierter LIST → nur resourceVersion bestimmen
            # ============================================================
            resource_version: Optional[str] = None
            continue_token: Optional[str] = None
            try:
                while True:
                    page = await self._run(self._list_page, continue_token)
                    # Gelistete Events sind Historie, gezählt wird nur, was live kommt
                    continue_token = page.metadata._continue
                    if not continue_token:
                        resource_version = page.metadata.resource_version
                        break
            except Exception as e:
                if _is_gone(e):
                    # Continue-Token abgelaufen → LIST von vorn
                    logger.info(f"410 Gone during LIST in ns={self.namespace} → relisting")
                    continue
                logger.error(f"LIST failed for ns={self.namespace}: {e}")
                yield Error(cause=e)
                await self._wait_backoff()
                continue

            logger.info(f"Initial LIST for ns={self.namespace}, rv={resource_version}")
            yield InitDone()
            self.backoff.reset()

            # ============================================================
            # 2) Watch-Runden bis zum nächsten Fehler
            # ============================================================
            while True:
                try:
                    events = await self._run(self._watch_events, resource_version)
                    for ev in events:
                        notification, rv = self._translate(ev)
                        if rv:
                            resource_version = rv
                        if notification is not None:
                            yield notification

                except Exception as e:
                    if _is_gone(e) or isinstance(e, WatchGone):
                        # resourceVersion zu alt → neuen LIST-Sync machen
                        logger.info(f"410 Gone in ns={self.namespace} → resetting resourceVersion")
                        break
                    logger.error(f"Watch error in ns={self.namespace}: {e}")
                    yield Error(cause=e)
                    await self._wait_backoff()
                    break

                if not events:
                    logger.debug(f"Empty stream for ns={self.namespace}, reconnecting...")
                    await self._sleep(EMPTY_ROUND_DELAY)

    def _translate(self, ev: dict) -> tuple[Optional[WatchNotification], Optional[str]]:
        """Übersetzt ein Roh-Event aus watch.stream in (Notification, resourceVersion)."""
        event_type = ev.get("type")
        obj = ev.get("object")

        if event_type == "ERROR":
            raw = ev.get("raw_object") or {}
            code = raw.get("code") if isinstance(raw, dict) else None
            if code == HTTP_GONE:
                raise WatchGone(raw.get("message", "resource version expired"))
            raise client.exceptions.ApiException(status=code, reason=str(raw))

        metadata = getattr(obj, "metadata", None)
        rv = getattr(metadata, "resource_version", None)

        if event_type in ("ADDED", "MODIFIED"):
            return Apply(event=Event.from_k8s(obj)), rv
        if event_type == "DELETED":
            return Delete(event=Event.from_k8s(obj)), rv

        # BOOKMARK und Unbekanntes: nur resourceVersion mitnehmen
        return None, rv
