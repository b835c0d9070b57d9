"""Background Gmail fetches that run outside the API process.

Workers write through their own store/pipeline; with ``USE_EVENT_RELAY`` on,
their ``message.new`` events reach the API process's subscribers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import redis as redis_module
from redis.exceptions import LockError

from unibox.celery_app import celery_app
from unibox.config import settings
from unibox.core import Core, build_core
from unibox.errors import StoreUnavailable
from unibox.schemas.messages import Platform
from unibox.services.gmail_connector import GmailAPIError, GmailAuthError, GmailConnector

logger = logging.getLogger(__name__)

_core: Core | None = None


def _get_core() -> Core:
    global _core
    if _core is None:
        _core = build_core(settings)
    return _core


def _build_connector() -> GmailConnector | None:
    try:
        return GmailConnector(
            refresh_token=settings.GMAIL_REFRESH_TOKEN,
            fetch_limit=settings.GMAIL_FETCH_LIMIT,
        )
    except ValueError as exc:
        logger.warning("cannot build Gmail connector: %s", exc)
        return None


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30,
                 name="unibox.tasks.gmail_tasks.sync_gmail_history")
def sync_gmail_history(self, notification_history_id: str | None = None) -> None:
    """Fetch Gmail messages added since the stored cursor and ingest them."""
    _redis = redis_module.from_url(settings.REDIS_URL)
    lock = _redis.lock("unibox:gmail_sync_lock", timeout=300)  # 5-min TTL

    if not lock.acquire(blocking=False):
        logger.info("sync_gmail_history: another sync holds the lock, skipping")
        return

    try:
        core = _get_core()
        if Platform.GMAIL not in core.registry:
            logger.warning("sync_gmail_history: gmail is not an enabled platform")
            return

        connector = _build_connector()
        if connector is None:
            return

        try:
            cursor = core.store.get_sync_cursor(Platform.GMAIL.value)
            batch = connector.fetch_batch(cursor)
        except GmailAuthError as exc:
            logger.error("sync_gmail_history: auth error: %s", exc)
            return
        except (GmailAPIError, StoreUnavailable) as exc:
            logger.error("sync_gmail_history: fetch failed: %s", exc)
            raise self.retry(exc=exc)

        try:
            result = core.pipeline.ingest(Platform.GMAIL.value, batch.payloads)
            if batch.cursor:
                core.store.set_sync_cursor(Platform.GMAIL.value, batch.cursor)
        except StoreUnavailable as exc:
            logger.error("sync_gmail_history: store unavailable: %s", exc)
            raise self.retry(exc=exc)

        logger.info(
            "sync_gmail_history: notification=%s fetched=%d stored=%d new=%d warnings=%d",
            notification_history_id, len(batch.payloads), result.stored, result.new, len(result.warnings),
        )
    finally:
        try:
            lock.release()
        except LockError as exc:
            logger.debug("could not release gmail sync lock: %s", exc)


@celery_app.task(name="unibox.tasks.gmail_tasks.renew_gmail_watch")
def renew_gmail_watch() -> None:
    """Renew the Gmail push watch so Pub/Sub keeps notifying the webhook."""
    if not settings.PUBSUB_TOPIC:
        logger.info("renew_gmail_watch: no PUBSUB_TOPIC configured, skipping")
        return

    connector = _build_connector()
    if connector is None:
        return

    try:
        reg = connector.register_watch(topic_name=settings.PUBSUB_TOPIC)
    except (GmailAuthError, GmailAPIError) as exc:
        logger.warning("renew_gmail_watch: failed: %s", exc)
        return

    store = _get_core().store
    # Only seed the cursor; moving an existing one forward would skip unsynced mail
    if store.get_sync_cursor(Platform.GMAIL.value) is None:
        store.set_sync_cursor(Platform.GMAIL.value, {"history_id": reg.history_id})

    expiry = datetime.fromtimestamp(reg.expiration_ms / 1000, tz=timezone.utc)
    logger.info("renewed Gmail watch, historyId=%s expires=%s", reg.history_id, expiry.isoformat())
