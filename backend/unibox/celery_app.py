from datetime import timedelta

from celery import Celery

from unibox.config import settings

celery_app = Celery(
    "unibox",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["unibox.tasks.gmail_tasks"],
)

celery_app.conf.beat_schedule = {
    "sync-gmail-history": {
        "task": "unibox.tasks.gmail_tasks.sync_gmail_history",
        "schedule": timedelta(minutes=settings.GMAIL_SYNC_MINUTES),
    },
    "renew-gmail-watch": {
        "task": "unibox.tasks.gmail_tasks.renew_gmail_watch",
        "schedule": timedelta(days=6),   # Gmail watches expire at 7 days
    },
}
