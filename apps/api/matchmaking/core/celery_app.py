from celery import Celery

from matchmaking.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "matchmaking",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["matchmaking.matching.tasks"],
)
