from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "expire-stale-captchas": {
        "task": "formpilot.workers.tasks.expire_stale_challenges",
        "schedule": crontab(minute="*"),
    },
    "artifact-retention": {
        "task": "formpilot.workers.tasks.cleanup_old_artifacts",
        "schedule": crontab(minute=30, hour=3),
    },
}
