"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from datetime import timedelta

from core.config import settings

# Schedule configuration
beat_schedule = {
    # Fold queued session outcomes into the learning snapshot.
    # The task itself is a no-op until the fold interval has elapsed.
    'fold-learning-outcomes': {
        'task': 'tasks.fold_learning_outcomes',
        'schedule': timedelta(seconds=settings.LEARNING_FOLD_INTERVAL_S),
    },
}
