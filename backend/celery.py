import os
from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "backend.settings")

app = Celery("Dokterku")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

app.conf.beat_schedule = {
    "requeue-unsettled-patient-counts": {
        "task": "jaspel.tasks.requeue_unsettled_patient_counts",
        "schedule": crontab(hour=1, minute=0),
    },
}
