import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "stakeview.settings")

app = Celery("stakeview")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
