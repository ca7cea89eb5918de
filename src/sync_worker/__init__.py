"""Celery worker running scheduled tenant syncs."""
