from optimizer_intelligence.infrastructure.celery_app import celery_app  # noqa: F401 - binds shared tasks to the app
