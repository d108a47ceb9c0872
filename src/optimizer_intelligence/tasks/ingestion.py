from __future__ import annotations
from celery import shared_task
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from optimizer_intelligence.errors import StorageUnavailableError, ValidationFailedError
from optimizer_intelligence.services import build_services

storage_retry = retry(
    retry=retry_if_exception_type(StorageUnavailableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    reraise=True,
)


@shared_task
def ingest_telemetry(payload: dict):
    """Persist one telemetry record; duplicates come back as ``{"status": "duplicate"}``."""
    services = build_services()
    return storage_retry(services.ingestor.ingest)(payload)


@shared_task
def ingest_telemetry_batch(payloads: list[dict]):
    services = build_services()
    ingest = storage_retry(services.ingestor.ingest)
    accepted = duplicates = 0
    rejected: list[dict] = []
    for i, payload in enumerate(payloads):
        try:
            res = ingest(payload)
        except ValidationFailedError as exc:
            rejected.append({"index": i, "error": exc.code, "reason": exc.message})
            continue
        if res["status"] == "duplicate":
            duplicates += 1
        else:
            accepted += 1
    return {"status": "ok", "accepted": accepted, "duplicates": duplicates, "rejected": rejected}
