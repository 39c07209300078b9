import logging
from datetime import timedelta

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_init
from kombu import Exchange, Queue

from docrecognizer.config import load_settings
from docrecognizer.container import Container, build_container
from docrecognizer.errors import InferenceError
from docrecognizer.logging_setup import setup_logging
from docrecognizer.services.dispatch import (
    PROCESS_TASK_NAME,
    RECONCILE_TASK_NAME,
    DeliveryOutcome,
    TaskConsumer,
)

log = logging.getLogger("docrecognizer.worker")

settings = load_settings()

celery_app = Celery("docrecognizer", broker=settings.broker_url)

exchange = Exchange("docrecognizer", type="direct", durable=True)

celery_app.conf.update(
    # recognition is drained before default: queues are polled in the order listed
    task_queues=(
        Queue(settings.recognition_queue, exchange=exchange, routing_key=settings.recognition_queue, durable=True),
        Queue(settings.default_queue, exchange=exchange, routing_key=settings.default_queue, durable=True),
    ),
    task_default_queue=settings.default_queue,
    task_default_exchange="docrecognizer",
    task_routes={
        PROCESS_TASK_NAME: {"queue": settings.recognition_queue},
        RECONCILE_TASK_NAME: {"queue": settings.default_queue},
    },
    broker_transport_options={"queue_order_strategy": "priority"},
    # at-least-once: ack after the handler returns, requeue if the worker dies
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    task_soft_time_limit=settings.task_soft_time_limit,
    task_time_limit=settings.task_soft_time_limit + 60,
    task_ignore_result=True,
    beat_schedule={
        "reconcile-stale-tasks": {
            "task": RECONCILE_TASK_NAME,
            "schedule": timedelta(seconds=settings.reconcile_interval_seconds),
            "options": {"queue": settings.default_queue},
        },
    },
    enable_utc=True,
    timezone="UTC",
)

_container: Container | None = None
_consumer: TaskConsumer | None = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = build_container(settings, celery_app)
    return _container


def get_consumer() -> TaskConsumer:
    global _consumer
    if _consumer is None:
        _consumer = get_container().consumer()
    return _consumer


@celery_setup_logging.connect
def _configure_logging(**kwargs):
    setup_logging(settings.log_level, settings.log_format)


@worker_init.connect
def _check_ollama(**kwargs):
    llm = get_container().pipeline().llm
    log.info("Worker starting, ollama=%s model=%s concurrency=%d", llm.base_url, llm.model, settings.worker_concurrency)
    try:
        llm.check_health()
        llm.check_model()
    except InferenceError as exc:
        log.warning("Ollama not ready: %s", exc)


@celery_app.task(bind=True, name=PROCESS_TASK_NAME, max_retries=settings.max_retries)
def process_task(self, task_id: str) -> str:
    outcome = get_consumer().handle(task_id, attempt=self.request.retries or 0)
    if outcome is DeliveryOutcome.RETRY:
        raise self.retry(countdown=settings.retry_countdown_seconds)
    return outcome.value


@celery_app.task(name=RECONCILE_TASK_NAME)
def reconcile_stale_tasks() -> dict:
    report = get_container().sweeper().sweep()
    return {"requeued": report.requeued, "failed": report.failed}
