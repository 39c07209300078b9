import logging
from dataclasses import dataclass
from datetime import timedelta

import redis

from .config import Settings
from .services.dispatch import DeadLetterQueue, TaskConsumer, TaskProducer
from .services.llm import OllamaVisionClient
from .services.rasterizer import PdfRasterizer
from .services.reconcile import StaleTaskSweeper
from .services.recognition import RecognitionPipeline
from .services.tasks import TaskService
from .storage.blobs import BlobStore, make_blob_store
from .storage.repo import TaskRepository


@dataclass
class Container:
    """Everything a process needs, built once from Settings at start-up."""

    settings: Settings
    redis: redis.Redis
    repo: TaskRepository
    blobs: BlobStore
    producer: TaskProducer
    dead_letters: DeadLetterQueue

    def task_service(self) -> TaskService:
        return TaskService(self.repo, self.blobs, self.producer, logging.getLogger("docrecognizer.tasks"))

    def pipeline(self) -> RecognitionPipeline:
        s = self.settings
        return RecognitionPipeline(
            self.repo,
            self.blobs,
            OllamaVisionClient.from_settings(s, logging.getLogger("docrecognizer.llm")),
            PdfRasterizer(dpi=s.pdf_dpi),
            logging.getLogger("docrecognizer.recognition"),
        )

    def consumer(self) -> TaskConsumer:
        return TaskConsumer(
            self.pipeline(),
            max_retries=self.settings.max_retries,
            dead_letters=self.dead_letters,
            logger=logging.getLogger("docrecognizer.consumer"),
        )

    def sweeper(self) -> StaleTaskSweeper:
        return StaleTaskSweeper(
            self.repo,
            self.producer,
            pending_after=timedelta(seconds=self.settings.stale_pending_seconds),
            processing_after=timedelta(seconds=self.settings.stale_processing_seconds),
            logger=logging.getLogger("docrecognizer.reconcile"),
        )


def build_container(settings: Settings, celery_app) -> Container:
    client = redis.from_url(settings.redis_url, decode_responses=True)
    return Container(
        settings=settings,
        redis=client,
        repo=TaskRepository(client, logging.getLogger("docrecognizer.repo")),
        blobs=make_blob_store(settings, logging.getLogger("docrecognizer.blobs")),
        producer=TaskProducer(celery_app, settings.recognition_queue, logging.getLogger("docrecognizer.producer")),
        dead_letters=DeadLetterQueue(client, settings.dead_letter_key),
    )
