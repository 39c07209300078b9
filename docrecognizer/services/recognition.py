import logging

from ..errors import DependencyError, InvalidStateTransition, RasterizeError, TaskStatusConflict
from ..storage.blobs import BlobStore
from ..storage.repo import TaskRepository
from ..storage.schema import TaskRecord, TaskStatus
from ..utils import content_types
from .llm import OllamaVisionClient
from .rasterizer import PdfRasterizer

# everything handed to the model is a PNG or a pass-through image
INFERENCE_CONTENT_TYPE = "image/png"


class RecognitionPipeline:
    """Drives one task from pending to a terminal status.

    Called by the queue consumer with a task id. The record is re-read on
    every call; nothing is cached between deliveries.
    """

    def __init__(
        self,
        repo: TaskRepository,
        blobs: BlobStore,
        llm: OllamaVisionClient,
        rasterizer: PdfRasterizer | None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repo = repo
        self.blobs = blobs
        self.llm = llm
        self.rasterizer = rasterizer
        self.log = logger or logging.getLogger(__name__)

    def process_task(self, task_id: str) -> None:
        self.log.info("Starting task %s", task_id)

        # TaskNotFound propagates: the referent does not exist, nothing to retry
        task = self.repo.get_by_id(task_id)

        if task.is_terminal:
            self.log.warning("Task %s already %s, skipping", task_id, task.status.value)
            return

        try:
            task.mark_processing()
        except InvalidStateTransition:
            # already processing: a redelivery after a crash, or a concurrent duplicate
            self.log.warning("Task %s is %s, not claiming it", task_id, task.status.value)
            return
        try:
            self.repo.update(task, expected_status=TaskStatus.PENDING)
        except TaskStatusConflict as exc:
            self.log.warning("Task %s claimed elsewhere (%s), abandoning", task_id, exc)
            return

        try:
            data = self.blobs.download(task.file_key)
        except DependencyError as exc:
            self.mark_failed(task, f"failed to download file: {exc}")
            raise
        self.log.debug("Downloaded %s for task %s (%d bytes, %s)", task.file_key, task_id, len(data), task.content_type)

        try:
            image = self._prepare_image(data, task.content_type)
        except DependencyError as exc:
            self.mark_failed(task, f"failed to prepare image: {exc}")
            raise

        try:
            result = self.llm.recognize(image, INFERENCE_CONTENT_TYPE, task.schema_fields)
        except DependencyError as exc:
            self.mark_failed(task, f"recognition failed: {exc}")
            raise

        task.mark_completed(result)
        self.repo.update(task, expected_status=TaskStatus.PROCESSING)
        self.log.info("Task %s completed", task_id)

    def _prepare_image(self, data: bytes, content_type: str) -> bytes:
        if content_types.is_pdf(content_type):
            if self.rasterizer is None:
                raise RasterizeError("PDF converter not available")
            return self.rasterizer.first_page(data)
        return data

    def mark_failed(self, task: TaskRecord, message: str) -> None:
        """Move ``task`` to failed and persist; persistence errors are logged, not raised.

        A task left in processing here is picked up by the reconciliation sweep.
        """
        self.log.error("Task %s failed: %s", task.id, message)
        try:
            task.mark_failed(message)
            self.repo.update(task, expected_status=TaskStatus.PROCESSING)
        except Exception:
            self.log.exception("Could not persist failure of task %s", task.id)
