from unittest.mock import MagicMock, patch

import orjson
import pytest
import redis
from kombu.exceptions import OperationalError

from docrecognizer.errors import (
    EnqueueError,
    InferenceError,
    StorageError,
    TaskNotFound,
)
from docrecognizer.services.dispatch import (
    PROCESS_TASK_NAME,
    DeadLetterQueue,
    DeliveryOutcome,
    TaskConsumer,
    TaskProducer,
)


@pytest.fixture
def pipeline():
    return MagicMock()


@pytest.fixture
def dead_letters():
    return MagicMock()


def test_enqueue_publishes_on_recognition_lane():
    celery = MagicMock()
    celery.send_task.return_value.id = "msg-1"

    msg_id = TaskProducer(celery, queue="recognition").enqueue("t-1")

    assert msg_id == "msg-1"
    celery.send_task.assert_called_once_with(PROCESS_TASK_NAME, args=["t-1"], queue="recognition")


@pytest.mark.parametrize("exc", [OperationalError("broker down"), redis.ConnectionError("refused")])
def test_enqueue_broker_failure_is_enqueue_error(exc):
    celery = MagicMock()
    celery.send_task.side_effect = exc

    with pytest.raises(EnqueueError, match="t-1"):
        TaskProducer(celery).enqueue("t-1")


def test_successful_delivery(pipeline, dead_letters, new_id):
    task_id = new_id()
    outcome = TaskConsumer(pipeline, 3, dead_letters).handle(task_id)

    assert outcome is DeliveryOutcome.SUCCESS
    pipeline.process_task.assert_called_once_with(task_id)
    dead_letters.push.assert_not_called()


@pytest.mark.parametrize("attempt", [0, 1, 2])
def test_retryable_failure_is_redelivered_below_ceiling(pipeline, dead_letters, new_id, attempt):
    pipeline.process_task.side_effect = InferenceError("timeout")

    outcome = TaskConsumer(pipeline, 3, dead_letters).handle(new_id(), attempt=attempt)

    assert outcome is DeliveryOutcome.RETRY
    dead_letters.push.assert_not_called()


def test_retry_ceiling_reached_dead_letters(pipeline, dead_letters, new_id):
    task_id = new_id()
    pipeline.process_task.side_effect = StorageError("bucket unreachable")

    outcome = TaskConsumer(pipeline, 3, dead_letters).handle(task_id, attempt=3)

    assert outcome is DeliveryOutcome.DROP
    dead_letters.push.assert_called_once_with(task_id, "bucket unreachable", 4)


def test_zero_retries_drops_on_first_failure(pipeline, dead_letters, new_id):
    pipeline.process_task.side_effect = InferenceError("timeout")

    assert TaskConsumer(pipeline, 0, dead_letters).handle(new_id()) is DeliveryOutcome.DROP
    dead_letters.push.assert_called_once()


def test_non_retryable_failure_is_dropped_at_once(pipeline, dead_letters, new_id):
    task_id = new_id()
    pipeline.process_task.side_effect = TaskNotFound(task_id)

    outcome = TaskConsumer(pipeline, 3, dead_letters).handle(task_id)

    assert outcome is DeliveryOutcome.DROP
    assert dead_letters.push.call_args.args[0] == task_id


def test_unexpected_exception_is_retried(pipeline, new_id):
    pipeline.process_task.side_effect = ConnectionError("redis reset")
    assert TaskConsumer(pipeline, 3).handle(new_id()) is DeliveryOutcome.RETRY


def test_malformed_task_id_is_dropped_without_processing(pipeline, dead_letters):
    outcome = TaskConsumer(pipeline, 3, dead_letters).handle("not-a-uuid")

    assert outcome is DeliveryOutcome.DROP
    pipeline.process_task.assert_not_called()
    dead_letters.push.assert_called_once_with("not-a-uuid", "invalid task id", 0)


def test_dead_letter_write_failure_does_not_escape(pipeline, dead_letters, new_id):
    pipeline.process_task.side_effect = TaskNotFound("x")
    dead_letters.push.side_effect = redis.ConnectionError("down")

    assert TaskConsumer(pipeline, 3, dead_letters).handle(new_id()) is DeliveryOutcome.DROP


def test_dead_letter_queue_push_and_recent():
    client = MagicMock()
    pipe = client.pipeline.return_value.__enter__.return_value
    dlq = DeadLetterQueue(client, key="dead", max_items=10)

    dlq.push("t-1", "boom", 4)

    raw = pipe.lpush.call_args.args[1]
    entry = orjson.loads(raw)
    assert pipe.lpush.call_args.args[0] == "dead"
    assert entry["task_id"] == "t-1" and entry["error"] == "boom" and entry["attempts"] == 4
    assert "failed_at" in entry
    pipe.ltrim.assert_called_once_with("dead", 0, 9)
    pipe.execute.assert_called_once()

    client.lrange.return_value = [raw]
    assert dlq.recent(5) == [entry]
    client.lrange.assert_called_once_with("dead", 0, 4)


def test_worker_task_returns_outcome():
    from worker.celery_app import process_task

    consumer = MagicMock()
    consumer.handle.return_value = DeliveryOutcome.SUCCESS
    with patch("worker.celery_app.get_consumer", return_value=consumer):
        assert process_task.run("t-1") == "success"
    consumer.handle.assert_called_once_with("t-1", attempt=0)


def test_worker_task_schedules_retry():
    from worker import celery_app as worker

    consumer = MagicMock()
    consumer.handle.return_value = DeliveryOutcome.RETRY
    with patch.object(worker, "get_consumer", return_value=consumer), \
            patch.object(worker.process_task, "retry", return_value=RuntimeError("retry scheduled")) as retry:
        with pytest.raises(RuntimeError, match="retry scheduled"):
            worker.process_task.run("t-1")
    retry.assert_called_once_with(countdown=worker.settings.retry_countdown_seconds)
