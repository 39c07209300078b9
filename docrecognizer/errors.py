class DocRecognizerError(Exception):
    """Base for every error raised by docrecognizer.

    ``retryable`` tells the queue consumer whether redelivering the same
    task id can possibly succeed.
    """

    retryable = True


# validation: rejected before a task record exists

class TaskValidationError(DocRecognizerError):
    retryable = False


class EmptySchemaError(TaskValidationError):
    def __init__(self, message: str = "schema cannot be empty"):
        super().__init__(message)


class EmptyFileKeyError(TaskValidationError):
    def __init__(self, message: str = "file key cannot be empty"):
        super().__init__(message)


class UnsupportedContentType(TaskValidationError):
    def __init__(self, content_type: str):
        super().__init__(f"unsupported file type: {content_type or '<empty>'}")
        self.content_type = content_type


# state machine and repository

class InvalidStateTransition(DocRecognizerError):
    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"task {task_id}: cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class TaskNotFound(DocRecognizerError):
    retryable = False

    def __init__(self, task_id: str):
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class TaskStatusConflict(DocRecognizerError):
    """The stored status no longer matches what the writer expected."""

    retryable = False

    def __init__(self, task_id: str, expected: str, actual: str):
        super().__init__(f"task {task_id}: expected status {expected}, found {actual}")
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


# external dependencies

class DependencyError(DocRecognizerError):
    pass


class StorageError(DependencyError):
    pass


class BlobNotFound(StorageError):
    def __init__(self, key: str):
        super().__init__(f"object not found: {key}")
        self.key = key


class RasterizeError(DependencyError):
    pass


class NoPagesError(RasterizeError):
    def __init__(self, message: str = "PDF has no pages"):
        super().__init__(message)


class RenderError(RasterizeError):
    pass


class InferenceError(DependencyError):
    pass


class EnqueueError(DependencyError):
    pass
