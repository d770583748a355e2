"""Exception types raised by the noteloom backend."""

from __future__ import annotations


class NoteloomError(Exception):
    """Base class for backend errors."""


class VectorDimensionError(NoteloomError, ValueError):
    """Two vectors that must share a dimension do not."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimensions don't match: {left} vs {right}")
        self.left = left
        self.right = right


class IndexBuildInProgressError(NoteloomError, RuntimeError):
    def __init__(self):
        super().__init__("Index build already in progress")


class IndexCapacityError(NoteloomError, RuntimeError):
    def __init__(self, max_elements: int):
        super().__init__(f"Vector index is full ({max_elements} elements)")
        self.max_elements = max_elements


class EmbeddingModelError(NoteloomError, RuntimeError):
    """The sentence-transformers model could not be loaded or failed to encode."""


class NotFoundError(NoteloomError, LookupError):
    kind = "Item"

    def __init__(self, item_id):
        super().__init__(f"{self.kind} not found: {item_id}")
        self.item_id = item_id


class NoteNotFoundError(NotFoundError):
    kind = "Note"


class EmbeddingNotFoundError(NotFoundError):
    kind = "Embedding for note"


class JobNotFoundError(NotFoundError):
    kind = "Job"


class WorkflowNotFoundError(NotFoundError):
    kind = "Workflow"
