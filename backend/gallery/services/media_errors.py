from __future__ import annotations


class MediaPipelineError(Exception):
    """Base class for errors raised by the derivative pipeline."""

    code = "media_error"


class InvalidArgument(MediaPipelineError):
    code = "invalid_argument"


class AlreadyInProgress(MediaPipelineError):
    code = "already_in_progress"


class AssetNotFound(MediaPipelineError):
    code = "asset_not_found"


class ObjectNotFound(MediaPipelineError):
    code = "object_not_found"

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class TransformError(MediaPipelineError):
    """The image could not be decoded or encoded. Never retried."""

    code = "transform_failed"


class DependencyUnavailable(MediaPipelineError):
    """A dependent service kept failing with transient errors until retries ran out."""

    code = "dependency_unavailable"

    def __init__(self, dependency: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{dependency} unavailable after {attempts} attempts: {last_error}")
        self.dependency = dependency
        self.attempts = attempts
        self.last_error = last_error
