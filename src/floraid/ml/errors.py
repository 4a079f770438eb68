"""Failure taxonomy for the classification pipeline.

Every exception raised by the pipeline carries an :class:`ErrorKind` so the
classifier adapter can turn it into a ``ClassificationFailed`` outcome. None
of these failures are retried.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    MODEL_LOAD_FAILED = "model_load_failed"
    BUFFER_ALLOCATION_FAILED = "buffer_allocation_failed"
    INFERENCE_RUNNER_ERROR = "inference_runner_error"
    INFERENCE_TIMEOUT = "inference_timeout"
    BUSY = "busy"


class ClassificationError(Exception):
    """Base class for terminal classification failures."""

    kind: ErrorKind = ErrorKind.INFERENCE_RUNNER_ERROR


class ModelLoadFailed(ClassificationError):
    """The model artifact is unknown, missing, or corrupt."""

    kind = ErrorKind.MODEL_LOAD_FAILED


class BufferAllocationFailed(ClassificationError):
    """The pixel buffer or model input tensor could not be built."""

    kind = ErrorKind.BUFFER_ALLOCATION_FAILED


class InferenceRunnerError(ClassificationError):
    """The inference runtime rejected the request or failed while running it."""

    kind = ErrorKind.INFERENCE_RUNNER_ERROR


class InferenceTimeout(InferenceRunnerError):
    kind = ErrorKind.INFERENCE_TIMEOUT


class InferenceBusy(ClassificationError):
    """No inference slot became free within the queue timeout."""

    kind = ErrorKind.BUSY
