from __future__ import annotations

import re
from typing import Iterable

_ABS_PATH_RE = re.compile(r"(?<![\w.~-])(?:[A-Za-z]:\\|/)(?:[^\s:'\"]+[/\\])+[^\s:'\"]*")
_CRED_URL_RE = re.compile(r"([a-z][a-z0-9+.-]*://)[^/\s:@]+(?::[^/\s@]*)?@", re.IGNORECASE)


class VectorError(Exception):
    """Base class for every failure the pipeline knows how to classify.

    `retryable` decides whether a job attempt that raised this error may be
    requeued; deterministic failures (bad input, unsafe content, overflow)
    are never retried.
    """

    code = "VECTOR_ERROR"
    retryable = False

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        self.message = str(message or "")
        if code:
            self.code = code
        super().__init__(f"{self.code}: {self.message}" if self.message else self.code)


class ValidationError(VectorError):
    code = "INVALID_SPEC"

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = [str(e) for e in errors]
        super().__init__("; ".join(self.errors))


class UnsafeContentError(VectorError):
    code = "UNSAFE_SVG"


class MalformedSvgError(VectorError):
    code = "MALFORMED_SVG"


class LayoutError(VectorError):
    code = "LAYOUT_INVALID"


class LayoutOverflowError(LayoutError):
    code = "LAYOUT_OVERFLOW"


class RenderingUnavailableError(VectorError):
    code = "RENDERER_UNAVAILABLE"


class RenderIOError(VectorError):
    code = "RENDER_IO"
    retryable = True


class StorageError(VectorError):
    code = "STORAGE"
    retryable = True


class ArtifactNotFoundError(StorageError):
    code = "ARTIFACT_NOT_FOUND"
    retryable = False


class QueueUnavailableError(VectorError):
    code = "QUEUE_UNAVAILABLE"
    retryable = True


class StaleLockError(VectorError):
    code = "STALE_LOCK"
    retryable = True


class InvalidWatermarkError(VectorError):
    code = "INVALID_WATERMARK"


class JobCancelledError(VectorError):
    code = "JOB_CANCELLED"


def redact(text: str) -> str:
    text = _CRED_URL_RE.sub(r"\1***@", str(text or ""))
    return _ABS_PATH_RE.sub("<path>", text)


def public_message(exc: BaseException) -> str:
    if isinstance(exc, VectorError):
        return redact(str(exc))
    return "INTERNAL_ERROR: rendering failed"
