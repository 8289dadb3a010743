"""
Error taxonomy for the processing pipeline.

The app-level handler in main.py turns `PipelineError.http_status` into
the response code. `retryable` marks errors a caller may simply retry.
"""
from __future__ import annotations


class PipelineError(Exception):
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(PipelineError):
    http_status = 404


class InvalidRequest(PipelineError):
    http_status = 400


class InvalidState(PipelineError):
    http_status = 409


class IllegalTransition(PipelineError):
    http_status = 409

    def __init__(self, entity: str, current: str | None, target: str):
        super().__init__(f"{entity}: illegal transition {current!r} -> {target!r}")
        self.entity = entity
        self.current = current
        self.target = target


class QuotaExceeded(PipelineError):
    http_status = 403

    def __init__(self, user_id: str, usage: int | None = None, limit: int | None = None):
        super().__init__("Monthly processing limit reached. Upgrade your plan to process more content.")
        self.user_id = user_id
        self.usage = usage
        self.limit = limit


class StorageUnavailable(PipelineError):
    http_status = 503
    retryable = True


class TranscriptionFailed(PipelineError):
    pass


class RenderFailed(PipelineError):
    pass


class PublishFailed(PipelineError):
    pass


class TokenRefreshFailed(PublishFailed):
    pass
