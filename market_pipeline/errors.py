"""Classified pipeline errors.

Every failure that leaves the transport, the retry policy or the chart
pipeline is one of these kinds. The message attached to each kind is fixed
and safe to show in the browser; request details only go to the log.
"""
from __future__ import annotations

from typing import Any, Dict


# One fixed message per kind, safe to render in the browser.
ERROR_MESSAGES: Dict[str, str] = {
    'rate_limited': 'Too many requests. Waiting before trying again...',
    'network_unavailable': 'Connection error. Check your internet connection.',
    'client_rejected': 'The request could not be completed.',
    'server_failure': 'Service temporarily unavailable. Try again in a few moments.',
    'invalid_data': 'Invalid chart data received.',
    'configuration_error': 'Unsupported selection.',
    'generic': 'An unexpected error occurred. Please try again.',
}


class PipelineError(Exception):
    kind = 'generic'
    status = 500
    retryable = True

    def __init__(self, detail: str | None = None, status: int | None = None):
        self.detail = detail
        if status is not None:
            self.status = status
        super().__init__(detail or self.kind)

    @property
    def message(self) -> str:
        return ERROR_MESSAGES.get(self.kind, ERROR_MESSAGES['generic'])

    def to_payload(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'status': self.status, 'message': self.message}


class RateLimited(PipelineError):
    kind = 'rate_limited'
    status = 429


class NetworkUnavailable(PipelineError):
    kind = 'network_unavailable'
    status = 0


class ClientRejected(PipelineError):
    kind = 'client_rejected'
    status = 400
    retryable = False


class ServerFailure(PipelineError):
    kind = 'server_failure'
    status = 500


class InvalidData(PipelineError):
    kind = 'invalid_data'
    status = 422
    retryable = False


class ConfigurationError(PipelineError):
    kind = 'configuration_error'
    status = 400
    retryable = False


def classify_status(status: int, detail: str | None = None) -> PipelineError:
    """Map a non-2xx HTTP status to its error kind."""
    if status == 429:
        return RateLimited(detail)
    if 400 <= status < 500:
        return ClientRejected(detail, status=status)
    return ServerFailure(detail, status=status if status >= 500 else 500)


def as_pipeline_error(exc: BaseException) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc
    return ServerFailure(f'{type(exc).__name__}: {exc}')


__all__ = [
    'ERROR_MESSAGES', 'PipelineError', 'RateLimited', 'NetworkUnavailable', 'ClientRejected',
    'ServerFailure', 'InvalidData', 'ConfigurationError',
    'classify_status', 'as_pipeline_error',
]
