from __future__ import annotations

from kubernetes.client import ApiException


class SkipReconcile(Exception):
    """Raised when an object is not ours to reconcile.

    Workers treat it as a successful pass: the key is forgotten and the reason
    is logged at debug level only.
    """


class ReconcileError(Exception):
    """Base class for reconcile failures that should be retried with backoff."""


class ValidationError(ReconcileError):
    """The object is malformed for the platform (missing keys, bad revision, ...)."""


class PlanNotFoundError(ValidationError):
    """No plan could be resolved for an object, not even a cluster default."""


class TerminalError(ReconcileError):
    """A failure that will not heal by retrying; reported once, never requeued."""


class UnknownKindError(KeyError):
    """A resource kind that is not part of the closed kind table."""


class CacheSyncTimeout(RuntimeError):
    """Informers did not finish their initial list within the allowed time."""


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_already_exists(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_conflict(exc: BaseException) -> bool:
    """409 on update means a stale ``resourceVersion``; callers retry via the queue."""
    return isinstance(exc, ApiException) and exc.status == 409


def write_failed(key: object, operation: str, exc: ApiException) -> ReconcileError:
    """Wrap a failed cluster write with the object key and the operation that failed."""
    return ReconcileError(f"{key}: failed {operation} (status={exc.status}, reason={exc.reason})")
