from __future__ import annotations


class StoreError(RuntimeError):
    """Raised when a Kubernetes API call fails.

    Carries the identity of the resource involved so failures logged by the
    controller can be traced back to a specific object.
    """

    def __init__(
        self,
        kind: str,
        namespace: str,
        name: str | None = None,
        status: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.status = status
        self.reason = reason
        target = f"{namespace}/{name}" if name else namespace
        super().__init__(f"{kind} {target}: status={status} reason={reason}")


class NotFoundError(StoreError):
    """The requested object does not exist (HTTP 404)."""


class ConflictError(StoreError):
    """Optimistic-concurrency collision or already-exists race (HTTP 409).

    Retrying the whole reconciliation pass later is expected to succeed.
    """


class InvalidDesiredStateError(ValueError):
    """Raised when a ConfigMapManager object cannot be parsed."""
