"""Custom exceptions for minicluster."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class CommandError(ManagerError):
    """A local or remote command exited unsuccessfully."""

    def __init__(self, message: str, return_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


class RetriableError(ManagerError):
    """Marks a transient failure that a retry loop may attempt again."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Temporary error: {cause}")
        self.cause = cause


class MissingNodePortError(ManagerError):
    """The service exists but exposes no node port."""

    def __init__(self, service: Dict[str, Any]) -> None:
        self.service = service
        meta = service.get("metadata", {})
        spec = service.get("spec", {})
        super().__init__(
            f"Service {meta.get('namespace', '')}/{meta.get('name', '')} does not have a node port. "
            "To have one assigned automatically, the service type must be NodePort or LoadBalancer, "
            f"but this service is of type {spec.get('type', 'ClusterIP')}."
        )


class MultiError(ManagerError):
    """Collects several independent failures and reports them together."""

    def __init__(self) -> None:
        super().__init__("")
        self.errors: List[BaseException] = []

    def collect(self, exc: Optional[BaseException]) -> None:
        if exc is not None:
            self.errors.append(exc)

    def raise_if_errors(self) -> None:
        if not self.errors:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        raise self

    def __str__(self) -> str:
        return "\n".join(str(err) for err in self.errors)
