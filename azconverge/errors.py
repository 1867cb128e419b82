"""Exception taxonomy for azconverge.

ConfigurationError and its subclasses are raised before any provider call and
abort the whole plan.  Provider and credential errors are caught per resource
by the convergence engine: they fail that resource and block its dependents
while independent branches keep going.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from azconverge.models.report import ApplyReport


class AzConvergeError(Exception):
    """Base class for every error raised by azconverge."""


# ---------------------------------------------------------------------------
# Configuration (pre-execution, fatal)
# ---------------------------------------------------------------------------


class ConfigurationError(AzConvergeError):
    """The declared resource graph cannot be executed."""


class CycleDetected(ConfigurationError):
    """The dependency edges do not form a DAG."""

    def __init__(self, members: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join([*members, members[0]])}")
        self.members = members


class DanglingReference(ConfigurationError):
    """A declared or inferred dependency names a resource that does not exist."""

    def __init__(self, resource_id: str, missing_id: str) -> None:
        super().__init__(f"Resource '{resource_id}' depends on unknown resource '{missing_id}'")
        self.resource_id = resource_id
        self.missing_id = missing_id


class DuplicateResource(ConfigurationError):
    """Two declarations share the same resource id."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Resource '{resource_id}' is declared more than once")
        self.resource_id = resource_id


class DependentStillPresent(ConfigurationError):
    """Destroy refused: a resource that depends on the target still exists."""

    def __init__(self, resource_id: str, dependents: list[str]) -> None:
        super().__init__(
            f"Refusing to destroy '{resource_id}': dependents still present: {', '.join(dependents)}"
        )
        self.resource_id = resource_id
        self.dependents = dependents


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AzConvergeError):
    """An error reported by a remote provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Rate limiting, 5xx or a dropped connection.  Safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ProviderFatalError(ProviderError):
    """Validation or authorization failure.  Never retried."""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialError(AzConvergeError):
    """Base for credential resolution failures."""


class CredentialDecodeError(CredentialError):
    """The credential payload is absent or malformed."""


class NoCredentialsReturned(CredentialError):
    """The provider reported success but returned zero credential entries."""


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TimeoutExceeded(AzConvergeError):
    """A resource operation did not finish within its timeout."""

    def __init__(self, resource_id: str, timeout: float) -> None:
        super().__init__(f"Operation on '{resource_id}' exceeded its timeout of {timeout:g}s")
        self.resource_id = resource_id
        self.timeout = timeout


class OperationCancelled(AzConvergeError):
    """The apply pass was cancelled while the operation was in flight."""


class LeaseConflict(AzConvergeError):
    """Another operation already holds the exclusive lease on a resource."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Resource '{resource_id}' is already being operated on")
        self.resource_id = resource_id


class AlreadyResolvedError(AzConvergeError):
    """A write-once resolution cell was written twice."""


class UpstreamFailed(AzConvergeError):
    """A deferred value's producing resource failed or was blocked."""

    def __init__(self, resource_id: str, reason: str) -> None:
        super().__init__(f"Upstream resource '{resource_id}' did not settle: {reason}")
        self.resource_id = resource_id
        self.reason = reason


class WorkloadSetFailed(ProviderFatalError):
    """One or more workloads in a nested pass failed or were blocked."""

    def __init__(self, resource_id: str, report: ApplyReport) -> None:
        failed = ", ".join(report.failed) or "none"
        blocked = ", ".join(report.blocked) or "none"
        super().__init__(f"Workload set '{resource_id}' did not converge (failed: {failed}; blocked: {blocked})")
        self.resource_id = resource_id
        self.report = report
