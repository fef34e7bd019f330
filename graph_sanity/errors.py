"""Error taxonomy shared by the client, harness, verifier and runner."""

from typing import Any, List, Optional


class GraphSanityError(Exception):
    """Base class for every error raised by graph-sanity."""


class ConfigError(GraphSanityError):
    """Raised when settings are missing or malformed.

    All problems found during validation are collected in ``problems`` so a
    single run reports every misconfiguration at once.
    """

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class RequestError(GraphSanityError):
    """A failed Graph request.

    Attributes:
        operation:   Client operation name (e.g. ``add_credential``).
        status_code: HTTP status of the final response, or None if no response.
        code:        Graph ``error.code`` from the response body, if any.
        request_id:  ``request-id`` response header, if any.
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.code = code
        self.request_id = request_id
        super().__init__(message)

    def __str__(self):
        parts = [super().__str__()]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.code:
            parts.append(f"code={self.code}")
        if self.request_id:
            parts.append(f"request-id={self.request_id}")
        prefix = f"{self.operation}: " if self.operation else ""
        return prefix + " ".join(parts)


class TransportError(RequestError):
    """Network or HTTP-layer failure, including unexpected status codes."""


class AuthError(RequestError):
    """The token could not be acquired or the request was not authorized."""


class NotFoundError(RequestError):
    """The application or credential does not exist."""


class ConflictError(RequestError):
    """The server rejected the mutation because of the resource's current state."""


class OperationCancelled(GraphSanityError):
    """The caller's cancellation signal fired before the work completed.

    ``report`` holds whatever partial harness report existed at the time.
    """

    def __init__(self, message: str = "operation cancelled", report: Any = None):
        self.report = report
        super().__init__(message)


class DeadlineExceeded(OperationCancelled):
    """The caller-supplied deadline passed before the request completed."""

    def __init__(self, message: str = "deadline exceeded", report: Any = None):
        super().__init__(message, report=report)


class HarnessFailure(GraphSanityError):
    """One or more concurrent add operations failed.

    The first underlying error is chained as ``__cause__``; ``report`` holds
    every outcome, successful or not.
    """

    def __init__(self, report: Any):
        self.report = report
        failures = report.failures
        super().__init__(
            f"{len(failures)} of {report.count} credential creations failed"
        )


class ConvergenceError(GraphSanityError):
    """Created credentials were not visible after the settling period.

    Attributes:
        missing:  Every expected key id absent from the read-back set, in
                  the order they were expected.
        observed: Number of credentials present in the final read.
    """

    def __init__(self, missing: List[str], observed: int = 0):
        self.missing = list(missing)
        self.observed = observed
        super().__init__(
            f"{len(self.missing)} created credential(s) not visible after settling: "
            + ", ".join(self.missing)
        )
