"""Thin HTTP client for the Microsoft Graph ``applications`` password endpoints.

Wraps a shared ``requests.Session`` so many worker threads can issue calls
concurrently against one application object.  Everything that is not
business logic is delegated:

- Token acquisition to an ``azure-identity`` credential (or a static token)
- Retry on throttling / transient statuses to a ``urllib3`` ``Retry`` mounted
  on the session adapter, configured from a ``RetryPolicy``
- Request body encoding to ``requests``

Every operation accepts a ``deadline`` (absolute ``time.monotonic()``
value) and a ``cancel`` event.  Both are checked before the request is sent
and again before every transport retry, and the remaining time caps the
request timeout.  ``redact_auth()`` is used
whenever headers end up in a log line.
"""

import datetime
import json
import logging
import threading
import time
import urllib.parse
from typing import Any, Dict, Optional

import requests
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, ManagedIdentityCredential
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__
from .config import ProbeSettings, RetryPolicy
from .errors import (
    AuthError,
    ConflictError,
    DeadlineExceeded,
    NotFoundError,
    OperationCancelled,
    TransportError,
)
from .models import ApplicationState, Credential

logger = logging.getLogger(__name__)

API_VERSION = "v1.0"
USER_AGENT = f"graph-sanity/{__version__}"

APPLICATION_PATH = "/applications/{applicationObjectId}"
ADD_PASSWORD_PATH = "/applications/{applicationObjectId}/addPassword"
REMOVE_PASSWORD_PATH = "/applications/{applicationObjectId}/removePassword"

# Refresh cached tokens this many seconds before they expire
_TOKEN_REFRESH_MARGIN = 300


class GraphResponse:
    """Normalized HTTP response wrapper."""

    def __init__(self, status_code: int, headers: Dict[str, str], body: str):
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self._json = None

    def json(self) -> Any:
        """Parse and cache the response body as JSON."""
        if self._json is None:
            self._json = json.loads(self.body) if self.body else None
        return self._json

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lower = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lower:
                return v
        return None

    @property
    def request_id(self) -> Optional[str]:
        return self.header("request-id") or self.header("client-request-id")


def build_credential(settings: ProbeSettings):
    """Pick the token credential for the configured identity.

    Client-secret auth when tenant, client id and secret are all present,
    a user-assigned managed identity when only the client id is set, the
    system-assigned managed identity otherwise.
    """
    if settings.uses_client_secret:
        return ClientSecretCredential(
            settings.tenant_id,
            settings.client_id,
            settings.client_secret,
            authority=settings.authority_host,
        )
    if settings.client_id:
        return ManagedIdentityCredential(client_id=settings.client_id)
    return ManagedIdentityCredential()


# Deadline and cancel event of the request running on the current thread,
# read by ``DeadlineRetry`` between attempts
_request_scope = threading.local()


class DeadlineRetry(Retry):
    """``Retry`` whose backoff stops at the calling request's deadline.

    urllib3 runs every attempt of one request on the thread that sent it,
    so ``GraphClient._execute`` publishes the deadline and cancel event in
    ``_request_scope`` for the duration of the call.  A backoff that would
    end past the deadline raises ``DeadlineExceeded`` instead of sleeping,
    and a cancel during backoff raises ``OperationCancelled``.
    """

    def sleep(self, response=None):
        deadline = getattr(_request_scope, "deadline", None)
        cancel = getattr(_request_scope, "cancel", None)
        if deadline is None and cancel is None:
            super().sleep(response)
            return

        operation = getattr(_request_scope, "operation", "") or "request"
        delay = self._backoff_delay(response)
        if deadline is not None and time.monotonic() + delay >= deadline:
            raise DeadlineExceeded(
                f"{operation} deadline exceeded while retrying "
                f"(next attempt in {delay:.1f}s)"
            )
        if cancel is not None:
            if cancel.wait(delay):
                raise OperationCancelled(f"{operation} cancelled while retrying")
        elif delay > 0:
            time.sleep(delay)

    def _backoff_delay(self, response) -> float:
        if response is not None and self.respect_retry_after_header:
            retry_after = self.get_retry_after(response)
            if retry_after:
                return retry_after
        return self.get_backoff_time()


def build_retry(policy: RetryPolicy) -> Retry:
    """Translate a ``RetryPolicy`` into a deadline-aware urllib3 ``Retry``.

    POST is retried too: ``addPassword`` is not idempotent, but that matches
    how the Graph SDKs retry throttled writes.
    """
    return DeadlineRetry(
        total=policy.attempts,
        connect=policy.attempts,
        read=policy.attempts,
        status=policy.attempts,
        status_forcelist=policy.status_codes,
        allowed_methods=None,
        backoff_factor=policy.backoff_factor,
        respect_retry_after_header=True,
        raise_on_status=False,
    )


class GraphClient:
    """Client for the three application password operations.

    Holds no state between calls other than the session and the cached
    access token, so one instance can be shared by every harness worker.

    Args:
        base_url:     Graph root (e.g. ``https://graph.microsoft.com``).
        credential:   ``azure.core`` ``TokenCredential`` used to obtain tokens.
        token:        Static bearer token; used instead of ``credential``.
        scope:        Token scope requested from ``credential``.
        retry_policy: Transport retry configuration.
        timeout:      Per-request timeout in seconds.
        pool_size:    Connection pool size; should match the concurrency level.
    """

    def __init__(
        self,
        base_url: str,
        credential: Any = None,
        token: Optional[str] = None,
        scope: str = "https://graph.microsoft.com/.default",
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30,
        pool_size: int = 20,
    ):
        self.base_url = base_url.rstrip("/")
        self.credential = credential
        self.token = token
        self.scope = scope
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

        self.session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=build_retry(self.retry_policy),
        )
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        self._token_lock = threading.Lock()
        self._access_token = None

    @classmethod
    def from_settings(cls, settings: ProbeSettings, credential: Any = None) -> "GraphClient":
        """Build a client wired to the configured cloud, identity and retry policy."""
        return cls(
            settings.graph_base_url,
            credential=credential or build_credential(settings),
            scope=settings.token_scope,
            retry_policy=settings.retry_policy(),
            timeout=settings.timeout,
            pool_size=settings.parallel_requests,
        )

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # -- Public API ----------------------------------------------------------

    def read_application(
        self,
        app_id: str,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ApplicationState:
        """``GET /applications/{id}`` and return its credential snapshot."""
        resp = self._execute(
            "GET", APPLICATION_PATH, {"applicationObjectId": app_id},
            expected_status=200, operation="read_application",
            deadline=deadline, cancel=cancel,
        )
        return ApplicationState.from_json(self._json_body(resp, "read_application"))

    def add_credential(
        self,
        app_id: str,
        display_name: str,
        expiry: datetime.datetime,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Credential:
        """``POST /applications/{id}/addPassword`` and return the created credential.

        The returned ``Credential`` carries the one-time ``secret_text``.
        """
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=datetime.timezone.utc)
        payload = {
            "passwordCredential": {
                "displayName": display_name,
                "endDateTime": expiry.astimezone(datetime.timezone.utc)
                .replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            },
        }
        resp = self._execute(
            "POST", ADD_PASSWORD_PATH, {"applicationObjectId": app_id},
            body=payload, expected_status=200, operation="add_credential",
            deadline=deadline, cancel=cancel,
        )
        credential = Credential.from_json(self._json_body(resp, "add_credential"))
        if not credential.key_id:
            raise TransportError(
                "addPassword response has no keyId", operation="add_credential",
                status_code=resp.status_code, request_id=resp.request_id,
            )
        credential.request_id = resp.request_id
        credential.date = resp.header("Date")
        return credential

    def remove_credential(
        self,
        app_id: str,
        key_id: str,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """``POST /applications/{id}/removePassword`` for one key id."""
        self._execute(
            "POST", REMOVE_PASSWORD_PATH, {"applicationObjectId": app_id},
            body={"keyId": key_id}, expected_status=204,
            operation="remove_credential", deadline=deadline, cancel=cancel,
        )

    # -- Internals -----------------------------------------------------------

    def _bearer_token(self) -> Optional[str]:
        """Return a bearer token, refreshing the cached one near expiry."""
        if self.token:
            return self.token
        if self.credential is None:
            return None
        with self._token_lock:
            cached = self._access_token
            if cached is None or cached.expires_on - _TOKEN_REFRESH_MARGIN <= time.time():
                try:
                    cached = self.credential.get_token(self.scope)
                except ClientAuthenticationError as exc:
                    raise AuthError(f"token acquisition failed: {exc}",
                                    operation="get_token") from exc
                self._access_token = cached
            return cached.token

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": USER_AGENT,
        }
        token = self._bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _execute(
        self,
        method: str,
        path_template: str,
        path_params: Dict[str, str],
        body: Optional[Dict[str, Any]] = None,
        expected_status: int = 200,
        operation: str = "",
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> GraphResponse:
        """Send one request and classify anything but ``expected_status`` as an error.

        Raises ``OperationCancelled`` / ``DeadlineExceeded`` before sending
        when the caller has given up, and one of ``TransportError``,
        ``AuthError``, ``NotFoundError`` or ``ConflictError`` on failure.
        """
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{operation} cancelled before sending")
        timeout = self.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeadlineExceeded(f"{operation} deadline exceeded before sending")
            timeout = min(timeout, remaining)

        path = path_template.format(**{
            k: urllib.parse.quote(str(v), safe="") for k, v in path_params.items()
        })
        url = f"{self.base_url}/{API_VERSION}{path}"
        headers = self._build_headers()
        logger.debug("%s %s headers=%s", method, url, redact_auth(headers))

        _request_scope.deadline = deadline
        _request_scope.cancel = cancel
        _request_scope.operation = operation
        try:
            raw = self.session.request(method, url, headers=headers, json=body, timeout=timeout)
        except requests.exceptions.RequestException as exc:
            if deadline is not None and time.monotonic() >= deadline:
                raise DeadlineExceeded(f"{operation} deadline exceeded: {exc}") from exc
            raise TransportError(f"{method} {path} failed: {exc}", operation=operation) from exc
        finally:
            _request_scope.deadline = None
            _request_scope.cancel = None
            _request_scope.operation = None

        resp = GraphResponse(raw.status_code, dict(raw.headers), raw.text)
        logger.debug("%s %s -> %s request-id=%s", method, path, resp.status_code, resp.request_id)
        if resp.status_code != expected_status:
            raise _classify(resp, operation, method, path, expected_status)
        return resp

    @staticmethod
    def _json_body(resp: GraphResponse, operation: str) -> Dict[str, Any]:
        """Decode a response body that must be a JSON object (or empty)."""
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"response is not valid JSON: {exc}", operation=operation,
                status_code=resp.status_code, request_id=resp.request_id,
            ) from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise TransportError(
                f"expected a JSON object, got {type(data).__name__}", operation=operation,
                status_code=resp.status_code, request_id=resp.request_id,
            )
        return data


def _graph_error(resp: GraphResponse):
    """Extract ``(code, message)`` from a Graph error body, if it has one."""
    try:
        data = resp.json()
    except ValueError:
        return None, resp.body[:200] if resp.body else ""
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        err = data["error"]
        return err.get("code"), err.get("message") or ""
    return None, ""


def _classify(resp: GraphResponse, operation: str, method: str, path: str,
              expected_status: int):
    """Map an unexpected status to the error taxonomy."""
    code, detail = _graph_error(resp)
    message = f"{method} {path} expected {expected_status}"
    if detail:
        message = f"{message}: {detail}"
    kwargs = dict(operation=operation, status_code=resp.status_code,
                  code=code, request_id=resp.request_id)
    if resp.status_code in (401, 403):
        return AuthError(message, **kwargs)
    if resp.status_code == 404:
        return NotFoundError(message, **kwargs)
    if resp.status_code == 409:
        return ConflictError(message, **kwargs)
    return TransportError(message, **kwargs)


def redact_auth(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with Authorization values replaced by ``***REDACTED***``.

    Use this when including headers in logs or error messages to avoid
    leaking bearer tokens.
    """
    redacted = dict(headers)
    for key in list(redacted.keys()):
        if key.lower() == "authorization":
            redacted[key] = "***REDACTED***"
    return redacted
