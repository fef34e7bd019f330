"""Probe settings, populated once at process start and passed down explicitly.

``ProbeSettings.from_env()`` reads the credential and target variables
(``SUBSCRIPTION_ID``, ``TENANT_ID``,
``CLIENT_ID``, ``CLIENT_SECRET``, ``SUT_APPLICATION_OBJECT_ID``,
``PARALLEL_REQUESTS``, ``RETRY_ATTEMPTS``) plus a few tuning knobs.  Nothing
below the CLI looks at ``os.environ``.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from azure.identity import AzureAuthorityHosts

from .errors import ConfigError

DEFAULT_PARALLEL_REQUESTS = 20
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_SETTLE_SECONDS = 10.0
DEFAULT_TIMEOUT = 30
DEFAULT_CREDENTIAL_LIFETIME_HOURS = 24

# Status codes eligible for transport-level retry (same set go-autorest uses)
DEFAULT_RETRY_STATUS_CODES: Tuple[int, ...] = (408, 429, 500, 502, 503, 504)

# Cloud name -> (Graph base URL, authority host)
CLOUDS: Dict[str, Tuple[str, str]] = {
    "AZUREPUBLICCLOUD": ("https://graph.microsoft.com", AzureAuthorityHosts.AZURE_PUBLIC_CLOUD),
    "AZUREUSGOVERNMENTCLOUD": ("https://graph.microsoft.us", AzureAuthorityHosts.AZURE_GOVERNMENT),
    "AZURECHINACLOUD": ("https://microsoftgraph.chinacloudapi.cn", AzureAuthorityHosts.AZURE_CHINA),
}


class RetryPolicy:
    """Transport retry configuration handed to the HTTP client.

    Args:
        attempts:       Maximum number of retries after the first attempt.
        status_codes:   Response statuses that trigger a retry.
        backoff_factor: urllib3 exponential backoff factor in seconds.
    """

    def __init__(
        self,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
        status_codes: Sequence[int] = DEFAULT_RETRY_STATUS_CODES,
        backoff_factor: float = 0.5,
    ):
        if attempts < 0:
            raise ValueError("retry attempts must be >= 0")
        self.attempts = attempts
        self.status_codes = tuple(status_codes)
        self.backoff_factor = backoff_factor

    def __repr__(self):
        return f"RetryPolicy(attempts={self.attempts}, status_codes={self.status_codes})"


class ProbeSettings:
    """Everything a probe run needs to know.

    Attributes:
        subscription_id:          Azure subscription the tenant belongs to.
        tenant_id:                Directory (tenant) id for client-secret auth.
        client_id:                App registration used to call Graph, or the
                                  user-assigned managed identity when no secret is set.
        client_secret:            Secret for ``client_id``.
        application_object_id:    Object id of the application under test.
        parallel_requests:        Number of concurrent ``addPassword`` calls.
        retry_attempts:           Transport retry count for each request.
        settle_seconds:           Wait between the last add and the read-back.
        cloud:                    Azure cloud name (see ``CLOUDS``).
        timeout:                  Per-request timeout in seconds.
        credential_lifetime_hours: Expiry offset for created credentials.
        graph_base_url:           Override for the Graph endpoint (tests, proxies).
    """

    def __init__(
        self,
        subscription_id: str = "",
        tenant_id: str = "",
        client_id: str = "",
        client_secret: str = "",
        application_object_id: str = "",
        parallel_requests: int = DEFAULT_PARALLEL_REQUESTS,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        cloud: str = "AZUREPUBLICCLOUD",
        timeout: int = DEFAULT_TIMEOUT,
        credential_lifetime_hours: int = DEFAULT_CREDENTIAL_LIFETIME_HOURS,
        graph_base_url: Optional[str] = None,
    ):
        self.subscription_id = subscription_id
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.application_object_id = application_object_id
        self.parallel_requests = parallel_requests
        self.retry_attempts = retry_attempts
        self.settle_seconds = settle_seconds
        self.cloud = cloud.upper()
        self.timeout = timeout
        self.credential_lifetime_hours = credential_lifetime_hours
        self._graph_base_url = graph_base_url

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "ProbeSettings":
        """Build settings from an environment mapping.

        Malformed numbers are collected and raised together as ``ConfigError``
        rather than one at a time.
        """
        problems: List[str] = []

        def _int(name: str, default: int) -> int:
            raw = environ.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return int(raw)
            except ValueError:
                problems.append(f"{name} must be an integer, got {raw!r}")
                return default

        def _float(name: str, default: float) -> float:
            raw = environ.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return float(raw)
            except ValueError:
                problems.append(f"{name} must be a number, got {raw!r}")
                return default

        settings = cls(
            subscription_id=environ.get("SUBSCRIPTION_ID", ""),
            tenant_id=environ.get("TENANT_ID", ""),
            client_id=environ.get("CLIENT_ID", ""),
            client_secret=environ.get("CLIENT_SECRET", ""),
            application_object_id=environ.get("SUT_APPLICATION_OBJECT_ID", ""),
            parallel_requests=_int("PARALLEL_REQUESTS", DEFAULT_PARALLEL_REQUESTS),
            retry_attempts=_int("RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS),
            settle_seconds=_float("SETTLE_SECONDS", DEFAULT_SETTLE_SECONDS),
            cloud=environ.get("AZURE_ENVIRONMENT", "AZUREPUBLICCLOUD"),
            timeout=_int("REQUEST_TIMEOUT", DEFAULT_TIMEOUT),
            credential_lifetime_hours=_int(
                "CREDENTIAL_LIFETIME_HOURS", DEFAULT_CREDENTIAL_LIFETIME_HOURS),
            graph_base_url=environ.get("GRAPH_BASE_URL") or None,
        )
        if problems:
            raise ConfigError(problems)
        return settings

    # -- Derived values ------------------------------------------------------

    @property
    def uses_client_secret(self) -> bool:
        """True when client-secret auth is configured; otherwise managed identity is used."""
        return bool(self.client_id and self.client_secret and self.tenant_id)

    @property
    def graph_base_url(self) -> str:
        if self._graph_base_url:
            return self._graph_base_url.rstrip("/")
        return CLOUDS[self.cloud][0]

    @property
    def authority_host(self) -> str:
        return CLOUDS[self.cloud][1]

    @property
    def token_scope(self) -> str:
        return f"{CLOUDS[self.cloud][0]}/.default"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.retry_attempts)

    # -- Validation ----------------------------------------------------------

    def validate(self, require_auth: bool = True) -> "ProbeSettings":
        """Check the settings once and raise ``ConfigError`` listing every problem.

        ``require_auth=False`` skips the identity checks; used when the caller
        injects its own client.
        """
        problems: List[str] = []
        if not self.application_object_id:
            problems.append("SUT_APPLICATION_OBJECT_ID must be set")
        if require_auth:
            if not self.subscription_id:
                problems.append("SUBSCRIPTION_ID must be set")
            # CLIENT_ID on its own names a user-assigned managed identity
            partial = [n for n, v in (("TENANT_ID", self.tenant_id),
                                      ("CLIENT_SECRET", self.client_secret)) if v]
            if partial and not self.uses_client_secret:
                missing = [n for n, v in (("TENANT_ID", self.tenant_id),
                                          ("CLIENT_ID", self.client_id),
                                          ("CLIENT_SECRET", self.client_secret)) if not v]
                problems.append(
                    f"client secret auth needs {', '.join(missing)} "
                    f"(unset {', '.join(partial)} to use managed identity)"
                )
        if self.parallel_requests < 1:
            problems.append("PARALLEL_REQUESTS must be >= 1")
        if self.retry_attempts < 0:
            problems.append("RETRY_ATTEMPTS must be >= 0")
        if self.settle_seconds < 0:
            problems.append("SETTLE_SECONDS must be >= 0")
        if self.timeout < 1:
            problems.append("REQUEST_TIMEOUT must be >= 1")
        if self.credential_lifetime_hours < 1:
            problems.append("CREDENTIAL_LIFETIME_HOURS must be >= 1")
        if self.cloud not in CLOUDS:
            problems.append(
                f"AZURE_ENVIRONMENT must be one of {', '.join(sorted(CLOUDS))}, got {self.cloud!r}"
            )
        if problems:
            raise ConfigError(problems)
        return self

    def redacted(self) -> Dict[str, object]:
        """Settings as a dict safe to print (secret masked)."""
        return {
            "subscription_id": self.subscription_id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "client_secret": "***REDACTED***" if self.client_secret else "",
            "application_object_id": self.application_object_id,
            "parallel_requests": self.parallel_requests,
            "retry_attempts": self.retry_attempts,
            "settle_seconds": self.settle_seconds,
            "cloud": self.cloud,
            "timeout": self.timeout,
            "credential_lifetime_hours": self.credential_lifetime_hours,
            "graph_base_url": self._graph_base_url or "",
        }
