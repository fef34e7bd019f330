"""Value objects for application state, credentials and harness outcomes.

``Credential`` and ``ApplicationState`` mirror the Graph JSON shapes returned
by ``GET /applications/{id}`` and ``POST /applications/{id}/addPassword``.
``OperationResult`` and ``HarnessReport`` carry the outcome of a concurrent
fan-out from the harness to the verifier and the report.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import HarnessFailure


class Credential:
    """A password credential as seen by the server.

    ``secret_text`` is only populated on the ``addPassword`` response and is
    never included in ``to_dict()`` output.  ``request_id`` and ``date`` hold
    the headers of the response that created the credential, when known.
    """

    __slots__ = ("key_id", "display_name", "start_date_time", "end_date_time",
                 "hint", "secret_text", "request_id", "date")

    def __init__(
        self,
        key_id: str,
        display_name: Optional[str] = None,
        start_date_time: Optional[str] = None,
        end_date_time: Optional[str] = None,
        hint: Optional[str] = None,
        secret_text: Optional[str] = None,
    ):
        self.key_id = key_id
        self.display_name = display_name
        self.start_date_time = start_date_time
        self.end_date_time = end_date_time
        self.hint = hint
        self.secret_text = secret_text
        self.request_id: Optional[str] = None
        self.date: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Credential":
        """Build from a Graph ``passwordCredential`` object."""
        return cls(
            key_id=data.get("keyId") or "",
            display_name=data.get("displayName"),
            start_date_time=data.get("startDateTime"),
            end_date_time=data.get("endDateTime"),
            hint=data.get("hint"),
            secret_text=data.get("secretText"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for reports.  Omits empty fields and the secret."""
        d: Dict[str, Any] = {"keyId": self.key_id}
        if self.display_name:
            d["displayName"] = self.display_name
        if self.start_date_time:
            d["startDateTime"] = self.start_date_time
        if self.end_date_time:
            d["endDateTime"] = self.end_date_time
        if self.hint:
            d["hint"] = self.hint
        return d

    def __eq__(self, other):
        if not isinstance(other, Credential):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash(self.key_id)

    def __repr__(self):
        return f"Credential(key_id={self.key_id!r}, display_name={self.display_name!r})"


class ApplicationState:
    """Immutable snapshot of an application's credential set at read time."""

    __slots__ = ("_id", "_credentials")

    def __init__(self, app_id: str, credentials: Iterable[Credential] = ()):
        self._id = app_id
        self._credentials: Tuple[Credential, ...] = tuple(credentials)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ApplicationState":
        """Build from a Graph ``application`` object."""
        creds = data.get("passwordCredentials") or []
        return cls(data.get("id") or "", (Credential.from_json(c) for c in creds))

    @property
    def id(self) -> str:
        return self._id

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        return self._credentials

    def key_ids(self) -> List[str]:
        """Key ids in server order."""
        return [c.key_id for c in self._credentials]

    def key_id_set(self) -> Set[str]:
        return set(self.key_ids())

    def __len__(self):
        return len(self._credentials)

    def __repr__(self):
        return f"ApplicationState(id={self._id!r}, credentials={len(self._credentials)})"


class OperationResult:
    """Outcome of one concurrent add call.

    Exactly one of ``key_id`` or ``error`` is set.

    Attributes:
        index:      Position of the call in the fan-out (1-based).
        key_id:     Server-assigned key id on success.
        error:      Classified ``GraphSanityError`` on failure (or the unexpected
                    exception the call raised).
        request_id: ``request-id`` header of the add response, if any.
        date:       ``Date`` header of the add response, if any.
        elapsed:    Wall-clock seconds the call took.
    """

    def __init__(
        self,
        index: int,
        key_id: Optional[str] = None,
        error: Optional[BaseException] = None,
        request_id: Optional[str] = None,
        date: Optional[str] = None,
        elapsed: float = 0.0,
    ):
        if (key_id is None) == (error is None):
            raise ValueError("exactly one of key_id or error must be set")
        self.index = index
        self.key_id = key_id
        self.error = error
        self.request_id = request_id
        self.date = date
        self.elapsed = elapsed

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"index": self.index, "ok": self.ok,
                             "elapsed": round(self.elapsed, 3)}
        if self.key_id:
            d["keyId"] = self.key_id
        if self.error is not None:
            d["error"] = str(self.error)
            d["errorType"] = type(self.error).__name__
        if self.request_id:
            d["requestId"] = self.request_id
        if self.date:
            d["date"] = self.date
        return d


class HarnessReport:
    """Every outcome of one concurrent fan-out.

    ``record()`` is the only mutator and is safe to call from many worker
    threads; outcomes are appended under a single lock.
    """

    def __init__(self, app_id: str, count: int):
        self.app_id = app_id
        self.count = count
        self.cancelled = False
        self._lock = threading.Lock()
        self._outcomes: List[OperationResult] = []

    def record(self, outcome: OperationResult) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> List[OperationResult]:
        """Outcomes sorted by fan-out index."""
        with self._lock:
            return sorted(self._outcomes, key=lambda o: o.index)

    @property
    def successes(self) -> List[str]:
        """Key ids of every successful add, in fan-out order."""
        return [o.key_id for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[OperationResult]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        """True when every requested add completed successfully."""
        outcomes = self.outcomes
        return (not self.cancelled and len(outcomes) == self.count
                and all(o.ok for o in outcomes))

    def duplicate_key_ids(self) -> List[str]:
        """Key ids the server handed out more than once."""
        seen: Set[str] = set()
        dupes: List[str] = []
        for key_id in self.successes:
            if key_id in seen and key_id not in dupes:
                dupes.append(key_id)
            seen.add(key_id)
        return dupes

    def raise_for_failures(self) -> None:
        """Raise ``HarnessFailure`` chained to the first recorded error."""
        failures = self.failures
        if failures:
            raise HarnessFailure(self) from failures[0].error

    def __len__(self):
        with self._lock:
            return len(self._outcomes)
