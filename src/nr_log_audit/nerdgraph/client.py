from __future__ import annotations

import json
import re
import ssl
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Union

import requests
from requests.adapters import HTTPAdapter

from ..logging import get_logger
from ..util.errors import FatalTrustError

LOG = get_logger(__name__)

REQUESTING_SERVICE = "nr-log-audit"
MAX_ATTEMPTS = 2

# OpenSSL X509_V_ERR_* codes that mean "the chain ends in a certificate we do
# not trust": depth-zero self-signed, self-signed in chain, unable to get local
# issuer, unable to verify leaf signature.
TRUST_VERIFY_CODES = frozenset({18, 19, 20, 21})
TRUST_MESSAGES = ("self signed certificate", "self-signed certificate")

_QUERY_NAME_RE = re.compile(r"^\s*query\s+(\w+)")

Verify = Union[bool, str]


class OutcomeKind(str, Enum):
    OK = "ok"
    TRANSIENT = "transient"
    FATAL_TRUST = "fatal_trust"


@dataclass(frozen=True)
class QueryOutcome:
    """Tagged result of one transport call."""

    kind: OutcomeKind
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__, getattr(current, "reason", None)):
            if isinstance(linked, BaseException):
                stack.append(linked)
        for arg in getattr(current, "args", ()):
            if isinstance(arg, BaseException):
                stack.append(arg)


def is_trust_failure(exc: BaseException) -> bool:
    """
    Return True if exc (or anything it wraps) is a certificate trust failure,
    typically an HTTPS proxy presenting a self-signed or internal certificate.
    """
    for err in _iter_exception_chain(exc):
        if isinstance(err, ssl.SSLCertVerificationError) and getattr(err, "verify_code", None) in TRUST_VERIFY_CODES:
            return True
        text = str(err).lower()
        if any(marker in text for marker in TRUST_MESSAGES):
            return True
    return False


def make_session(pool_size: Optional[int] = None) -> requests.Session:
    session = requests.Session()
    if pool_size is not None and pool_size >= 1:
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
    return session


def _query_name(query: str) -> str:
    m = _QUERY_NAME_RE.match(query)
    return m.group(1) if m else "anonymous"


class QueryExecutor:
    """
    Sends NerdGraph queries over one pooled session; safe to share across threads.

    Each execute() call makes at most MAX_ATTEMPTS requests. Certificate trust
    failures raise FatalTrustError on the spot and halt the executor, so any
    later call (from any thread) raises the same error without a request.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        verify: Verify = True,
        session: Optional[Any] = None,
        pool_size: Optional[int] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.verify = verify
        self._session = session if session is not None else make_session(pool_size)
        self._headers = {
            "Content-Type": "application/json",
            "API-Key": api_key,
            "NewRelic-Requesting-Services": REQUESTING_SERVICE,
        }
        self._halted: Optional[FatalTrustError] = None
        self._lock = threading.Lock()
        self.queries = 0
        self.failed_queries = 0

    def __enter__(self) -> QueryExecutor:
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if callable(close):
            close()

    @property
    def halted(self) -> bool:
        return self._halted is not None

    def _send(self, query: str, variables: Dict[str, Any]) -> QueryOutcome:
        payload = {"query": query, "variables": variables}
        try:
            resp = self._session.post(
                self.endpoint,
                json=payload,
                headers=self._headers,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.RequestException as e:
            if is_trust_failure(e):
                return QueryOutcome(OutcomeKind.FATAL_TRUST, error=str(e))
            return QueryOutcome(OutcomeKind.TRANSIENT, error=f"{e.__class__.__name__}: {e}")

        try:
            body = resp.json()
        except ValueError as e:
            return QueryOutcome(
                OutcomeKind.TRANSIENT,
                error=f"Malformed response body (HTTP {resp.status_code}): {e}",
            )
        if not isinstance(body, dict):
            return QueryOutcome(OutcomeKind.TRANSIENT, error=f"Unexpected response body (HTTP {resp.status_code})")

        data = body.get("data")
        errors = body.get("errors")
        if isinstance(data, dict):
            if errors:
                LOG.warning(
                    "NerdGraph returned partial data with errors",
                    extra={"errors": json.dumps(errors, default=str)},
                )
            return QueryOutcome(OutcomeKind.OK, data=data)
        if errors:
            return QueryOutcome(
                OutcomeKind.TRANSIENT,
                error=f"Error returned from API: {json.dumps(errors, default=str)}",
            )
        return QueryOutcome(
            OutcomeKind.TRANSIENT,
            error=f"Response carried neither data nor errors (HTTP {resp.status_code})",
        )

    def _halt(self, detail: Optional[str]) -> FatalTrustError:
        with self._lock:
            if self._halted is None:
                self._halted = FatalTrustError(
                    f"TLS certificate verification failed for {self.endpoint}: {detail}"
                )
            return self._halted

    def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Run query and return its data section, or None when both attempts fail
        transiently. Callers treat None as "this query contributed nothing".
        """
        if self._halted is not None:
            raise self._halted
        name = _query_name(query)
        with self._lock:
            self.queries += 1
        for attempt in range(1, MAX_ATTEMPTS + 1):
            outcome = self._send(query, dict(variables or {}))
            if outcome.kind is OutcomeKind.OK:
                return outcome.data
            if outcome.kind is OutcomeKind.FATAL_TRUST:
                raise self._halt(outcome.error)
            if self._halted is not None:
                raise self._halted
            extra: Dict[str, Any] = {
                "query": name,
                "attempt": attempt,
                "max_attempts": MAX_ATTEMPTS,
                "error": outcome.error,
            }
            if context:
                extra.update(context)
            LOG.warning("Transient NerdGraph failure", extra=extra)
        with self._lock:
            self.failed_queries += 1
        LOG.error(
            "NerdGraph query gave up after retry",
            extra={"query": name, **(context or {})},
        )
        return None
