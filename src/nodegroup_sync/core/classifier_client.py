"""
ClassifierClient: JSON-first HTTP client for the node classifier groups API.

This module provides a single, reusable HTTP client with:
  * One retrying request loop (`request`) shared by every call
  * Path builders for the classifier **v1** API
  * Atomic group operations (create/update/delete/pin/unpin) for the orchestrator
  * Class cache refresh and node classification lookups

Retry policy:
  * 2xx/3xx -> returned immediately
  * 400 and 500 -> retried after a fixed sleep until `max_attempts` is reached
  * any other status -> ServiceError immediately
  * unknown HTTP verb -> InvalidRequest (programming error, never retried)

Example:
    client = ClassifierClient("master.example", 4433, "/classifier-api")
    gid = client.create_group({"name": "Infra", "parent": ROOT_GROUP_ID})
    client.pin_nodes(gid, ["nodeA"])
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
import urllib3

from .model import Group, strip_removals

API_VERSION = "v1"
GROUPS_ENDPOINT = "groups"
UPDATE_CLASSES_ENDPOINT = "update-classes"
CLASSIFICATION_ENDPOINT = "classified/nodes"

DEFAULT_PORT = 4433
DEFAULT_PREFIX = "/classifier-api"
DEFAULT_MAX_ATTEMPTS = 5

_METHODS = {"GET", "POST", "PUT", "DELETE"}
_RETRY_STATUSES = {400, 500}

_LOG_PREVIEW = int(os.getenv("NGS_HTTP_PREVIEW", "600"))


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


class InvalidRequest(Exception):
    """Raised when `request` is called with an unsupported HTTP verb."""


@dataclass
class ServiceError(Exception):
    """Non-success outcome from the classifier, with context."""
    status: int
    url: str
    body: str = ""
    method: str = ""
    attempts: int = 1
    message: str = ""

    def __str__(self) -> str:
        base = f"ServiceError({self.method} {self.url} -> status={self.status}, attempts={self.attempts})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


@dataclass
class ClientOptions:
    """Runtime options for :class:`ClassifierClient`.

    Attributes:
        max_attempts: Attempt ceiling for retryable statuses (400/500).
        retry_interval_sec: Fixed sleep between two attempts.
        timeout_sec: Per-request timeout (seconds).
        verify: CA bundle path, or a bool toggling certificate verification.
        cert: Client certificate as a path or a ``(cert, key)`` tuple.
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_interval_sec: float = 10.0
    timeout_sec: float = 60.0
    verify: Any = True
    cert: Optional[Any] = None


class ClassifierClient:
    """High-level HTTP client for the node classifier.

    The transport is a ``requests.Session`` (or anything exposing the same
    ``request`` method); TLS material is handed in through ``options``.

    Args:
        server: Classifier host name.
        port: Classifier port.
        prefix: API path prefix (e.g. ``/classifier-api``).
        options: Optional :class:`ClientOptions`.
        session: Optional pre-built transport.
        logger: Optional logger adapter.
    """

    def __init__(
        self,
        server: str,
        port: int | str = DEFAULT_PORT,
        prefix: str = DEFAULT_PREFIX,
        *,
        options: Optional[ClientOptions] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not server:
            raise ValueError("server is required")
        self.server = server
        self.port = int(port or DEFAULT_PORT)
        self.prefix = (prefix or DEFAULT_PREFIX).rstrip("/")
        self.options = options or ClientOptions()
        self.options.max_attempts = max(1, int(self.options.max_attempts))
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "nodegroup-sync/ClassifierClient",
        })
        self.log = logger or logging.getLogger("ngs.http")

        if self.options.verify is False:
            self.log.warning("TLS verification disabled for %s", self.service_url)
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ---------------- low-level ----------------
    @property
    def service_url(self) -> str:
        """User friendly URL of the classifier in use."""
        return f"https://{self.server}:{self.port}{self.prefix}"

    def _url(self, endpoint: str) -> str:
        return f"{self.service_url}/{API_VERSION}/{endpoint.lstrip('/')}"

    def _sleep(self) -> None:
        time.sleep(self.options.retry_interval_sec)

    def request(self, method: str, endpoint: str, payload: Any = None) -> requests.Response:
        """Send one logical request, retrying 400/500 answers.

        Raises:
            InvalidRequest: If *method* is not GET/POST/PUT/DELETE.
            ServiceError: On a non-retryable status, a transport failure, or
                when the attempt budget is exhausted.
        """
        verb = str(method).upper()
        if verb not in _METHODS:
            raise InvalidRequest(f"request called with invalid request type {method!r}")

        url = self._url(endpoint)
        body = None if payload is None else json.dumps(payload)
        max_attempts = self.options.max_attempts
        attempts = 0
        while True:
            attempts += 1
            self.log.debug("requesting %s %s (attempt %d of %d)", verb, url, attempts, max_attempts)
            try:
                resp = self.session.request(
                    method=verb,
                    url=url,
                    data=body,
                    timeout=self.options.timeout_sec,
                    verify=self.options.verify,
                    cert=self.options.cert,
                    allow_redirects=False,
                )
            except requests.RequestException as exc:
                self.log.error("HTTP %s %s failed: %s", verb, url, exc)
                raise ServiceError(status=0, url=url, method=verb, attempts=attempts, message=str(exc)) from exc

            status = int(resp.status_code)
            if 200 <= status < 400:
                self.log.debug("%s %s -> %s", verb, url, status)
                return resp

            if status in _RETRY_STATUSES:
                if attempts < max_attempts:
                    self.log.warning(
                        "Received %s from %s, retrying (attempt %d of %d)",
                        status, self.service_url, attempts, max_attempts,
                    )
                    self._sleep()
                    continue
                self.log.error("%s %s -> %s after %d attempts", verb, url, status, attempts)
                raise ServiceError(
                    status=status, url=url, body=resp.text, method=verb, attempts=attempts,
                    message=f"received {attempts} server error responses from {self.service_url}",
                )

            self.log.error("%s %s -> %s: %s", verb, url, status, resp.text[:200])
            raise ServiceError(
                status=status, url=url, body=resp.text, method=verb, attempts=attempts,
                message=f"unexpected error response from {self.service_url}",
            )

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        if not resp.text:
            return {}
        return resp.json()

    # ---------------- path builders ----------------
    @staticmethod
    def group_path(group_id: str, action: str = "") -> str:
        """Build ``groups/{id}[/{action}]``."""
        path = f"{GROUPS_ENDPOINT}/{group_id}"
        return f"{path}/{action.strip('/')}" if action else path

    # ---------------- groups ----------------
    def list_groups(self) -> List[Group]:
        """Return every group known to the classifier (no pagination)."""
        data = self._json(self.request("GET", GROUPS_ENDPOINT))
        if not isinstance(data, list):
            raise ServiceError(
                status=200, url=self._url(GROUPS_ENDPOINT), method="GET",
                body=_short_json(data, 200), message="groups listing is not a JSON list",
            )
        groups = [Group.from_api(item) for item in data if isinstance(item, dict)]
        self.log.debug("list_groups: %d groups", len(groups))
        return groups

    def create_group(self, payload: Dict[str, Any]) -> str:
        """Create a group and return its id.

        With ``payload["id"]`` the group is upserted (PUT) under that id;
        otherwise it is POSTed and the id is read from the ``Location`` header.
        """
        corr = uuid.uuid4().hex[:8]
        body = strip_removals(payload)
        group_id = body.get("id")
        if group_id:
            path = self.group_path(group_id)
            self.log.info("CREATE[%s] PUT %s name=%s", corr, path, body.get("name"))
            self.log.debug("CREATE[%s] payload=%s", corr, _short_json(body))
            self.request("PUT", path, body)
            return str(group_id)

        self.log.info("CREATE[%s] POST %s name=%s", corr, GROUPS_ENDPOINT, body.get("name"))
        self.log.debug("CREATE[%s] payload=%s", corr, _short_json(body))
        resp = self.request("POST", GROUPS_ENDPOINT, body)
        location = resp.headers.get("Location") or resp.headers.get("location") or ""
        new_id = location.rstrip("/").split("/")[-1]
        if not new_id:
            raise ServiceError(
                status=resp.status_code, url=self._url(GROUPS_ENDPOINT), method="POST",
                body=resp.text, message="create response carries no Location header",
            )
        self.log.info("CREATE[%s] created id=%s", corr, new_id)
        return new_id

    def update_group(self, delta: Dict[str, Any]) -> requests.Response:
        """POST a partial update; removals are sent as JSON null."""
        group_id = delta.get("id")
        if not group_id:
            raise ValueError("update_group requires an 'id' in the delta")
        corr = uuid.uuid4().hex[:8]
        body = strip_removals(delta)
        path = self.group_path(group_id)
        self.log.info("UPDATE[%s] POST %s keys=%s", corr, path, sorted(k for k in body if k != "id"))
        self.log.debug("UPDATE[%s] payload=%s", corr, _short_json(body))
        return self.request("POST", path, body)

    def delete_group(self, group_id: str) -> requests.Response:
        path = self.group_path(group_id)
        self.log.info("DELETE DELETE %s", path)
        return self.request("DELETE", path)

    def pin_nodes(self, group_id: str, certnames: Sequence[str]) -> requests.Response:
        """Atomically pin *certnames* to the group (one call)."""
        path = self.group_path(group_id, "pin")
        self.log.info("PIN POST %s nodes=%s", path, list(certnames))
        return self.request("POST", path, {"nodes": list(certnames)})

    def unpin_nodes(self, group_id: str, certnames: Sequence[str]) -> requests.Response:
        """Atomically unpin *certnames* from the group (one call)."""
        path = self.group_path(group_id, "unpin")
        self.log.info("UNPIN POST %s nodes=%s", path, list(certnames))
        return self.request("POST", path, {"nodes": list(certnames)})

    # ---------------- classes & classification ----------------
    def refresh_classes(self, environment: Optional[str] = None) -> requests.Response:
        """Refresh the classifier class cache, for one environment or all."""
        endpoint = UPDATE_CLASSES_ENDPOINT
        if environment is not None:
            endpoint = f"{UPDATE_CLASSES_ENDPOINT}?environment={environment}"
        self.log.info("REFRESH POST %s", endpoint)
        return self.request("POST", endpoint)

    def get_classification(
        self,
        certname: str,
        facts: Optional[Dict[str, Any]] = None,
        trusted: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Return the classification a node would receive from all its groups."""
        payload: Dict[str, Any] = {}
        if facts:
            payload["fact"] = facts
        if trusted:
            payload["trusted"] = trusted
        resp = self.request("POST", f"{CLASSIFICATION_ENDPOINT}/{certname}", payload)
        return self._json(resp)
