"""
ApstraClient: JSON-first HTTP client for the Apstra REST API.

This module provides a single, reusable client with:
  * One request helper (`_talk_to_apstra`) handling auth headers, transparent
    re-login on HTTP 401, JSON decoding and error reporting
  * The two task status calls consumed by the background `TaskMonitor`
  * Transparent resolution of ``async=full`` responses: when Apstra answers
    with ``{"task_id": ...}`` the call blocks until the task completes and
    returns the task's ``api_response``
  * A small set of resource helpers (versions, blueprints, design tags)

Example:
    with ApstraClient("https://apstra.local", "admin", "secret") as client:
        client.login()
        for bp_id in client.list_blueprint_ids():
            print(bp_id)
"""
from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import requests
import urllib3

from .errors import (
    ApstraAuthError,
    ApstraError,
    ApstraHttpError,
    ApstraNotFoundError,
    ApstraProtocolError,
    ApstraTaskFailedError,
)
from .task_monitor import ErrorSink, TaskMonitor, TaskMonitorOptions
from .tasks import TaskRecord, parse_task_id, task_list_to_filter_expr

if TYPE_CHECKING:  # pragma: no cover
    from .config import AppConfig

log = logging.getLogger("apstra.http")

DEFAULT_TIMEOUT_SEC = 10.0
ERR_RESPONSE_LIMIT = 4096
AUTH_HEADER = "AuthToken"

API_URL_USER_LOGIN = "/api/aaa/login"
API_URL_USER_LOGOUT = "/api/aaa/logout"
API_URL_VERSIONS_API = "/api/versions/api"
API_URL_BLUEPRINTS = "/api/blueprints"
API_URL_BLUEPRINTS_PREFIX = API_URL_BLUEPRINTS + "/"
API_URL_TASKS_SUFFIX = "/tasks/"
API_URL_DESIGN_TAGS = "/api/design/tags"

_LOG_PREVIEW = 600
_REDACT_KEYS = {"token", "authtoken", "password", "pass"}


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: "***REDACTED***" if str(k).lower() in _REDACT_KEYS else _redact(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


def blueprint_id_from_url(url: str) -> str:
    """Extract ``<id>`` from ``.../api/blueprints/<id>/...``; empty string if absent."""
    path = urlparse(url).path if "://" in url else url.split("?", 1)[0]
    parts = path.split(API_URL_BLUEPRINTS_PREFIX)
    if len(parts) != 2:
        return ""
    return parts[1].split("/", 1)[0]


class ApstraClient:
    """High-level HTTP client for the Apstra API.

    Args:
        url: Base URL of the Apstra server (e.g. ``https://apstra.local``).
        user: API/UI username.
        password: API/UI password.
        verify_tls: If False, certificate verification is disabled (and
            urllib3's InsecureRequestWarning is silenced).
        timeout_sec: Per-request timeout.
        monitor_options: Timer settings for the task monitor.
        error_sink: Receives background task polling errors (see TaskMonitor).
        session: Optional pre-built ``requests.Session``.
    """

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        *,
        verify_tls: bool = True,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        monitor_options: Optional[TaskMonitorOptions] = None,
        error_sink: Optional[ErrorSink] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url:
            raise ValueError("url for Apstra service cannot be empty")
        if not user:
            raise ValueError("username for Apstra service cannot be empty")
        if not password:
            raise ValueError("password for Apstra service cannot be empty")

        self.base_url = url.rstrip("/")
        self.user = user
        self._password = password
        self.verify_tls = bool(verify_tls)
        self.timeout = float(timeout_sec)
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.id = ""  # Apstra user id, known after login
        self._api_version: Optional[str] = None

        if not self.verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.task_monitor = TaskMonitor(self, options=monitor_options, error_sink=error_sink)
        log.debug("Apstra client for %s created", self.base_url)

    @classmethod
    def from_config(cls, cfg: "AppConfig", *, error_sink: Optional[ErrorSink] = None) -> "ApstraClient":
        """Build a client from a loaded :class:`AppConfig`."""
        return cls(
            cfg.server.url,
            cfg.server.user,
            cfg.server.password,
            verify_tls=cfg.server.verify_tls,
            timeout_sec=cfg.server.timeout_sec,
            monitor_options=TaskMonitorOptions(
                first_check_delay_sec=cfg.task_monitor.first_check_delay_sec,
                poll_interval_sec=cfg.task_monitor.poll_interval_sec,
            ),
            error_sink=error_sink,
        )

    def __enter__(self) -> "ApstraClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Drain the task monitor, log out (when logged in) and close the session."""
        self.task_monitor.shutdown(wait=True)
        if self.logged_in:
            try:
                self.logout()
            except ApstraError as exc:
                log.warning("logout during close failed: %s", exc)
        self.session.close()

    # ---------------- auth ----------------

    @property
    def logged_in(self) -> bool:
        return AUTH_HEADER in self.session.headers

    def login(self) -> None:
        """Fetch an auth token. Optional: the client logs in on first HTTP 401."""
        data = self._talk_to_apstra(
            "POST",
            API_URL_USER_LOGIN,
            payload={"username": self.user, "password": self._password},
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ApstraProtocolError(f"login response from {self.base_url} carried no token")
        self.session.headers[AUTH_HEADER] = str(token)
        self.id = str(data.get("id") or "")
        log.info("logged in to %s as '%s'", self.base_url, self.user)

    def logout(self) -> None:
        """Invalidate the token held by this client."""
        self._talk_to_apstra("POST", API_URL_USER_LOGOUT, do_not_login=True)
        self.session.headers.pop(AUTH_HEADER, None)
        self.id = ""
        log.info("logged out of %s", self.base_url)

    # ---------------- low-level ----------------

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _talk_to_apstra(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Any = None,
        do_not_login: bool = False,
    ) -> Any:
        """Perform one request and return the decoded JSON body (None when empty).

        A 401 triggers a single login + resend unless *do_not_login* is set or
        the request was the login itself.

        Raises:
            ApstraHttpError: On connection errors (status 0) and non-2xx responses.
            ApstraAuthError: On authentication failures.
            ApstraProtocolError: On a 2xx response that is not JSON.
        """
        method = method.upper()
        url = self._url(path)
        is_login = path == API_URL_USER_LOGIN
        if payload is not None:
            log.debug("%s %s payload=%s", method, path, _short_json(_redact(payload)))

        start = time.monotonic()
        try:
            resp = self.session.request(
                method=method,
                url=url,
                params=params,
                json=payload,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.RequestException as exc:
            log.error("HTTP %s %s failed: %s", method, url, exc)
            raise ApstraHttpError(status=0, method=method, url=url, message=str(exc)) from exc
        elapsed_ms = (time.monotonic() - start) * 1000

        if resp.status_code == 401:
            if is_login:
                raise ApstraAuthError(
                    status=401, method=method, url=url,
                    body=f"response body for '{path}' redacted",
                    message=f"http 401 at '{path}' - check username/password",
                )
            if do_not_login:
                raise ApstraAuthError(
                    status=401, method=method, url=url,
                    body=resp.text[:ERR_RESPONSE_LIMIT],
                    message=f"http 401 at '{path}' and login is not permitted for this request",
                )
            log.info("HTTP 401 at %s, logging in and retrying", path)
            self.login()
            return self._talk_to_apstra(method, path, params=params, payload=payload, do_not_login=True)

        if resp.status_code // 100 != 2:
            body = f"response body for '{path}' redacted" if is_login else resp.text[:ERR_RESPONSE_LIMIT]
            log.error("HTTP %s %s -> %s: %s", method, url, resp.status_code, body[:200])
            raise ApstraHttpError(status=resp.status_code, method=method, url=url, body=body, message=resp.reason or "")

        log.debug("%s %s -> %s in %.1fms", method, path, resp.status_code, elapsed_ms)
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError as exc:
            raise ApstraProtocolError(f"non-JSON response from {method} {url}: {resp.text[:200]}") from exc
        if not is_login:
            log.debug("%s %s response=%s", method, path, _short_json(data))
        return data

    def _talk_to_apstra_async(
        self,
        method: str,
        path: str,
        *,
        payload: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send with ``async=full``; if Apstra answers with a task id, wait for it.

        Returns the plain response when no task id comes back, otherwise the
        completed task's ``detailed_status.api_response``.

        Raises:
            ApstraTaskFailedError: When the task finishes in any state other than success.
        """
        query = dict(params or {})
        query["async"] = "full"
        body = self._talk_to_apstra(method, path, params=query, payload=payload)
        task_id = parse_task_id(body)
        if task_id is None:
            return body

        bp_id = blueprint_id_from_url(path)
        if not bp_id:
            raise ApstraProtocolError(f"task id '{task_id}' returned for non-blueprint URL '{path}'")

        record = self.wait_for_task_completion(bp_id, task_id)
        if not record.succeeded:
            raise ApstraTaskFailedError(
                f"blueprint '{bp_id}' task '{task_id}' {method} {path} ended with status "
                f"'{record.status}' (error_code={record.detailed_status.error_code}): "
                f"{_short_json(record.detailed_status.errors, 400)}",
                record,
            )
        return record.detailed_status.api_response

    def get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        return self._talk_to_apstra("GET", path, params=params)

    def post_json(self, path: str, data: Any) -> Any:
        return self._talk_to_apstra("POST", path, payload=data)

    def put_json(self, path: str, data: Any) -> Any:
        return self._talk_to_apstra("PUT", path, payload=data)

    def delete_json(self, path: str) -> Any:
        return self._talk_to_apstra("DELETE", path)

    # ---------------- tasks ----------------

    def get_blueprint_tasks_status(self, blueprint_id: str, task_ids: Sequence[str]) -> Dict[str, str]:
        """Return ``{task_id: status}`` for the given tasks of one blueprint."""
        path = f"{API_URL_BLUEPRINTS_PREFIX}{blueprint_id}{API_URL_TASKS_SUFFIX}"
        data = self._talk_to_apstra("GET", path, params={"filter": task_list_to_filter_expr(task_ids)})
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ApstraProtocolError(f"task list for blueprint '{blueprint_id}' has no 'items' list")

        result: Dict[str, str] = {}
        for item in items:
            status = item.get("status") if isinstance(item, dict) else None
            tid = item.get("id") if isinstance(item, dict) else None
            if not status:
                raise ApstraProtocolError("server response included empty task status")
            if not tid:
                raise ApstraProtocolError("server response included empty task id")
            result[str(tid)] = str(status)
        return result

    def get_blueprint_task_status_by_id(self, blueprint_id: str, task_id: str) -> TaskRecord:
        """Return the detailed record of one task."""
        data = self._talk_to_apstra("GET", f"{API_URL_BLUEPRINTS_PREFIX}{blueprint_id}{API_URL_TASKS_SUFFIX}{task_id}")
        if not isinstance(data, dict):
            raise ApstraProtocolError(f"blueprint '{blueprint_id}' task '{task_id}' record is not a JSON object")
        return TaskRecord.from_json(data)

    def wait_for_task_completion(self, blueprint_id: str, task_id: str) -> TaskRecord:
        """Block until the task monitor resolves the task; see TaskMonitor.wait."""
        return self.task_monitor.wait(blueprint_id, task_id)

    # ---------------- versions ----------------

    def get_api_version(self) -> str:
        """Return (and cache) the API version reported by the server."""
        if self._api_version is None:
            data = self._talk_to_apstra("GET", API_URL_VERSIONS_API)
            version = data.get("version") if isinstance(data, dict) else None
            if not version:
                raise ApstraProtocolError(f"'{API_URL_VERSIONS_API}' response carried no version")
            self._api_version = str(version)
        return self._api_version

    # ---------------- blueprints ----------------

    def list_blueprint_ids(self) -> List[str]:
        data = self._talk_to_apstra("GET", API_URL_BLUEPRINTS)
        return [str(item["id"]) for item in _items(data, API_URL_BLUEPRINTS)]

    def get_blueprint(self, blueprint_id: str) -> Dict[str, Any]:
        return self._talk_to_apstra("GET", f"{API_URL_BLUEPRINTS_PREFIX}{blueprint_id}")

    def delete_blueprint(self, blueprint_id: str, *, wait_sec: float = 60.0, poll_sec: float = 1.0) -> None:
        """Delete a blueprint and wait until it disappears from the blueprint list.

        Pass ``wait_sec=0`` to skip waiting.
        """
        self._talk_to_apstra("DELETE", f"{API_URL_BLUEPRINTS_PREFIX}{blueprint_id}")
        if wait_sec <= 0:
            return
        deadline = time.monotonic() + wait_sec
        while blueprint_id in self.list_blueprint_ids():
            if time.monotonic() >= deadline:
                raise ApstraError(f"blueprint '{blueprint_id}' still listed {wait_sec}s after delete")
            time.sleep(poll_sec)

    def blueprint_request(self, method: str, blueprint_id: str, path: str, payload: Any = None) -> Any:
        """Call a blueprint-scoped endpoint with ``async=full`` and wait for its task.

        Example:
            client.blueprint_request("POST", bp_id, "security-zones", {"label": "blue"})
        """
        full = f"{API_URL_BLUEPRINTS_PREFIX}{blueprint_id}/{path.lstrip('/')}"
        return self._talk_to_apstra_async(method, full, payload=payload)

    # ---------------- design tags ----------------

    def get_all_tags(self) -> List[Dict[str, Any]]:
        return _items(self._talk_to_apstra("GET", API_URL_DESIGN_TAGS), API_URL_DESIGN_TAGS)

    def list_tag_ids(self) -> List[str]:
        return [str(tag["id"]) for tag in self.get_all_tags()]

    def get_tag(self, tag_id: str) -> Dict[str, Any]:
        return self._talk_to_apstra("GET", f"{API_URL_DESIGN_TAGS}/{tag_id}")

    def get_tag_by_label(self, label: str) -> Dict[str, Any]:
        """Case-sensitive lookup by label (Apstra itself enforces case-insensitive uniqueness)."""
        for tag in self.get_all_tags():
            if tag.get("label") == label:
                return tag
        raise ApstraNotFoundError(f"tag with label '{label}' not found")

    def create_tag(self, label: str, description: str = "") -> str:
        data = self._talk_to_apstra("POST", API_URL_DESIGN_TAGS, payload={"label": label, "description": description})
        tag_id = data.get("id") if isinstance(data, dict) else None
        if not tag_id:
            raise ApstraProtocolError(f"create tag '{label}' response carried no id")
        return str(tag_id)

    def update_tag(self, tag_id: str, label: str, description: str = "") -> None:
        """Label is required but cannot change; effectively this updates the description."""
        self._talk_to_apstra("PUT", f"{API_URL_DESIGN_TAGS}/{tag_id}", payload={"label": label, "description": description})

    def delete_tag(self, tag_id: str) -> None:
        self._talk_to_apstra("DELETE", f"{API_URL_DESIGN_TAGS}/{tag_id}")


def _items(data: Any, where: str) -> List[Dict[str, Any]]:
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise ApstraProtocolError(f"'{where}' response has no 'items' list")
    return items
