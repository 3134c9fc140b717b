"""
Transports for the TrueNAS middleware API.

Two transports are available:

* :class:`WebSocketTransport` - persistent JSON-RPC 2.0 connection to
  ``/api/current``, authenticated once with ``auth.login_with_api_key``.
* :class:`RestTransport` - stateless requests to ``/api/v2.0`` with a
  bearer token. Logical method names (``iscsi.extent.create``) are routed
  to REST paths (``POST /iscsi/extent``).

Both raise the typed errors from :mod:`truenas_block.exceptions`.
"""

import itertools
import json
import re
import ssl
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
import websocket
from oslo_log import log as logging
from requests.adapters import HTTPAdapter

from truenas_block.exceptions import (
    TrueNASAPIConnectionError,
    TrueNASAPIError,
    TrueNASAPITimeout,
    TrueNASAuthError,
    TrueNASResourceAlreadyExists,
    TrueNASResourceBusy,
    TrueNASResourceNotFound,
    TrueNASTransientError,
    TrueNASUnsupportedOperation,
)

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
PING_IDLE_SECONDS = 10

_NOT_FOUND_RE = re.compile(r"does not exist|enoent|instancenotfound|not found", re.IGNORECASE)
_EXISTS_RE = re.compile(r"already exists|eexist|already in use by", re.IGNORECASE)
_BUSY_RE = re.compile(r"\bin use\b|\bbusy\b|ebusy", re.IGNORECASE)
_AUTH_RE = re.compile(r"not authenticated|authentication.*failed|invalid.*api.*key|eacces", re.IGNORECASE)
_TRANSIENT_RE = re.compile(
    r"timeout|timed out|connection (refused|reset)|temporary failure|service unavailable|rate limit",
    re.IGNORECASE,
)


def classify_error(
    message: str,
    status_code: Optional[int] = None,
    response_data: Any = None,
    method: Optional[str] = None,
) -> TrueNASAPIError:
    """Map an API failure to the most specific exception type."""
    kwargs = {"status_code": status_code, "response_data": response_data, "method": method}
    if status_code in (401, 403) or _AUTH_RE.search(message):
        return TrueNASAuthError(message, **kwargs)
    if status_code == 404 or _NOT_FOUND_RE.search(message):
        return TrueNASResourceNotFound(message, **kwargs)
    if status_code == 409 or _EXISTS_RE.search(message):
        return TrueNASResourceAlreadyExists(message, **kwargs)
    if _BUSY_RE.search(message):
        return TrueNASResourceBusy(message, **kwargs)
    if status_code in (429, 502, 503, 504) or _TRANSIENT_RE.search(message):
        return TrueNASTransientError(message, **kwargs)
    return TrueNASAPIError(message, **kwargs)


def _default_port(scheme: str, port: Optional[int]) -> int:
    if port:
        return int(port)
    return 443 if scheme in ("https", "wss") else 80


def _format_host(host: str) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


# REST routing

_REST_RESOURCES = {
    "pool.dataset": "/pool/dataset",
    "zfs.snapshot": "/zfs/snapshot",
    "iscsi.extent": "/iscsi/extent",
    "iscsi.targetextent": "/iscsi/targetextent",
    "iscsi.target": "/iscsi/target",
    "iscsi.global": "/iscsi/global",
    "service": "/service",
    "core": "/core",
}

_FILTER_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "^": lambda a, b: isinstance(a, str) and a.startswith(b),
    "$": lambda a, b: isinstance(a, str) and a.endswith(b),
    "in": lambda a, b: a in b,
    "nin": lambda a, b: a not in b,
}


def apply_filters(items: List[Dict[str, Any]], filters: Optional[List[List[Any]]]) -> List[Dict[str, Any]]:
    """Apply middleware-style query filters (``[["id", "^", "tank/"]]``) locally."""
    if not filters:
        return list(items)
    result = []
    for item in items:
        matched = True
        for field_name, op, value in filters:
            compare = _FILTER_OPS.get(op)
            if compare is None:
                raise TrueNASUnsupportedOperation(f"Unsupported filter operator '{op}'")
            if not compare(item.get(field_name), value):
                matched = False
                break
        if matched:
            result.append(item)
    return result


def _encode_id(value: Any) -> str:
    return quote(str(value), safe="")


class RestTransport:
    """Stateless REST v2.0 transport."""

    name = "rest"

    def __init__(
        self,
        host: str,
        api_key: str,
        scheme: str = "https",
        port: Optional[int] = None,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        http_scheme = "https" if scheme in ("https", "wss") else "http"
        self.base_url = f"{http_scheme}://{_format_host(host)}:{_default_port(http_scheme, port)}/api/v2.0"
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        # Create session with connection pooling
        self.session = requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {api_key}"})
        adapter = HTTPAdapter(pool_connections=4, pool_maxsize=16)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def route(self, method: str, params: List[Any]) -> Tuple[str, str, Any, Optional[List[List[Any]]]]:
        """
        Translate a logical method into a REST request.

        Returns:
            Tuple of (HTTP verb, path, JSON body, filters applied locally)

        Raises:
            TrueNASUnsupportedOperation: Method has no REST equivalent
        """
        resource, _, op = method.rpartition(".")
        base = _REST_RESOURCES.get(resource)
        if base is None:
            raise TrueNASUnsupportedOperation(
                f"REST API not supported for {method}; use api_transport=ws",
                method=method,
            )
        params = list(params or [])

        if resource == "core":
            if op == "ping":
                return "GET", "/core/ping", None, None
            if op == "get_jobs":
                return "GET", "/core/get_jobs", None, params[0] if params else None
        elif op == "query":
            return "GET", base, None, params[0] if params else None
        elif op == "config":
            return "GET", base, None, None
        elif op == "get_instance":
            return "GET", f"{base}/id/{_encode_id(params[0])}", None, None
        elif op == "create":
            return "POST", base, params[0] if params else {}, None
        elif op == "clone":
            return "POST", f"{base}/clone", params[0] if params else {}, None
        elif op == "update":
            return "PUT", f"{base}/id/{_encode_id(params[0])}", params[1] if len(params) > 1 else {}, None
        elif op == "delete":
            body = params[1] if len(params) > 1 else None
            return "DELETE", f"{base}/id/{_encode_id(params[0])}", body, None

        raise TrueNASUnsupportedOperation(
            f"REST API not supported for {method}; use api_transport=ws",
            method=method,
        )

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Execute a logical API method over REST.

        Raises:
            TrueNASAPIConnectionError: Connection failed
            TrueNASAPITimeout: Request timed out
            TrueNASAPIError: API returned error
        """
        verb, path, body, filters = self.route(method, params or [])
        url = self.base_url + path
        LOG.debug("REST %s %s", verb, path)

        try:
            response = self.session.request(
                method=verb,
                url=url,
                json=body,
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise TrueNASAPITimeout(f"API request {method} timed out after {self.timeout}s: {e}", method=method)
        except requests.exceptions.ConnectionError as e:
            raise TrueNASAPIConnectionError(f"Failed to connect to TrueNAS API: {e}", method=method)
        except requests.exceptions.RequestException as e:
            raise TrueNASAPIError(f"API request {method} failed: {e}", method=method)

        if response.status_code >= 400:
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    error_msg = error_data.get("message") or error_data.get("detail") or response.text
                else:
                    error_msg = response.text
            except ValueError:
                error_msg = response.text
                error_data = None
            raise classify_error(
                f"API request {method} failed ({response.status_code}): {error_msg}",
                status_code=response.status_code,
                response_data=error_data,
                method=method,
            )

        if response.status_code == 204 or not response.text:
            result = None
        else:
            try:
                result = response.json()
            except ValueError as e:
                raise TrueNASAPIError(f"Invalid JSON in response to {method}: {e}", method=method)

        if filters is not None and isinstance(result, list):
            result = apply_filters(result, filters)
        return result

    def close(self):
        """Close the HTTP session."""
        if self.session:
            self.session.close()


class WebSocketTransport:
    """Persistent JSON-RPC 2.0 WebSocket transport.

    The connection is opened lazily, reused across calls and checked with
    ``core.ping`` after it has been idle. A connection-level failure drops
    the socket so the next call reconnects.
    """

    name = "ws"

    def __init__(
        self,
        host: str,
        api_key: str,
        scheme: str = "wss",
        port: Optional[int] = None,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        ping_idle: float = PING_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        ws_scheme = "wss" if scheme in ("https", "wss") else "ws"
        self.url = f"{ws_scheme}://{_format_host(host)}:{_default_port(ws_scheme, port)}/api/current"
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.ping_idle = ping_idle
        self._api_key = api_key
        self._clock = clock
        self._ws = None
        self._last_used = 0.0
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _sslopt(self) -> Dict[str, Any]:
        if self.verify_ssl:
            return {}
        return {"cert_reqs": ssl.CERT_NONE, "check_hostname": False}

    def _connect(self) -> None:
        LOG.debug("Opening WebSocket connection to %s", self.url)
        try:
            self._ws = websocket.create_connection(self.url, timeout=self.timeout, sslopt=self._sslopt())
        except websocket.WebSocketTimeoutException as e:
            raise TrueNASAPITimeout(f"Timed out connecting to {self.url}: {e}")
        except (websocket.WebSocketException, OSError) as e:
            raise TrueNASAPIConnectionError(f"Failed to connect to TrueNAS API at {self.url}: {e}")

        try:
            authenticated = self._rpc("auth.login_with_api_key", [self._api_key])
        except TrueNASAPIError:
            self._drop()
            raise
        if authenticated is not True:
            self._drop()
            raise TrueNASAuthError("TrueNAS API key authentication failed")
        self._last_used = self._clock()

    def _drop(self) -> None:
        if self._ws is not None:
            try:
                self._ws.close()
            except (websocket.WebSocketException, OSError) as e:
                LOG.debug("Error closing WebSocket: %s", e)
        self._ws = None

    def _rpc(self, method: str, params: List[Any]) -> Any:
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            self._ws.send(json.dumps(payload))
            while True:
                message = json.loads(self._ws.recv())
                if message.get("id") != request_id:
                    # notifications and stale replies
                    continue
                break
        except websocket.WebSocketTimeoutException as e:
            self._drop()
            raise TrueNASAPITimeout(f"API call {method} timed out after {self.timeout}s: {e}", method=method)
        except (websocket.WebSocketException, OSError) as e:
            self._drop()
            raise TrueNASAPIConnectionError(f"WebSocket connection failed during {method}: {e}", method=method)
        except ValueError as e:
            self._drop()
            raise TrueNASAPIError(f"Invalid JSON in response to {method}: {e}", method=method)

        error = message.get("error")
        if error:
            data = error.get("data") or {}
            reason = data.get("reason") or error.get("reason") or error.get("message") or str(error)
            errname = data.get("errname") or ""
            text = f"{reason} ({errname})" if errname and errname not in reason else reason
            raise classify_error(f"API call {method} failed: {text}", response_data=error, method=method)
        return message.get("result")

    def _ensure_connected(self) -> None:
        if self._ws is None:
            self._connect()
            return
        if self._clock() - self._last_used < self.ping_idle:
            return
        try:
            self._rpc("core.ping", [])
        except (TrueNASAPIConnectionError, TrueNASAPITimeout) as e:
            LOG.info("Cached WebSocket connection is stale (%s); reconnecting", e)
            self._drop()
            self._connect()

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Execute a JSON-RPC method over the persistent connection."""
        with self._lock:
            self._ensure_connected()
            LOG.debug("WS call %s", method)
            result = self._rpc(method, list(params or []))
            self._last_used = self._clock()
            return result

    def close(self):
        """Close the WebSocket connection."""
        with self._lock:
            self._drop()
