"""API client for the TrueNAS middleware."""

import time
from typing import Any, Callable, Dict, List, Optional

from oslo_log import log as logging

from truenas_block.client.cache import ResponseCache
from truenas_block.client.retry import retry_with_backoff
from truenas_block.client.transports import RestTransport, WebSocketTransport, classify_error
from truenas_block.configuration import API_TRANSPORT_REST, TrueNASBlockConfig
from truenas_block.exceptions import (
    TrueNASAPIError,
    TrueNASJobFailed,
    TrueNASResourceNotFound,
    TrueNASUnsupportedOperation,
)
from truenas_block.lib.normalize import decode_timestamp
from truenas_block.models import BulkResult, DatasetRecord, SnapshotInfo

LOG = logging.getLogger(__name__)

JOB_POLL_INTERVAL = 1.0
JOB_TIMEOUT_DEFAULT = 60
JOB_TIMEOUT_CREATE = 30
JOB_TIMEOUT_DATASET_DELETE = 20
JOB_TIMEOUT_SNAPSHOT_DELETE = 15

_READ_OPS = ("query", "get_instance", "config", "ping", "get_jobs")
_WS_ONLY = ("zfs.snapshot.rollback",)


def _is_mutation(method: str) -> bool:
    return method.rsplit(".", 1)[-1] not in _READ_OPS


class TrueNASClient:
    """Client for the TrueNAS middleware API.

    Owns the transport, the response cache and the retry policy. One client
    per appliance is expected to be shared by every caller in the process.
    """

    def __init__(
        self,
        config: TrueNASBlockConfig,
        transport=None,
        cache: Optional[ResponseCache] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.transport = transport or self._build_transport(config.api_transport)
        self.cache = cache if cache is not None else ResponseCache(ttl=config.cache_ttl)
        self._ws_transport = self.transport if self.transport.name == "ws" else None
        self._sleep = sleep
        self._clock = clock

    def _build_transport(self, kind: str):
        cls = RestTransport if kind == API_TRANSPORT_REST else WebSocketTransport
        return cls(
            host=self.config.api_host,
            api_key=self.config.api_key,
            scheme=self.config.api_scheme,
            port=self.config.api_port,
            verify_ssl=not self.config.api_insecure,
            timeout=self.config.api_timeout,
        )

    def _transport_for(self, method: str, force_ws: bool):
        if not (force_ws or method in _WS_ONLY) or self.transport.name == "ws":
            return self.transport
        if self._ws_transport is None:
            LOG.debug("Opening WebSocket transport for %s", method)
            self._ws_transport = self._build_transport("ws")
        return self._ws_transport

    @property
    def bulk_supported(self) -> bool:
        return self.config.enable_bulk_operations and self.transport.name == "ws"

    # Core call path

    def call(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        retry: bool = True,
        force_ws: bool = False,
    ) -> Any:
        """
        Execute one logical API method.

        Args:
            method: Middleware method (e.g., pool.dataset.create)
            params: Positional parameters
            retry: Retry transient failures with backoff
            force_ws: Use the WebSocket transport even when REST is configured

        Returns:
            Decoded result

        Raises:
            TrueNASAPIError: API failure (subclass gives the classification)
        """
        params = list(params or [])
        transport = self._transport_for(method, force_ws)
        max_retries = self.config.api_retry_max if retry else 0

        def invoke():
            return retry_with_backoff(
                lambda: transport.call(method, params),
                method,
                max_retries=max_retries,
                initial_delay=self.config.api_retry_delay,
                sleep=self._sleep,
            )

        if not _is_mutation(method):
            return self.cache.fetch(method, params, invoke)
        try:
            return invoke()
        finally:
            self.cache.invalidate(method)

    def wait_for_job(self, job_id: int, timeout: float = JOB_TIMEOUT_DEFAULT, method: str = "job") -> Any:
        """
        Poll an appliance job until it finishes.

        Returns:
            The job result

        Raises:
            TrueNASJobFailed: Job failed or did not finish within ``timeout``
            TrueNASAPIError: Job failed with a classifiable error
        """
        deadline = self._clock() + timeout
        while True:
            jobs = self.call("core.get_jobs", [[["id", "=", job_id]]])
            job = jobs[0] if jobs else {}
            state = job.get("state")
            if state == "SUCCESS":
                return job.get("result")
            if state in ("FAILED", "ABORTED"):
                reason = job.get("error") or job.get("exc_info") or state
                message = f"Job {job_id} ({method}) failed: {reason}"
                error = classify_error(message, response_data=job, method=method)
                if type(error) is TrueNASAPIError:
                    raise TrueNASJobFailed(message, job_id=job_id, response_data=job, method=method)
                raise error
            if self._clock() >= deadline:
                raise TrueNASJobFailed(
                    f"Timed out waiting for job {job_id} ({method}) after {timeout}s (state={state})",
                    job_id=job_id,
                    method=method,
                )
            self._sleep(JOB_POLL_INTERVAL)

    def call_job(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        timeout: float = JOB_TIMEOUT_DEFAULT,
        **kwargs,
    ) -> Any:
        """Call a method and wait for its job if it returns a job id."""
        result = self.call(method, params, **kwargs)
        if isinstance(result, int) and not isinstance(result, bool):
            LOG.debug("%s started job %d", method, result)
            return self.wait_for_job(result, timeout=timeout, method=method)
        return result

    def bulk(self, method: str, params_list: List[List[Any]], description: Optional[str] = None) -> List[BulkResult]:
        """
        Run many calls of one method through ``core.bulk``.

        Returns:
            One :class:`BulkResult` per item, in order

        Raises:
            TrueNASUnsupportedOperation: Bulk calls are disabled or need WebSocket
        """
        if not self.bulk_supported:
            raise TrueNASUnsupportedOperation("core.bulk requires api_transport=ws and enable_bulk_operations")
        description = description or f"{method} x{len(params_list)}"
        try:
            result = self.call_job(
                "core.bulk",
                [method, params_list, description],
                timeout=JOB_TIMEOUT_DEFAULT + 5 * len(params_list),
            )
        finally:
            self.cache.invalidate(method)

        items = []
        for entry in result or []:
            error = entry.get("error")
            items.append(BulkResult(result=entry.get("result"), error=str(error) if error else None))
        failed = sum(1 for item in items if not item.ok)
        if failed:
            LOG.warning("Bulk %s: %d of %d items failed", description, failed, len(items))
        return items

    # Service helpers

    def ping(self, retry: bool = True) -> bool:
        result = self.call("core.ping", retry=retry)
        return result in ("pong", True) or bool(result)

    def service_state(self, service: str, retry: bool = True) -> Optional[str]:
        """Return the state of a service (``RUNNING``/``STOPPED``), None if unknown."""
        services = self.call("service.query", [[["service", "=", service]]], retry=retry)
        if not services:
            return None
        return services[0].get("state")

    # Datasets

    def get_dataset(self, full_name: str, retry: bool = True) -> Optional[DatasetRecord]:
        try:
            data = self.call("pool.dataset.get_instance", [full_name], retry=retry)
        except TrueNASResourceNotFound:
            return None
        return DatasetRecord.from_api(data) if data else None

    def query_datasets(self, parent: str) -> List[DatasetRecord]:
        """Return every dataset below ``parent`` (one level or deeper)."""
        data = self.call("pool.dataset.query", [[["id", "^", f"{parent}/"]]])
        return [DatasetRecord.from_api(item) for item in data or []]

    def create_zvol(
        self, full_name: str, volsize: int, blocksize: str, sparse: bool, retry: bool = True
    ) -> Dict[str, Any]:
        payload = {
            "name": full_name,
            "type": "VOLUME",
            "volsize": volsize,
            "sparse": sparse,
        }
        if blocksize:
            payload["volblocksize"] = blocksize
        return self.call_job("pool.dataset.create", [payload], timeout=JOB_TIMEOUT_CREATE, retry=retry)

    def update_volsize(self, full_name: str, volsize: int) -> Any:
        return self.call_job("pool.dataset.update", [full_name, {"volsize": volsize}])

    def delete_dataset(self, full_name: str, recursive: bool = True, force: bool = True) -> Any:
        return self.call_job(
            "pool.dataset.delete",
            [full_name, {"recursive": recursive, "force": force}],
            timeout=JOB_TIMEOUT_DATASET_DELETE,
        )

    # Snapshots

    def create_snapshot(self, full_name: str, snapshot: str) -> Any:
        return self.call_job(
            "zfs.snapshot.create",
            [{"dataset": full_name, "name": snapshot, "recursive": False}],
        )

    def delete_snapshot(self, full_name: str, snapshot: str) -> Any:
        return self.call_job(
            "zfs.snapshot.delete",
            [f"{full_name}@{snapshot}"],
            timeout=JOB_TIMEOUT_SNAPSHOT_DELETE,
        )

    def list_snapshots(self, full_name: str) -> List[SnapshotInfo]:
        data = self.call("zfs.snapshot.query", [[["dataset", "=", full_name]]])
        snapshots = []
        for item in data or []:
            name = item.get("name") or item.get("id") or ""
            dataset, _, snap = name.partition("@")
            if dataset != full_name or not snap:
                continue
            creation = decode_timestamp((item.get("properties") or {}).get("creation"))
            snapshots.append(SnapshotInfo(name=snap, ctime=creation or 0))
        return snapshots

    def clone_snapshot(self, full_name: str, snapshot: str, target: str) -> Any:
        return self.call_job(
            "zfs.snapshot.clone",
            [{"snapshot": f"{full_name}@{snapshot}", "dataset_dst": target}],
            timeout=JOB_TIMEOUT_CREATE,
        )

    def rollback_snapshot(self, full_name: str, snapshot: str, recursive: bool = False) -> Any:
        options = {"force": True}
        if recursive:
            options["recursive"] = True
        return self.call_job(
            "zfs.snapshot.rollback",
            [f"{full_name}@{snapshot}", options],
            force_ws=True,
        )

    # iSCSI

    def iscsi_global_config(self) -> Dict[str, Any]:
        return self.call("iscsi.global.config") or {}

    def query_targets(self) -> List[Dict[str, Any]]:
        return self.call("iscsi.target.query") or []

    def query_extents(self, filters: Optional[List[List[Any]]] = None) -> List[Dict[str, Any]]:
        return self.call("iscsi.extent.query", [filters] if filters else []) or []

    def create_extent(self, name: str, disk: str) -> Dict[str, Any]:
        return self.call(
            "iscsi.extent.create",
            [{"name": name, "type": "DISK", "disk": disk, "insecure_tpc": True}],
        )

    def delete_extent(self, extent_id: int) -> Any:
        return self.call("iscsi.extent.delete", [extent_id])

    def query_targetextents(self, filters: Optional[List[List[Any]]] = None) -> List[Dict[str, Any]]:
        return self.call("iscsi.targetextent.query", [filters] if filters else []) or []

    def create_targetextent(self, target_id: int, extent_id: int, lunid: Optional[int] = None) -> Dict[str, Any]:
        payload = {"target": target_id, "extent": extent_id}
        if lunid is not None:
            payload["lunid"] = lunid
        return self.call("iscsi.targetextent.create", [payload])

    def delete_targetextent(self, mapping_id: int) -> Any:
        return self.call("iscsi.targetextent.delete", [mapping_id])

    # NVMe-oF

    def query_subsystems(self, nqn: str, retry: bool = True) -> List[Dict[str, Any]]:
        return self.call("nvmet.subsys.query", [[["subnqn", "=", nqn]]], retry=retry) or []

    def create_subsystem(self, name: str, nqn: str) -> Dict[str, Any]:
        return self.call("nvmet.subsys.create", [{"name": name, "subnqn": nqn, "allow_any_host": True}])

    def create_port(self, subsys_id: int, address: str, port: int) -> Dict[str, Any]:
        return self.call(
            "nvmet.port.create",
            [{"subsys_id": subsys_id, "trtype": "TCP", "traddr": address, "trsvcid": str(port)}],
        )

    def query_namespaces(self, filters: Optional[List[List[Any]]] = None) -> List[Dict[str, Any]]:
        return self.call("nvmet.namespace.query", [filters] if filters else []) or []

    def create_namespace(self, subsys_id: int, device_path: str, block_size: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "device_type": "ZVOL",
            "device_path": device_path,
            "subsys_id": subsys_id,
            "enabled": True,
        }
        if block_size:
            payload["block_size"] = block_size
        return self.call("nvmet.namespace.create", [payload])

    def delete_namespace(self, namespace_id: int) -> Any:
        return self.call("nvmet.namespace.delete", [namespace_id])

    def close(self):
        """Close every transport."""
        self.transport.close()
        if self._ws_transport is not None and self._ws_transport is not self.transport:
            self._ws_transport.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
