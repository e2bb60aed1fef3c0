from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from jobservice.src.config import CLASSNAME_KEY, ConfigStore
from jobservice.src.kube import KubeClients, ListFunction, list_function
from jobservice.src.metrics import METRICS

DEFAULT_REQUEUE_WAIT = 2.0
CLASS_LABEL = "goharbor.io/operator-controller-class"


@dataclass(frozen=True)
class ResourceKind:
    group: str
    version: str
    kind: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return self.kind


JOBSERVICE = ResourceKind("goharbor.io", "v1alpha2", "JobService", "jobservices")
DEPLOYMENT = ResourceKind("apps", "v1", "Deployment", "deployments")
CONFIG_MAP = ResourceKind("", "v1", "ConfigMap", "configmaps")
SECRET = ResourceKind("", "v1", "Secret", "secrets")
SERVICE = ResourceKind("", "v1", "Service", "services")
NETWORK_POLICY = ResourceKind("networking.k8s.io", "v1", "NetworkPolicy", "networkpolicies")

OWNED_KINDS = frozenset({DEPLOYMENT, CONFIG_MAP, SECRET, SERVICE, NETWORK_POLICY})


def _field(obj: Any, attr: str, key: str) -> Any:
    """Read a field from a typed client model (``attr``) or a raw dict (``key``)."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, attr, None)


def object_metadata(obj: Any) -> Any:
    return _field(obj, "metadata", "metadata")


def object_labels(obj: Any) -> dict[str, str]:
    labels = _field(object_metadata(obj), "labels", "labels")
    return labels if isinstance(labels, dict) else {}


@dataclass(frozen=True)
class ClassFilter:
    """Drops events for objects that belong to another controller class.

    An object is accepted when its class label equals ``class_name``.  With an
    empty class name only unlabelled objects are accepted.
    """

    class_name: str
    label: str = CLASS_LABEL

    def accepts(self, obj: Any) -> bool:
        return object_labels(obj).get(self.label, "") == self.class_name


@dataclass(frozen=True)
class WatchSpecification:
    primary_kind: ResourceKind
    owned_kinds: frozenset[ResourceKind]
    class_filter: ClassFilter
    max_concurrent_reconciles: int

    def __post_init__(self) -> None:
        if self.max_concurrent_reconciles < 1:
            raise ValueError(
                f"max_concurrent_reconciles must be >= 1, got: {self.max_concurrent_reconciles}"
            )

    @property
    def kinds(self) -> list[ResourceKind]:
        return [self.primary_kind, *sorted(self.owned_kinds, key=lambda k: k.kind)]


@dataclass(frozen=True, order=True)
class ReconcileRequest:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def request_for_object(
    spec: WatchSpecification, kind: ResourceKind, obj: Any
) -> ReconcileRequest | None:
    """Map a watched object to the primary instance that must be reconciled.

    Primary objects map to themselves.  Owned objects map to their controller
    owner reference when that owner is of the primary kind; objects with no
    such owner do not trigger anything.
    """
    metadata = object_metadata(obj)
    namespace = _field(metadata, "namespace", "namespace") or ""
    if kind == spec.primary_kind:
        name = _field(metadata, "name", "name")
        return ReconcileRequest(namespace, name) if name else None

    owners = _field(metadata, "owner_references", "ownerReferences") or []
    for owner in owners:
        if not _field(owner, "controller", "controller"):
            continue
        if _field(owner, "kind", "kind") != spec.primary_kind.kind:
            continue
        api_version = _field(owner, "api_version", "apiVersion") or ""
        if api_version.partition("/")[0] != spec.primary_kind.group:
            continue
        owner_name = _field(owner, "name", "name")
        if owner_name:
            return ReconcileRequest(namespace, owner_name)
    return None


class ReconciliationEngine(Protocol):
    def setup_watches(self, spec: WatchSpecification) -> None: ...

    def resolve_class_name(self) -> str: ...

    def normalize_probe_name(self, component: str) -> str: ...


class WorkQueue:
    """Deduplicating FIFO of reconcile requests.

    A request is queued at most once, and a request that is being processed
    is never handed to a second worker: re-adding it while in flight marks it
    dirty so it is queued again when the current worker calls ``done``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[ReconcileRequest] = deque()
        self._dirty: set[ReconcileRequest] = set()
        self._processing: set[ReconcileRequest] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.set(len(self._queue))

    def add(self, request: ReconcileRequest) -> None:
        with self._cond:
            if self._shutting_down or request in self._dirty:
                return
            self._dirty.add(request)
            if request in self._processing:
                return
            self._queue.append(request)
            self._update_depth()
            self._cond.notify()

    def add_after(self, request: ReconcileRequest, delay: float) -> None:
        if delay <= 0:
            self.add(request)
            return
        timer = threading.Timer(delay, self.add, args=(request,))
        timer.daemon = True
        timer.start()

    def get(self, timeout: float | None = None) -> ReconcileRequest | None:
        """Return the next request, or ``None`` on shutdown or timeout."""
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout)
            if not self._queue:
                return None
            request = self._queue.popleft()
            self._processing.add(request)
            self._dirty.discard(request)
            self._update_depth()
            return request

    def done(self, request: ReconcileRequest) -> None:
        with self._cond:
            self._processing.discard(request)
            if request in self._dirty and not self._shutting_down:
                self._queue.append(request)
                self._update_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._update_depth()
            self._cond.notify_all()


Reconcile = Callable[[ReconcileRequest], None]


class KubeEngine:
    """Watches the primary and owned kinds and dispatches reconcile requests.

    Each kind gets its own list-then-watch thread.  Events pass the class
    filter first, are then mapped to a :class:`ReconcileRequest` and pushed
    into a :class:`WorkQueue` drained by ``max_concurrent_reconciles``
    worker threads.  A reconcile that raises is retried after
    ``requeue_wait`` seconds.
    """

    def __init__(
        self,
        clients: KubeClients,
        store: ConfigStore,
        reconcile: Reconcile,
        *,
        controller: str = "jobservice",
        requeue_wait: float = DEFAULT_REQUEUE_WAIT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.store = store
        self.reconcile = reconcile
        self.controller = controller
        self.requeue_wait = requeue_wait
        self.logger = logger or logging.getLogger(__name__)

        self.queue = WorkQueue()
        self.spec: WatchSpecification | None = None
        self._class_name: str | None = None
        self._list_functions: dict[ResourceKind, ListFunction] = {}
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()

    def resolve_class_name(self) -> str:
        if self._class_name is None:
            self._class_name = self.store.get_string(CLASSNAME_KEY, "")
        return self._class_name

    def normalize_probe_name(self, component: str) -> str:
        """Scope a probe name to this controller and class.

        Several controller deployments with different classes may share a
        probe server; the class keeps their check names apart.
        """
        parts = [self.controller]
        if self._class_name:
            parts.append(self._class_name)
        parts.append(component)
        return "-".join(parts)

    def setup_watches(self, spec: WatchSpecification) -> None:
        if self.spec is not None:
            raise RuntimeError("watches are already set up")

        list_functions: dict[ResourceKind, ListFunction] = {}
        for kind in spec.kinds:
            fn = list_function(self.clients, kind.group, kind.version, kind.plural)
            if fn is None:
                raise ValueError(f"no API client can list {kind.api_version} {kind.plural}")
            list_functions[kind] = fn

        self._list_functions = list_functions
        self.spec = spec
        self.logger.info(
            "Watches registered for %s owning %s (class=%r, workers=%d)",
            spec.primary_kind,
            ", ".join(k.kind for k in spec.kinds[1:]),
            spec.class_filter.class_name,
            spec.max_concurrent_reconciles,
        )

    def handle_event(
        self, kind: ResourceKind, event_type: str, obj: Any
    ) -> ReconcileRequest | None:
        """Filter one watch event and enqueue the request it maps to, if any."""
        if self.spec is None:
            raise RuntimeError("setup_watches must be called before events are handled")
        if not self.spec.class_filter.accepts(obj):
            METRICS.filtered_events_total.labels(kind=kind.kind).inc()
            return None

        request = request_for_object(self.spec, kind, obj)
        if request is None:
            return None
        self.logger.debug("%s %s event queues %s", kind, event_type, request)
        self.queue.add(request)
        return request

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued request.  Returns ``False`` when the queue is shut down or empty."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False
        started = time.monotonic()
        try:
            self.reconcile(request)
        except Exception:
            self.logger.exception(
                "Reconcile of %s failed; requeueing in %.1fs", request, self.requeue_wait
            )
            METRICS.reconcile_total.labels(result="error").inc()
            self.queue.add_after(request, self.requeue_wait)
        else:
            METRICS.reconcile_total.labels(result="success").inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(request)
        return True

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watchers_lock:
            watchers = list(self._active_watchers)
        for active in watchers:
            active.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watch and worker threads until *shutdown_event* is set or a watch dies fatally."""
        if self.spec is None:
            raise RuntimeError("setup_watches must be called before run")
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        workers = [
            threading.Thread(target=self._work, name=f"{self.controller}-worker-{i}", daemon=True)
            for i in range(self.spec.max_concurrent_reconciles)
        ]
        watchers = [
            threading.Thread(
                target=self._watch_kind,
                args=(kind, self._list_functions[kind], stop),
                name=f"{self.controller}-watch-{kind.plural}",
                daemon=True,
            )
            for kind in self.spec.kinds
        ]
        for thread in (*workers, *watchers):
            thread.start()

        while not self._should_stop(stop):
            if not all(thread.is_alive() for thread in watchers):
                self.logger.error("A watch loop terminated; stopping controller")
                break
            stop.wait(timeout=1)

        self.request_stop()
        self.queue.shutdown()
        self._join(watchers + workers)
        self.logger.info("Controller %s stopped", self.controller)

    @staticmethod
    def _join(threads: Iterable[threading.Thread], timeout: float = 10) -> None:
        for thread in threads:
            thread.join(timeout=timeout)

    def _work(self) -> None:
        while self.process_next():
            pass

    def _list(self, kind: ResourceKind, list_fn: ListFunction) -> str | None:
        """List every object of *kind*, queue them, and return the list resourceVersion."""
        listing = list_fn()
        items = _field(listing, "items", "items") or []
        for obj in items:
            self.handle_event(kind, "ADDED", obj)
        metadata = _field(listing, "metadata", "metadata")
        return _field(metadata, "resource_version", "resourceVersion")

    def _watch_kind(self, kind: ResourceKind, list_fn: ListFunction, stop: threading.Event) -> None:
        """List-then-watch loop for a single kind.

        Initial list failures are retried with jittered exponential backoff.
        A ``410 Gone`` re-lists and resumes from the fresh resourceVersion,
        other transient errors back off up to 30 s.  ``401`` / ``403`` are
        treated as RBAC misconfiguration and end the loop.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list(kind, list_fn)
                self.logger.info("Watching %s from resourceVersion %s", kind, resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        kind,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list of %s failed", kind)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error listing %s", kind)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()

            stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watchers_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind.kind).inc()
                stream_count += 1
                for event in watcher.stream(
                    list_fn, resource_version=resource_version, timeout_seconds=30
                ):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        code = _field(obj, "code", "code")
                        message = _field(obj, "message", "message")
                        raise ApiException(status=code or 500, reason=str(message))
                    version = _field(object_metadata(obj), "resource_version", "resourceVersion")
                    if version:
                        resource_version = version
                    self.handle_event(kind, event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", kind)
                    try:
                        resource_version = self._list(kind, list_fn)
                    except ApiException:
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                        resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                    return
                self.logger.exception("Kubernetes API watch error for %s", kind)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", kind)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watchers_lock:
                    self._active_watchers.discard(watcher)
