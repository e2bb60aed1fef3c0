from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from jobservice.src.config import CLASSNAME_KEY, ENV_PRIORITY, ConfigStore, Item
from jobservice.src.engine import (
    CLASS_LABEL,
    CONFIG_MAP,
    DEPLOYMENT,
    JOBSERVICE,
    OWNED_KINDS,
    ClassFilter,
    KubeEngine,
    ReconcileRequest,
    ResourceKind,
    WatchSpecification,
    WorkQueue,
    request_for_object,
)
from jobservice.src.kube import KubeClients


def make_owned(
    name: str = "harbor-jobservice",
    namespace: str = "harbor",
    class_label: str | None = "tenant-a",
    owner: str | None = "harbor",
    owner_kind: str = "JobService",
    owner_api_version: str = "goharbor.io/v1alpha2",
    controller: bool = True,
) -> SimpleNamespace:
    labels = {CLASS_LABEL: class_label} if class_label is not None else {}
    owners = []
    if owner is not None:
        owners.append(
            SimpleNamespace(
                name=owner,
                kind=owner_kind,
                api_version=owner_api_version,
                controller=controller,
            )
        )
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            labels=labels,
            owner_references=owners,
            resource_version="7",
        )
    )


def make_jobservice(
    name: str = "harbor", namespace: str = "harbor", class_label: str | None = "tenant-a"
) -> dict[str, Any]:
    labels = {CLASS_LABEL: class_label} if class_label is not None else {}
    return {
        "apiVersion": "goharbor.io/v1alpha2",
        "kind": "JobService",
        "metadata": {"name": name, "namespace": namespace, "labels": labels, "resourceVersion": "3"},
    }


def make_spec(class_name: str = "tenant-a", workers: int = 2) -> WatchSpecification:
    return WatchSpecification(
        primary_kind=JOBSERVICE,
        owned_kinds=OWNED_KINDS,
        class_filter=ClassFilter(class_name=class_name),
        max_concurrent_reconciles=workers,
    )


def make_clients() -> KubeClients:
    listing = SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1"))
    core = MagicMock()
    apps = MagicMock()
    networking = MagicMock()
    custom = MagicMock()
    for api in (core, apps, networking):
        api.list_config_map_for_all_namespaces.return_value = listing
        api.list_secret_for_all_namespaces.return_value = listing
        api.list_service_for_all_namespaces.return_value = listing
        api.list_deployment_for_all_namespaces.return_value = listing
        api.list_network_policy_for_all_namespaces.return_value = listing
    custom.list_cluster_custom_object.return_value = {"items": [], "metadata": {"resourceVersion": "1"}}
    return KubeClients(core=core, apps=apps, networking=networking, custom=custom)


def make_engine(
    reconcile: Any = None, store: ConfigStore | None = None, spec: WatchSpecification | None = None
) -> KubeEngine:
    engine = KubeEngine(
        make_clients(),
        store or ConfigStore(),
        reconcile or (lambda request: None),
        requeue_wait=0.05,
    )
    if spec is not None:
        engine.setup_watches(spec)
    return engine


class FakeWatch:
    """Stand-in for ``kubernetes.watch.Watch`` replaying a fixed list of events."""

    def __init__(self, events: list[dict[str, Any]], stop: threading.Event) -> None:
        self.events = events
        self.stop_event = stop
        self.kwargs: dict[str, Any] = {}
        self.stopped = False

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self.kwargs = kwargs
        yield from self.events
        self.stop_event.set()

    def stop(self) -> None:
        self.stopped = True


# ---------------------------------------------------------------------------
# Types and mapping
# ---------------------------------------------------------------------------


def test_resource_kind_api_version() -> None:
    assert JOBSERVICE.api_version == "goharbor.io/v1alpha2"
    assert CONFIG_MAP.api_version == "v1"
    assert str(DEPLOYMENT) == "Deployment"


def test_owned_kinds_cover_the_jobservice_workload() -> None:
    assert {kind.kind for kind in OWNED_KINDS} == {
        "Deployment",
        "ConfigMap",
        "Secret",
        "Service",
        "NetworkPolicy",
    }


def test_watch_specification_is_immutable_and_validated() -> None:
    spec = make_spec(workers=4)

    with pytest.raises(AttributeError):
        spec.max_concurrent_reconciles = 8  # type: ignore[misc]
    with pytest.raises(ValueError, match=">= 1"):
        make_spec(workers=0)
    assert spec.kinds[0] == JOBSERVICE
    assert set(spec.kinds[1:]) == set(OWNED_KINDS)


def test_class_filter_matches_label() -> None:
    class_filter = ClassFilter(class_name="tenant-a")

    assert class_filter.accepts(make_owned(class_label="tenant-a"))
    assert not class_filter.accepts(make_owned(class_label="tenant-b"))
    assert not class_filter.accepts(make_owned(class_label=None))
    assert class_filter.accepts(make_jobservice(class_label="tenant-a"))


def test_empty_class_filter_accepts_only_unlabelled_objects() -> None:
    class_filter = ClassFilter(class_name="")

    assert class_filter.accepts(make_owned(class_label=None))
    assert not class_filter.accepts(make_owned(class_label="tenant-a"))


def test_primary_object_maps_to_itself() -> None:
    request = request_for_object(make_spec(), JOBSERVICE, make_jobservice(name="core"))

    assert request == ReconcileRequest("harbor", "core")


def test_owned_object_maps_to_controller_owner() -> None:
    request = request_for_object(make_spec(), DEPLOYMENT, make_owned(owner="harbor"))

    assert request == ReconcileRequest("harbor", "harbor")
    assert str(request) == "harbor/harbor"


def test_owned_object_maps_from_raw_dict_owner_references() -> None:
    obj = {
        "metadata": {
            "namespace": "harbor",
            "ownerReferences": [
                {"apiVersion": "goharbor.io/v1alpha2", "kind": "JobService", "name": "js", "controller": True}
            ],
        }
    }

    assert request_for_object(make_spec(), CONFIG_MAP, obj) == ReconcileRequest("harbor", "js")


@pytest.mark.parametrize(
    "obj",
    [
        make_owned(owner=None),
        make_owned(controller=False),
        make_owned(owner_kind="Core"),
        make_owned(owner_api_version="other.io/v1"),
    ],
)
def test_owned_object_without_jobservice_controller_is_ignored(obj: SimpleNamespace) -> None:
    assert request_for_object(make_spec(), DEPLOYMENT, obj) is None


# ---------------------------------------------------------------------------
# WorkQueue
# ---------------------------------------------------------------------------


def test_work_queue_deduplicates_pending_requests() -> None:
    queue = WorkQueue()
    request = ReconcileRequest("harbor", "a")

    queue.add(request)
    queue.add(request)

    assert len(queue) == 1


def test_work_queue_requeues_request_added_while_processing() -> None:
    queue = WorkQueue()
    request = ReconcileRequest("harbor", "a")
    queue.add(request)

    in_flight = queue.get(timeout=0)
    queue.add(request)

    assert in_flight == request
    assert len(queue) == 0
    queue.done(request)
    assert len(queue) == 1


def test_work_queue_get_times_out_and_unblocks_on_shutdown() -> None:
    queue = WorkQueue()
    assert queue.get(timeout=0.01) is None

    result: list[ReconcileRequest | None] = []
    waiter = threading.Thread(target=lambda: result.append(queue.get()))
    waiter.start()
    queue.shutdown()
    waiter.join(timeout=2)

    assert result == [None]
    queue.add(ReconcileRequest("harbor", "a"))
    assert len(queue) == 0


def test_work_queue_add_after_delays_request() -> None:
    queue = WorkQueue()
    queue.add_after(ReconcileRequest("harbor", "a"), 0.05)

    assert len(queue) == 0
    assert queue.get(timeout=2) == ReconcileRequest("harbor", "a")


# ---------------------------------------------------------------------------
# KubeEngine
# ---------------------------------------------------------------------------


def test_resolve_class_name_reads_store_and_scopes_probe_names() -> None:
    store = ConfigStore()
    store.set_source("env", [Item(CLASSNAME_KEY, "tenant-a", ENV_PRIORITY)])
    engine = make_engine(store=store)

    assert engine.normalize_probe_name("template") == "jobservice-template"
    assert engine.resolve_class_name() == "tenant-a"
    assert engine.normalize_probe_name("template") == "jobservice-tenant-a-template"


def test_resolve_class_name_defaults_to_empty() -> None:
    assert make_engine().resolve_class_name() == ""


def test_setup_watches_rejects_unlistable_kind() -> None:
    engine = make_engine()
    spec = WatchSpecification(
        primary_kind=JOBSERVICE,
        owned_kinds=frozenset({ResourceKind("apps", "v1", "StatefulSet", "statefulsets")}),
        class_filter=ClassFilter(""),
        max_concurrent_reconciles=1,
    )

    with pytest.raises(ValueError, match="statefulsets"):
        engine.setup_watches(spec)
    assert engine.spec is None


def test_setup_watches_only_once() -> None:
    engine = make_engine(spec=make_spec())

    with pytest.raises(RuntimeError, match="already"):
        engine.setup_watches(make_spec())


def test_handle_event_forwards_matching_class() -> None:
    engine = make_engine(spec=make_spec(class_name="tenant-a"))

    request = engine.handle_event(DEPLOYMENT, "MODIFIED", make_owned(class_label="tenant-a"))

    assert request == ReconcileRequest("harbor", "harbor")
    assert engine.queue.get(timeout=0) == request


def test_handle_event_drops_other_class_before_queueing() -> None:
    engine = make_engine(spec=make_spec(class_name="tenant-a"))

    request = engine.handle_event(DEPLOYMENT, "MODIFIED", make_owned(class_label="tenant-b"))

    assert request is None
    assert len(engine.queue) == 0


def test_handle_event_requires_watches() -> None:
    with pytest.raises(RuntimeError, match="setup_watches"):
        make_engine().handle_event(DEPLOYMENT, "ADDED", make_owned())


def test_process_next_requeues_failed_reconcile() -> None:
    attempts: list[ReconcileRequest] = []

    def _reconcile(request: ReconcileRequest) -> None:
        attempts.append(request)
        if len(attempts) == 1:
            raise RuntimeError("transient")

    engine = make_engine(reconcile=_reconcile, spec=make_spec())
    engine.handle_event(JOBSERVICE, "ADDED", make_jobservice())

    assert engine.process_next(timeout=0) is True
    assert engine.process_next(timeout=2) is True
    assert attempts == [ReconcileRequest("harbor", "harbor")] * 2
    assert engine.process_next(timeout=0.01) is False


def test_watch_kind_lists_then_streams_events() -> None:
    engine = make_engine(spec=make_spec())
    stop = threading.Event()
    list_fn = MagicMock(
        return_value=SimpleNamespace(
            items=[make_owned(owner="listed")],
            metadata=SimpleNamespace(resource_version="41"),
        )
    )
    events = [
        {"type": "MODIFIED", "object": make_owned(owner="streamed")},
        {"type": "MODIFIED", "object": make_owned(owner="other", class_label="tenant-b")},
    ]
    fake = FakeWatch(events, stop)

    with patch("jobservice.src.engine.watch.Watch", return_value=fake):
        engine._watch_kind(DEPLOYMENT, list_fn, stop)

    assert fake.kwargs["resource_version"] == "41"
    assert fake.stopped
    queued = {engine.queue.get(timeout=0), engine.queue.get(timeout=0)}
    assert queued == {ReconcileRequest("harbor", "listed"), ReconcileRequest("harbor", "streamed")}
    assert len(engine.queue) == 0


def test_watch_kind_stops_on_forbidden_list() -> None:
    engine = make_engine(spec=make_spec())
    list_fn = MagicMock(side_effect=ApiException(status=403, reason="Forbidden"))

    with patch("jobservice.src.engine.watch.Watch") as watch_cls:
        engine._watch_kind(DEPLOYMENT, list_fn, threading.Event())

    list_fn.assert_called_once()
    watch_cls.assert_not_called()


def test_watch_kind_relists_after_gone() -> None:
    engine = make_engine(spec=make_spec())
    stop = threading.Event()
    list_fn = MagicMock(
        side_effect=[
            SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1")),
            SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="99")),
        ]
    )
    expired = MagicMock()
    expired.stream.side_effect = ApiException(status=410, reason="Gone")
    resumed = FakeWatch([], stop)

    with patch("jobservice.src.engine.watch.Watch", side_effect=[expired, resumed]):
        engine._watch_kind(DEPLOYMENT, list_fn, stop)

    assert list_fn.call_count == 2
    assert resumed.kwargs["resource_version"] == "99"


def test_run_dispatches_listed_jobservices_to_workers() -> None:
    reconciled = threading.Event()
    seen: list[ReconcileRequest] = []

    def _reconcile(request: ReconcileRequest) -> None:
        seen.append(request)
        reconciled.set()

    engine = make_engine(reconcile=_reconcile, spec=make_spec(workers=3))
    engine.clients.custom.list_cluster_custom_object.return_value = {
        "items": [make_jobservice(name="core"), make_jobservice(name="other", class_label="tenant-b")],
        "metadata": {"resourceVersion": "5"},
    }
    shutdown = threading.Event()

    class IdleWatch:
        def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
            shutdown.wait(timeout=0.05)
            return iter(())

        def stop(self) -> None:
            pass

    with patch("jobservice.src.engine.watch.Watch", side_effect=lambda: IdleWatch()):
        runner = threading.Thread(target=engine.run, kwargs={"shutdown_event": shutdown})
        runner.start()
        assert reconciled.wait(timeout=5)
        time.sleep(0.1)
        shutdown.set()
        runner.join(timeout=15)

    assert not runner.is_alive()
    assert seen == [ReconcileRequest("harbor", "core")]


def test_run_requires_watches() -> None:
    with pytest.raises(RuntimeError, match="setup_watches"):
        make_engine().run(threading.Event())
