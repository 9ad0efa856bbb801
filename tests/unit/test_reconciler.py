"""Unit tests for vipalloc.controller.reconciler: one transition per call."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from vipalloc.controller.exposure import CLONE_SUFFIX, KEEPALIVED_GROUP_ANNOTATION
from vipalloc.controller.reconciler import (
    MSG_CREATING_IP,
    MSG_EXPOSING,
    MSG_VALID,
    Action,
    StatusUpdateError,
    VirtualIPReconciler,
)
from vipalloc.models.resources import (
    ADDRESS_FINALIZER,
    OWNER_ANNOTATION,
    SEGMENT_MAPPING_LABEL,
    SERVICE_FINALIZER,
    ObjectKey,
    VirtualIPState,
)
from vipalloc.store.base import ConflictError, StoreError
from vipalloc.store.kinds import ADDRESS_CLAIM, SERVICE, VIRTUAL_IP

if TYPE_CHECKING:
    from conftest import InMemoryStore


def _stored(store: InMemoryStore, key: ObjectKey) -> dict[str, Any]:
    obj = store.peek(VIRTUAL_IP, key.namespace, key.name)
    assert obj is not None
    return obj


def _finalizers(store: InMemoryStore, key: ObjectKey) -> list[str]:
    return list(_stored(store, key)["metadata"].get("finalizers") or [])


def _write_count(store: InMemoryStore) -> int:
    return sum(
        store.count(op, kind)
        for op in ("create", "update", "update_status", "delete")
        for kind in (VIRTUAL_IP, SERVICE, ADDRESS_CLAIM)
    )


# ===========================================================================
# Forward transitions
# ===========================================================================


class TestForwardTransitions:
    async def test_missing_virtual_ip_is_gone(self, reconciler: VirtualIPReconciler) -> None:
        result = await reconciler.reconcile(ObjectKey("default", "nope"))

        assert result.action == Action.GONE
        assert not result.failed

    async def test_first_pass_allocates(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30", group="group-a")
        key = store.add_virtual_ip("web")

        result = await reconciler.reconcile(key)

        assert result.action == Action.ALLOCATED
        status = _stored(store, key)["status"]
        assert status == {
            "ip": "10.0.0.0",
            "keepalivedGroup": "group-a",
            "gsm": "gsm-a",
            "state": "CreatingIP",
            "message": MSG_CREATING_IP,
        }
        claim = store.peek(ADDRESS_CLAIM, "", "10.0.0.0")
        assert claim is not None
        assert claim["metadata"]["labels"] == {SEGMENT_MAPPING_LABEL: "gsm-a"}
        assert claim["metadata"]["annotations"] == {OWNER_ANNOTATION: "default/web"}

    async def test_allocation_does_not_touch_finalizers(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")

        await reconciler.reconcile(key)

        assert _finalizers(store, key) == []

    async def test_second_pass_guards_address(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)

        result = await reconciler.reconcile(key)

        assert result.action == Action.ADDRESS_GUARDED
        assert _finalizers(store, key) == [ADDRESS_FINALIZER]

    async def test_third_pass_records_exposure(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web", service="frontend", clone=True)
        for _ in range(2):
            await reconciler.reconcile(key)

        result = await reconciler.reconcile(key)

        assert result.action == Action.EXPOSING
        status = _stored(store, key)["status"]
        assert status["service"] == "frontend"
        assert status["clone"] is True
        assert status["state"] == "Exposing"
        assert status["message"] == MSG_EXPOSING

    async def test_fourth_pass_binds_and_guards_service(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30", group="group-a")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        for _ in range(3):
            await reconciler.reconcile(key)

        result = await reconciler.reconcile(key)

        assert result.action == Action.SERVICE_GUARDED
        assert _finalizers(store, key) == [ADDRESS_FINALIZER, SERVICE_FINALIZER]
        svc = store.peek(SERVICE, "default", "svc")
        assert svc is not None
        assert svc["spec"]["externalIPs"] == ["10.0.0.0"]
        assert svc["metadata"]["annotations"][KEEPALIVED_GROUP_ANNOTATION] == "keepalived-operator/group-a"

    async def test_settles_in_valid(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")

        results = await drive(key)

        assert [r.action for r in results] == [
            Action.ALLOCATED,
            Action.ADDRESS_GUARDED,
            Action.EXPOSING,
            Action.SERVICE_GUARDED,
            Action.VALID,
        ]
        status = _stored(store, key)["status"]
        assert status["state"] == "Valid"
        assert status["message"] == MSG_VALID

    async def test_valid_is_idempotent(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler, drive: Any
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        before = _stored(store, key)
        writes = _write_count(store)

        result = await reconciler.reconcile(key)

        assert result.action == Action.VALID
        assert _stored(store, key) == before
        assert _write_count(store) == writes

    async def test_existing_status_ip_is_kept(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)
        await reconciler.reconcile(key)

        assert _stored(store, key)["status"]["ip"] == "10.0.0.0"
        assert store.names(ADDRESS_CLAIM) == ["10.0.0.0"]

    async def test_lost_claim_is_recreated(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)
        store.request_deletion(ADDRESS_CLAIM, "", "10.0.0.0")

        await reconciler.reconcile(key)

        claim = store.peek(ADDRESS_CLAIM, "", "10.0.0.0")
        assert claim is not None
        assert claim["metadata"]["labels"] == {SEGMENT_MAPPING_LABEL: "gsm-a"}

    async def test_foreign_finalizers_are_preserved(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        obj = _stored(store, key)
        obj["metadata"]["finalizers"] = ["example.com/other"]
        await store.update(VIRTUAL_IP, obj)
        await reconciler.reconcile(key)

        await reconciler.reconcile(key)

        assert _finalizers(store, key) == ["example.com/other", ADDRESS_FINALIZER]


# ===========================================================================
# Failures
# ===========================================================================


class TestFailures:
    async def test_exhausted_pool_reports_error(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/32")
        store.add_service("svc")
        await drive(store.add_virtual_ip("first"))
        key = store.add_virtual_ip("second")

        results = await drive(key)

        assert results[-1].action == Action.FAILED
        status = _stored(store, key)["status"]
        assert status["state"] == "Error"
        assert status["message"] == "could not allocate an IP: no IP could be allocated"
        assert "ip" not in status

    async def test_unknown_segment_reports_error(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web", segment="172.16.0.0/24")

        result = await reconciler.reconcile(key)

        assert result.failed
        assert "GroupSegmentMapping not found" in _stored(store, key)["status"]["message"]

    async def test_missing_service_reports_error(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web", service="ghost")

        results = await drive(key)

        assert results[-1].action == Action.FAILED
        status = _stored(store, key)["status"]
        assert status["state"] == "Error"
        assert status["message"].startswith("could not get service to be exposed")
        assert _finalizers(store, key) == [ADDRESS_FINALIZER]
        assert store.names(SERVICE) == []

    async def test_missing_spec_service_reports_error(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web", service="")

        results = await drive(key)

        assert results[-1].failed
        assert _stored(store, key)["status"]["message"] == "spec.service must name the service to expose"

    async def test_finalizer_write_failure_reports_error(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)
        store.fail_next("update", VIRTUAL_IP)

        result = await reconciler.reconcile(key)

        assert result.failed
        assert _stored(store, key)["status"]["message"].startswith("could not add finalizer for IP object")
        assert _finalizers(store, key) == []

    async def test_claim_sync_failure_reports_error(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)
        store.fail_next("get", ADDRESS_CLAIM)

        result = await reconciler.reconcile(key)

        assert result.failed
        assert _stored(store, key)["status"]["message"].startswith("could not create/update an IP object")

    async def test_error_clears_on_recovery(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        results = await drive(key)
        assert results[-1].failed

        store.add_service("svc")
        results = await drive(key)

        assert results[-1].action == Action.VALID
        assert _stored(store, key)["status"]["state"] == "Valid"

    async def test_status_write_failure_is_raised(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        store.fail_next("update_status", VIRTUAL_IP)

        with pytest.raises(StatusUpdateError, match="failed to update VirtualIP status"):
            await reconciler.reconcile(key)

        assert store.names(ADDRESS_CLAIM) == []

    async def test_unrecorded_claim_released_before_retry(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        store.fail_next("update_status", VIRTUAL_IP, ConflictError("stale resourceVersion"))

        with pytest.raises(StatusUpdateError):
            await drive(key)
        results = await drive(key)

        assert results[-1].state == VirtualIPState.VALID
        assert store.names(ADDRESS_CLAIM) == ["10.0.0.0"]

        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)
        await drive(key)

        assert store.peek(VIRTUAL_IP, key.namespace, key.name) is None
        assert store.names(ADDRESS_CLAIM) == []

    async def test_failed_claim_rollback_still_raises(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        store.fail_next("update_status", VIRTUAL_IP)
        store.fail_next("delete", ADDRESS_CLAIM)

        with pytest.raises(StatusUpdateError):
            await reconciler.reconcile(key)

        assert store.names(ADDRESS_CLAIM) == ["10.0.0.0"]

    async def test_read_failure_propagates(self, store: InMemoryStore, reconciler: VirtualIPReconciler) -> None:
        key = store.add_virtual_ip("web")
        store.fail_next("get", VIRTUAL_IP)

        with pytest.raises(StoreError):
            await reconciler.reconcile(key)


# ===========================================================================
# Deletion
# ===========================================================================


class TestDeletion:
    async def test_in_place_unwind_order(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        results = await drive(key)

        assert [r.action for r in results] == [Action.ADDRESS_RELEASED, Action.SERVICE_RELEASED, Action.GONE]
        assert store.names(ADDRESS_CLAIM) == []
        assert store.peek(VIRTUAL_IP, key.namespace, key.name) is None
        svc = store.peek(SERVICE, "default", "svc")
        assert svc is not None
        assert svc["spec"]["externalIPs"] == []
        assert KEEPALIVED_GROUP_ANNOTATION not in (svc["metadata"].get("annotations") or {})

    async def test_address_released_before_service(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler, drive: Any
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        await reconciler.reconcile(key)

        assert store.names(ADDRESS_CLAIM) == []
        assert _finalizers(store, key) == [SERVICE_FINALIZER]
        svc = store.peek(SERVICE, "default", "svc")
        assert svc is not None
        assert svc["spec"]["externalIPs"] == ["10.0.0.0"]

    async def test_clone_unwind_removes_clone_by_cascade(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web", clone=True)
        await drive(key)
        assert store.peek(SERVICE, "default", "svc" + CLONE_SUFFIX) is not None
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        results = await drive(key)

        assert [r.action for r in results] == [Action.ADDRESS_RELEASED, Action.SERVICE_RELEASED, Action.GONE]
        assert store.peek(SERVICE, "default", "svc" + CLONE_SUFFIX) is None
        target = store.peek(SERVICE, "default", "svc")
        assert target is not None
        assert "externalIPs" not in target["spec"]

    async def test_deleting_clone_does_not_read_target(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web", clone=True)
        await drive(key)
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)
        reads_before = store.count("get", SERVICE)

        await drive(key)

        assert store.count("get", SERVICE) == reads_before

    async def test_missing_claim_counts_as_released(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        store.request_deletion(ADDRESS_CLAIM, "", "10.0.0.0")
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        results = await drive(key)

        assert results[-1].action == Action.GONE

    async def test_missing_service_during_deletion_is_tolerated(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        store.request_deletion(SERVICE, "default", "svc")
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        results = await drive(key)

        assert results[-1].action == Action.GONE
        assert store.names(SERVICE) == []

    async def test_deletion_before_exposure(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler, drive: Any
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        key = store.add_virtual_ip("web")
        await reconciler.reconcile(key)
        await reconciler.reconcile(key)
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)

        results = await drive(key)

        assert [r.action for r in results] == [Action.ADDRESS_RELEASED, Action.GONE]
        assert store.names(ADDRESS_CLAIM) == []

    async def test_deletion_failure_is_not_written_to_status(
        self, store: InMemoryStore, reconciler: VirtualIPReconciler, drive: Any
    ) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/30")
        store.add_service("svc")
        key = store.add_virtual_ip("web")
        await drive(key)
        store.request_deletion(VIRTUAL_IP, key.namespace, key.name)
        status_writes = store.count("update_status", VIRTUAL_IP)
        store.fail_next("delete", ADDRESS_CLAIM)

        result = await reconciler.reconcile(key)

        assert result.failed
        assert store.count("update_status", VIRTUAL_IP) == status_writes
        assert _finalizers(store, key) == [ADDRESS_FINALIZER, SERVICE_FINALIZER]
        assert store.names(ADDRESS_CLAIM) == ["10.0.0.0"]

    async def test_freed_address_is_reused(self, store: InMemoryStore, drive: Any) -> None:
        store.add_mapping("gsm-a", "10.0.0.0/32")
        store.add_service("svc")
        first = store.add_virtual_ip("first")
        await drive(first)
        store.request_deletion(VIRTUAL_IP, first.namespace, first.name)
        await drive(first)

        second = store.add_virtual_ip("second")
        results = await drive(second)

        assert results[-1].action == Action.VALID
        assert _stored(store, second)["status"]["ip"] == "10.0.0.0"
