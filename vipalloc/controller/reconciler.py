"""VirtualIP lifecycle state machine.

One call to :meth:`VirtualIPReconciler.reconcile` reads the VirtualIP fresh,
performs at most one transition and persists its outcome. The write itself
produces the change notification that leads to the next call, so the
procedure never waits, polls or reschedules on its own.

Transition order (first matching row wins)::

    deleting, address guarded      -> delete AddressClaim, drop address guard
    live, no address               -> allocate                -> CreatingIP
    live, address                  -> sync AddressClaim labels
    live, address unguarded        -> add address guard
    no service recorded, live      -> record spec.service     -> Exposing
    no service recorded, deleting  -> drop service guard
    service recorded               -> bind (live) / unbind (deleting)
    deleting                       -> drop service guard
    live, service unguarded        -> add service guard
    otherwise                      ->                            Valid

Every failure is caught here, written to ``status`` with state Error and ends
the call. Status writes are skipped once deletion has started. Failure to
write status is raised to the caller as StatusUpdateError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import StrEnum

from structlog.typing import FilteringBoundLogger

from vipalloc.allocator.errors import AllocationError
from vipalloc.allocator.selector import AllocationSelector
from vipalloc.controller.exposure import ExposureManager, OwnerReferenceError
from vipalloc.models.resources import (
    AddressClaim,
    FinalizerState,
    ObjectKey,
    VirtualIP,
    VirtualIPState,
)
from vipalloc.observability.logging import get_logger
from vipalloc.observability.metrics import (
    reconcile_duration_seconds,
    reconcile_errors_total,
    reconcile_total,
    releases_total,
    status_updates_total,
)
from vipalloc.store.base import NotFoundError, OperationResult, Store, StoreError, create_or_update
from vipalloc.store.kinds import ADDRESS_CLAIM, VIRTUAL_IP

_log = get_logger("reconciler")

MSG_CREATING_IP = "creating IP object for the service"
MSG_EXPOSING = "exposing service with an external IP"
MSG_VALID = "successfully allocated an IP address"


class Action(StrEnum):
    """The transition a reconciliation performed."""

    GONE = "gone"
    ALLOCATED = "allocated"
    ADDRESS_GUARDED = "address_guarded"
    EXPOSING = "exposing"
    SERVICE_GUARDED = "service_guarded"
    VALID = "valid"
    ADDRESS_RELEASED = "address_released"
    SERVICE_RELEASED = "service_released"
    NOOP = "noop"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    key: ObjectKey
    action: Action
    state: VirtualIPState | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.action == Action.FAILED


class TransitionError(Exception):
    """A transition step failed; reported on the object's status."""


class StatusUpdateError(Exception):
    """The status write itself failed; raised to the dispatcher."""


class VirtualIPReconciler:
    """Drives one VirtualIP one step closer to its desired state per call."""

    def __init__(self, store: Store, selector: AllocationSelector, exposure: ExposureManager) -> None:
        self._store = store
        self._selector = selector
        self._exposure = exposure

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one reconciliation pass for ``key``.

        Raises StatusUpdateError when the outcome cannot be persisted and
        StoreError when the VirtualIP itself cannot be read.
        """
        started = time.monotonic()
        log = _log.bind(virtualip=str(key))
        log.debug("reconcile_start")

        try:
            obj = await self._store.get(VIRTUAL_IP, key.namespace, key.name)
        except NotFoundError:
            log.debug("virtualip_gone")
            return _finish(ReconcileResult(key, Action.GONE), started)

        vip = VirtualIP.from_dict(obj)
        try:
            action = await self._transition(vip, log)
        except TransitionError as exc:
            reconcile_errors_total.inc()
            await self._report(vip, log, error=exc)
            return _finish(ReconcileResult(key, Action.FAILED, vip.status.state, str(exc)), started)

        log.info("reconciled", action=action.value, state=vip.status.state, deleting=vip.deleting)
        return _finish(ReconcileResult(key, action, vip.status.state), started)

    # ------------------------------------------------------------------
    # Transition selection
    # ------------------------------------------------------------------

    async def _transition(self, vip: VirtualIP, log: FilteringBoundLogger) -> Action:
        if vip.deleting:
            if vip.finalizers.address_held:
                await self._release_address(vip, log)
                return Action.ADDRESS_RELEASED
        else:
            if not vip.status.ip:
                await self._allocate(vip, log)
                return Action.ALLOCATED

            await self._sync_claim(vip)

            if not vip.finalizers.address_held:
                await self._write_finalizers(
                    vip, vip.finalizers.with_address(True), "could not add finalizer for IP object"
                )
                return Action.ADDRESS_GUARDED

        if not vip.status.service:
            if vip.deleting:
                return await self._release_service(vip)
            await self._record_exposure(vip, log)
            return Action.EXPOSING

        await self._expose(vip, log)

        if vip.deleting:
            return await self._release_service(vip)

        if not vip.finalizers.service_held:
            await self._write_finalizers(vip, vip.finalizers.with_service(True), "could not add finalizer for service")
            return Action.SERVICE_GUARDED

        vip.status.state = VirtualIPState.VALID
        vip.status.message = MSG_VALID
        await self._report(vip, log)
        return Action.VALID

    # ------------------------------------------------------------------
    # Address steps
    # ------------------------------------------------------------------

    async def _allocate(self, vip: VirtualIP, log: FilteringBoundLogger) -> None:
        try:
            allocation = await self._selector.allocate(vip)
        except (AllocationError, StoreError) as exc:
            raise TransitionError(f"could not allocate an IP: {exc}") from exc

        vip.status.ip = allocation.address
        vip.status.keepalived_group = allocation.keepalived_group
        vip.status.gsm = allocation.segment_mapping
        vip.status.state = VirtualIPState.CREATING_IP
        vip.status.message = MSG_CREATING_IP
        log.info("address_allocated", address=allocation.address, segment_mapping=allocation.segment_mapping)
        try:
            await self._report(vip, log)
        except StatusUpdateError:
            # Nothing records the claim yet, so it would outlive the VirtualIP.
            await self._drop_unrecorded_claim(allocation.address, log)
            raise

    async def _drop_unrecorded_claim(self, address: str, log: FilteringBoundLogger) -> None:
        try:
            await self._store.delete(ADDRESS_CLAIM, "", address)
        except NotFoundError:
            pass
        except StoreError as exc:
            log.error("address_claim_rollback_failed", address=address, error=str(exc))
        else:
            releases_total.inc()
            log.warning("address_claim_rolled_back", address=address)

    async def _sync_claim(self, vip: VirtualIP) -> None:
        # The address is already ours; this only (re)creates the record and keeps labels current.
        claim = AddressClaim(address=vip.status.ip, segment_mapping=vip.status.gsm, owner=vip.key)
        try:
            await create_or_update(self._store, ADDRESS_CLAIM, claim.to_dict(), claim.apply_to)
        except StoreError as exc:
            raise TransitionError(f"could not create/update an IP object: {exc}") from exc

    async def _release_address(self, vip: VirtualIP, log: FilteringBoundLogger) -> None:
        if vip.status.ip:
            try:
                await self._store.delete(ADDRESS_CLAIM, "", vip.status.ip)
            except NotFoundError:
                log.info("address_claim_already_released", address=vip.status.ip)
            except StoreError as exc:
                raise TransitionError(f"could not delete IP object {vip.status.ip}: {exc}") from exc
            else:
                releases_total.inc()
                log.info("address_released", address=vip.status.ip)

        await self._write_finalizers(vip, vip.finalizers.with_address(False), "could not remove finalizer for IP object")

    # ------------------------------------------------------------------
    # Service steps
    # ------------------------------------------------------------------

    async def _record_exposure(self, vip: VirtualIP, log: FilteringBoundLogger) -> None:
        if not vip.spec.service:
            raise TransitionError("spec.service must name the service to expose")
        vip.status.service = vip.spec.service
        vip.status.clone = vip.spec.clone
        vip.status.state = VirtualIPState.EXPOSING
        vip.status.message = MSG_EXPOSING
        log.info("exposure_recorded", service=vip.status.service, clone=vip.status.clone)
        await self._report(vip, log)

    async def _expose(self, vip: VirtualIP, log: FilteringBoundLogger) -> None:
        cloned = bool(vip.status.clone)
        if vip.deleting and cloned:
            # The clone is owned by the VirtualIP and goes away with it.
            return

        try:
            service = await self._exposure.get_service(vip)
        except NotFoundError as exc:
            if vip.deleting:
                log.info("service_already_gone", service=vip.status.service)
                return
            raise TransitionError(f"could not get service to be exposed: {exc}") from exc
        except StoreError as exc:
            raise TransitionError(f"could not get service to be exposed: {exc}") from exc

        if cloned:
            try:
                service = self._exposure.clone_service(vip, service)
            except OwnerReferenceError as exc:
                raise TransitionError(f"received error while cloning service: {exc}") from exc

        try:
            result = await self._exposure.bind(vip, service, remove=vip.deleting)
        except StoreError as exc:
            raise TransitionError(f"failed to create/update the service: {exc}") from exc

        if result != OperationResult.NONE:
            log.info(
                "service_unbound" if vip.deleting else "service_bound",
                service=(service.get("metadata") or {}).get("name"),
                result=result.value,
            )

    async def _release_service(self, vip: VirtualIP) -> Action:
        if not vip.finalizers.service_held:
            return Action.NOOP
        await self._write_finalizers(vip, vip.finalizers.with_service(False), "could not remove finalizer for service")
        return Action.SERVICE_RELEASED

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _write_finalizers(self, vip: VirtualIP, wanted: FinalizerState, failure: str) -> None:
        previous = vip.finalizers
        vip.finalizers = wanted
        try:
            updated = await self._store.update(VIRTUAL_IP, vip.to_dict())
        except StoreError as exc:
            vip.finalizers = previous
            raise TransitionError(f"{failure}: {exc}") from exc
        vip.refresh(updated)

    async def _report(
        self,
        vip: VirtualIP,
        log: FilteringBoundLogger,
        error: Exception | None = None,
    ) -> None:
        """Single exit path for status: record ``error`` if any, then persist."""
        if error is not None:
            log.error("transition_failed", error=str(error), deleting=vip.deleting)
            vip.status.message = str(error)
            vip.status.state = VirtualIPState.ERROR

        if vip.deleting:
            return
        if not vip.status_changed:
            log.debug("status_unchanged")
            return

        try:
            updated = await self._store.update_status(VIRTUAL_IP, vip.to_dict())
        except StoreError as exc:
            raise StatusUpdateError(f"failed to update VirtualIP status: {exc}") from exc

        status_updates_total.labels(state=str(vip.status.state or "")).inc()
        vip.refresh(updated)
        vip.observed_status = replace(vip.status)


def _finish(result: ReconcileResult, started: float) -> ReconcileResult:
    reconcile_total.labels(action=result.action.value).inc()
    reconcile_duration_seconds.observe(time.monotonic() - started)
    return result
