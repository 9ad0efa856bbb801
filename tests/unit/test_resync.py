"""Unit tests for vipalloc.controller.resync."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

from vipalloc.controller.resync import Resyncer
from vipalloc.models.resources import ObjectKey
from vipalloc.store.base import StoreError
from vipalloc.store.kinds import VIRTUAL_IP

if TYPE_CHECKING:
    from conftest import InMemoryStore


class TestResyncOnce:
    async def test_enqueues_every_virtual_ip(self, store: InMemoryStore) -> None:
        store.add_virtual_ip("a")
        store.add_virtual_ip("b", namespace="team-a")
        queue = MagicMock()

        count = await Resyncer(store, queue, period_s=60).resync_once()

        assert count == 2
        assert {c.args[0] for c in queue.add.call_args_list} == {
            ObjectKey("default", "a"),
            ObjectKey("team-a", "b"),
        }

    async def test_namespace_filter(self, store: InMemoryStore) -> None:
        store.add_virtual_ip("a")
        store.add_virtual_ip("b", namespace="team-a")
        queue = MagicMock()

        count = await Resyncer(store, queue, period_s=60, namespace="team-a").resync_once()

        assert count == 1
        queue.add.assert_called_once_with(ObjectKey("team-a", "b"))


class TestResyncLoop:
    async def test_loop_survives_store_errors(self) -> None:
        calls = 0

        async def flaky_list(*_args: object, **_kwargs: object) -> list[dict[str, object]]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreError("down", status=503)
            return [{"metadata": {"name": "a", "namespace": "x"}}]

        store = MagicMock()
        store.list = AsyncMock(side_effect=flaky_list)
        queue = MagicMock()
        resyncer = Resyncer(store, queue, period_s=0.01)

        await resyncer.start()
        await asyncio.sleep(0.1)
        await resyncer.stop()

        queue.add.assert_any_call(ObjectKey("x", "a"))
        assert store.list.await_args_list[0].args == (VIRTUAL_IP,)

    async def test_stop_without_start_is_safe(self) -> None:
        await Resyncer(MagicMock(), MagicMock(), period_s=60).stop()
