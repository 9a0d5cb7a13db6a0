from __future__ import annotations

import asyncio

import pytest

from core.config import MessagingConfig
from core.directory import ChannelDirectory
from core.errors import HistoryUnavailable, StaleResponse
from core.history import HistoryLoader, selector_for
from core.models import Channel, ChannelKind, ChannelSelector

from fakes import JUDGE, FakeApi, group_channel, msg, private_channel


def test_selector_for_each_kind() -> None:
    directory = ChannelDirectory(FakeApi(), JUDGE)
    direct = directory.ensure_direct("A")

    assert selector_for(direct) == ChannelSelector(direct_with="A")
    assert selector_for(group_channel("g1")) == ChannelSelector(group_id="g1")
    assert selector_for(directory.get("broadcast")) == ChannelSelector(broadcast=True)


def test_selector_for_private_group_uses_group_id() -> None:
    assert selector_for(private_channel("p1")) == ChannelSelector(group_id="p1")


def test_selector_for_direct_without_counterpart() -> None:
    channel = Channel(id="direct:A|J", kind=ChannelKind.DIRECT, display_name="?")
    with pytest.raises(ValueError):
        selector_for(channel)


def test_load_history_sorts_and_files_under_channel() -> None:
    api = FakeApi()
    api.history[ChannelSelector(group_id="g1")] = [
        msg("m2", group="g1", seconds=2),
        msg("m1", group="g1", seconds=1),
    ]
    loader = HistoryLoader(api)

    messages = asyncio.run(loader.load_history(group_channel("g1")))

    assert [message.id for message in messages] == ["m1", "m2"]
    assert {message.channel_id for message in messages} == {"group:g1"}


def test_slow_history_for_previous_selection_is_stale() -> None:
    api = FakeApi()
    slow = ChannelSelector(group_id="slow")
    api.gates[slow] = asyncio.Event()
    api.history[slow] = [msg("old", group="slow")]
    api.history[ChannelSelector(group_id="fast")] = [msg("new", group="fast")]
    loader = HistoryLoader(api)

    async def scenario():
        first = loader.begin("group:slow")
        pending = asyncio.create_task(loader.load_for_selection(group_channel("slow"), first))
        await asyncio.sleep(0)

        second = loader.begin("group:fast")
        fast = await loader.load_for_selection(group_channel("fast"), second)

        api.gates[slow].set()
        with pytest.raises(StaleResponse):
            await pending
        return fast

    fast = asyncio.run(scenario())
    assert [message.id for message in fast] == ["new"]
    assert loader.selected_channel_id == "group:fast"


def test_timeout_raises_history_unavailable() -> None:
    api = FakeApi()
    api.gates[ChannelSelector(group_id="g1")] = asyncio.Event()
    loader = HistoryLoader(api, MessagingConfig(history_timeout_seconds=0.01))

    with pytest.raises(HistoryUnavailable) as excinfo:
        asyncio.run(loader.load_history(group_channel("g1")))
    assert excinfo.value.retryable


def test_backend_failure_raises_history_unavailable() -> None:
    api = FakeApi()
    api.fail_history = RuntimeError("boom")
    loader = HistoryLoader(api)
    token = loader.begin("group:g1")

    with pytest.raises(HistoryUnavailable):
        asyncio.run(loader.load_for_selection(group_channel("g1"), token))


def test_failure_after_deselect_is_stale() -> None:
    api = FakeApi()
    api.fail_history = RuntimeError("boom")
    loader = HistoryLoader(api)
    token = loader.begin("group:g1")
    loader.begin(None)

    with pytest.raises(StaleResponse):
        asyncio.run(loader.load_for_selection(group_channel("g1"), token))
