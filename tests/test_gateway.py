import json
import os
import time
from pathlib import Path

import anyio
import httpx
import pytest

from dingbridge.gateway import Gateway, InboundEvent, build_gateway
from tests.fakes import (
    FakeCompletion,
    FakeDingTalk,
    inbound_payload,
    make_settings,
    webhook_texts,
)


def _gateway(
    http: httpx.AsyncClient, completion: FakeCompletion, tmp_path: Path
) -> Gateway:
    settings = make_settings(
        message_type="text", show_thinking=False, enable_media_upload=False
    )
    return build_gateway(
        settings, http=http, completion=completion, temp_dir=tmp_path
    )


@pytest.mark.anyio
async def test_concurrent_duplicates_are_handled_once(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)
    payload = inbound_payload(msgId="dup-1")
    results: list[bool] = []

    async def deliver() -> None:
        results.append(await gateway.dispatch("dup-1", payload))

    async with anyio.create_task_group() as tg:
        tg.start_soon(deliver)
        tg.start_soon(deliver)

    assert sorted(results) == [False, True]
    assert len(completion.calls) == 1
    assert webhook_texts(fake_dingtalk) == ["answer"]


@pytest.mark.anyio
async def test_ack_precedes_handling(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)
    order: list[str] = []

    async def ack() -> None:
        order.append(f"ack:{len(completion.calls)}")

    assert await gateway.dispatch("m-1", json.dumps(inbound_payload()), ack)
    assert await gateway.dispatch("m-1", inbound_payload(), ack) is False

    assert order == ["ack:0", "ack:1"]


@pytest.mark.anyio
async def test_ack_failure_does_not_block_handling(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)

    async def broken_ack() -> None:
        raise ConnectionError("socket closed")

    assert await gateway.dispatch("m-1", inbound_payload(), broken_ack)
    assert len(completion.calls) == 1


@pytest.mark.anyio
async def test_dedup_falls_back_to_payload_id(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)

    assert await gateway.dispatch("", inbound_payload(msgId="inner-1"))
    assert not await gateway.dispatch("", inbound_payload(msgId="inner-1"))
    assert len(completion.calls) == 1


@pytest.mark.anyio
async def test_undecodable_payload_is_dropped(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)

    assert not await gateway.dispatch("m-1", b"{not json")
    assert completion.calls == []


@pytest.mark.anyio
async def test_handler_failure_is_contained(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    gateway = _gateway(http, FakeCompletion("answer"), tmp_path)

    async def explode(message) -> None:
        raise RuntimeError("handler bug")

    gateway.handler.handle = explode  # type: ignore[method-assign]

    assert not await gateway.dispatch("m-1", inbound_payload())


@pytest.mark.anyio
async def test_run_processes_events_and_sweeps_temp_files(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, tmp_path: Path
) -> None:
    stale = tmp_path / "dingbridge_old.bin"
    stale.write_bytes(b"x")
    old = time.time() - 2 * 24 * 60 * 60
    os.utime(stale, (old, old))
    keep = tmp_path / "unrelated.txt"
    keep.write_text("keep")

    completion = FakeCompletion("answer")
    gateway = _gateway(http, completion, tmp_path)

    async def events():
        for idx in range(3):
            yield InboundEvent(
                message_id=f"m-{idx}",
                data=inbound_payload(msgId=f"m-{idx}", text={"content": f"q{idx}"}),
            )
        yield InboundEvent(message_id="m-0", data=inbound_payload(msgId="m-0"))

    await gateway.run(events())

    assert sorted(call["user_content"] for call in completion.calls) == ["q0", "q1", "q2"]
    assert not stale.exists()
    assert keep.exists()

