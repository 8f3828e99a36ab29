import anyio
import httpx
import pytest

from dingbridge.card.cache import CardCache
from dingbridge.card.engine import CardEngine
from dingbridge.dingtalk.parsing import parse_inbound
from dingbridge.handler import (
    CARD_DONE_FALLBACK,
    NEW_SESSION_REPLY,
    MessageHandler,
)
from dingbridge.session import SessionStore
from tests.fakes import (
    FakeClock,
    FakeCompletion,
    FakeDingTalk,
    inbound_payload,
    make_client,
    make_settings,
    no_sleep,
    webhook_texts,
)

CREATE = ("POST", "/v1.0/card/instances/createAndDeliver")
STREAM = ("PUT", "/v1.0/card/streaming")
STATUS = ("PUT", "/v1.0/card/instances")


def _handler(
    fake: FakeDingTalk,
    http: httpx.AsyncClient,
    clock: FakeClock,
    completion: FakeCompletion,
    **settings,
) -> MessageHandler:
    client = make_client(fake, http, make_settings(**settings), clock=clock)
    engine = CardEngine(client, clock=clock, sleep=no_sleep)
    return MessageHandler(
        account_id="default",
        client=client,
        engine=engine,
        cards=CardCache(engine, clock=clock),
        sessions=SessionStore(clock=clock),
        completion=completion,
        clock=clock,
    )


@pytest.mark.anyio
async def test_card_reply_streams_and_finishes(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("Hello", " world")
    handler = _handler(fake_dingtalk, http, clock, completion)

    await handler.handle(parse_inbound(inbound_payload()))

    (call,) = completion.calls
    assert call["user_content"] == "hello"
    assert call["session_key"].startswith("dingtalk:user-1:")
    assert len(fake_dingtalk.calls(*CREATE)) == 1
    streams = fake_dingtalk.bodies(*STREAM)
    assert [(b["content"], b["isFinalize"]) for b in streams] == [
        ("Hello", False),
        ("Hello world", True),
    ]
    flows = [b["cardData"]["cardParamMap"]["flowStatus"] for b in fake_dingtalk.bodies(*STATUS)]
    assert flows == ["2", "3"]
    assert webhook_texts(fake_dingtalk) == []


@pytest.mark.anyio
async def test_empty_card_reply_uses_placeholder(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    handler = _handler(fake_dingtalk, http, clock, FakeCompletion())

    await handler.handle(parse_inbound(inbound_payload()))

    streams = fake_dingtalk.bodies(*STREAM)
    assert [(b["content"], b["isFinalize"]) for b in streams] == [
        (CARD_DONE_FALLBACK, True)
    ]


@pytest.mark.anyio
async def test_new_session_command_skips_completion(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(fake_dingtalk, http, clock, completion)

    await handler.handle(parse_inbound(inbound_payload(msgId="m-1")))
    await handler.handle(
        parse_inbound(inbound_payload(msgId="m-2", text={"content": "/new"}))
    )
    assert len(completion.calls) == 1
    assert webhook_texts(fake_dingtalk) == [NEW_SESSION_REPLY]

    await handler.handle(
        parse_inbound(inbound_payload(msgId="m-3", text={"content": "again"}))
    )
    first, second = completion.calls
    assert first["session_key"] != second["session_key"]
    assert second["user_content"] == "again"


@pytest.mark.anyio
async def test_session_commands_can_be_disabled(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(
        fake_dingtalk, http, clock, completion, enable_session_commands=False
    )

    await handler.handle(parse_inbound(inbound_payload(text={"content": "/new"})))

    assert completion.calls[0]["user_content"] == "/new"


@pytest.mark.anyio
async def test_falls_back_to_batch_when_card_creation_fails(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    fake_dingtalk.on(*CREATE, httpx.Response(500, json={"message": "boom"}))
    handler = _handler(fake_dingtalk, http, clock, FakeCompletion("plain answer"))

    await handler.handle(parse_inbound(inbound_payload()))

    assert fake_dingtalk.calls(*STREAM) == []
    texts = webhook_texts(fake_dingtalk)
    assert texts[0].startswith("\N{THINKING FACE}")
    assert texts[-1] == "plain answer"


@pytest.mark.anyio
async def test_batch_mode_group_reply_mentions_sender(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("**done**")
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        completion,
        message_type="markdown",
        show_thinking=False,
        enable_media_upload=False,
        groups={"*": {"system_prompt": "Be formal."}},
    )

    await handler.handle(
        parse_inbound(inbound_payload(conversationType="2", conversationId="cid-group-1"))
    )

    assert completion.calls[0]["system_prompts"] == ["Be formal."]
    (body,) = fake_dingtalk.bodies("POST", "/robot/sendBySession")
    assert body["msgtype"] == "markdown"
    assert body["markdown"]["text"] == "**done** @user-1"
    assert body["at"] == {"atUserIds": ["user-1"], "isAtAll": False}
    assert fake_dingtalk.calls(*CREATE) == []


@pytest.mark.anyio
async def test_card_mode_group_prompt_includes_roster(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("hi")
    handler = _handler(fake_dingtalk, http, clock, completion, enable_media_upload=False)

    await handler.handle(
        parse_inbound(inbound_payload(conversationType="2", conversationId="cid-group-1"))
    )

    assert completion.calls[0]["system_prompts"] == [
        "Current group members: Alice (user-1)"
    ]
    (body,) = fake_dingtalk.bodies(*CREATE)
    assert body["openSpaceId"] == "dtv1.card//IM_GROUP.cid-group-1"


@pytest.mark.anyio
async def test_media_prompt_is_sent_when_uploads_enabled(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("hi")
    handler = _handler(fake_dingtalk, http, clock, completion)

    await handler.handle(parse_inbound(inbound_payload()))

    (prompt,) = completion.calls[0]["system_prompts"]
    assert "[DINGTALK_FILE]" in prompt


@pytest.mark.anyio
async def test_dm_allowlist_rejects_unknown_sender(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("secret")
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        completion,
        dm_policy="allowlist",
        allow_from=["dingtalk:someone-else"],
    )

    await handler.handle(parse_inbound(inbound_payload()))

    assert completion.calls == []
    (notice,) = webhook_texts(fake_dingtalk)
    assert "Access restricted" in notice
    assert "`user-1`" in notice


@pytest.mark.anyio
async def test_dm_allowlist_matches_prefixed_entries(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        completion,
        dm_policy="allowlist",
        allow_from=["DD:User-1"],
    )

    await handler.handle(parse_inbound(inbound_payload()))

    assert len(completion.calls) == 1


@pytest.mark.anyio
async def test_blocked_group_is_ignored(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        completion,
        group_policy="allowlist",
        group_allowlist=["cid-other"],
    )

    await handler.handle(
        parse_inbound(inbound_payload(conversationType="2", conversationId="cid-group-1"))
    )

    assert completion.calls == []
    assert fake_dingtalk.requests == []


@pytest.mark.anyio
async def test_group_member_allowlist(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        completion,
        groups={"cid-group-1": {"allow_from": ["user-2"]}},
    )
    group_msg = inbound_payload(conversationType="2", conversationId="cid-group-1")

    await handler.handle(parse_inbound(group_msg))
    assert completion.calls == []

    await handler.handle(parse_inbound({**group_msg, "senderStaffId": "user-2"}))
    assert len(completion.calls) == 1


@pytest.mark.anyio
async def test_self_and_empty_messages_are_skipped(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("ok")
    handler = _handler(fake_dingtalk, http, clock, completion)

    await handler.handle(parse_inbound(inbound_payload(senderStaffId="bot-1")))
    await handler.handle(parse_inbound(inbound_payload(text={"content": "   "})))

    assert completion.calls == []
    assert fake_dingtalk.requests == []


@pytest.mark.anyio
async def test_messages_in_one_conversation_get_their_own_cards(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("Hello", " there", " friend", pause=0.01)
    handler = _handler(fake_dingtalk, http, clock, completion)
    first = parse_inbound(inbound_payload(msgId="m-1", text={"content": "one"}))
    second = parse_inbound(inbound_payload(msgId="m-2", text={"content": "two"}))

    async with anyio.create_task_group() as tg:
        tg.start_soon(handler.handle, first)
        tg.start_soon(handler.handle, second)

    card_ids = [body["outTrackId"] for body in fake_dingtalk.bodies(*CREATE)]
    assert len(card_ids) == 2
    assert card_ids[0] != card_ids[1]
    streams = fake_dingtalk.bodies(*STREAM)
    order = [body["outTrackId"] for body in streams]
    assert order == sorted(order, key=card_ids.index)
    for card_id in card_ids:
        finals = [b["isFinalize"] for b in streams if b["outTrackId"] == card_id]
        assert finals[-1] is True
        assert finals.count(True) == 1
    assert sorted(call["user_content"] for call in completion.calls) == ["one", "two"]


@pytest.mark.anyio
async def test_stream_error_interrupts_card(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion("partial", error=RuntimeError("boom"))
    handler = _handler(fake_dingtalk, http, clock, completion)

    await handler.handle(parse_inbound(inbound_payload()))

    last = fake_dingtalk.bodies(*STREAM)[-1]
    assert last["isFinalize"] is True
    assert last["content"] == "partial\n\n⚠️ Response interrupted: boom"


@pytest.mark.anyio
async def test_batch_error_sends_apology(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    completion = FakeCompletion(error=RuntimeError("gateway down"))
    handler = _handler(
        fake_dingtalk, http, clock, completion, message_type="text", show_thinking=False
    )

    await handler.handle(parse_inbound(inbound_payload()))

    (text,) = webhook_texts(fake_dingtalk)
    assert text == "Sorry, something went wrong while handling your request: gateway down"


@pytest.mark.anyio
async def test_text_mode_sends_plain_text(
    fake_dingtalk: FakeDingTalk, http: httpx.AsyncClient, clock: FakeClock
) -> None:
    handler = _handler(
        fake_dingtalk,
        http,
        clock,
        FakeCompletion("# not a heading"),
        message_type="text",
        show_thinking=False,
    )

    await handler.handle(parse_inbound(inbound_payload()))

    (body,) = fake_dingtalk.bodies("POST", "/robot/sendBySession")
    assert body == {"msgtype": "text", "text": {"content": "# not a heading"}}
