import httpx
import pytest

from blablabot.commands import Abort, Fatal, Stop
from blablabot.cursor import MemoryCursorStore
from blablabot.errors import (
    IdentityMismatchError,
    ProtocolError,
    SessionResetError,
    StoreError,
    TransportError,
)
from blablabot.telegram import SessionState
from blablabot.telegram.loop import LoopState, PollLoop
from tests.telegram_fakes import (
    BOT_NAME,
    FakeBotApi,
    RecordingRouter,
    bot_user,
    message_json,
    ok,
    update_json,
)


class _FailingStore(MemoryCursorStore):
    def __init__(self) -> None:
        super().__init__()
        self.attempts: list[int] = []

    def save(self, update_id: int) -> None:
        self.attempts.append(update_id)
        raise StoreError(f"Failed to save cursor: disk full ({update_id})")


def _text_update(update_id: int, text: str, chat_id: int = 10) -> dict:
    return update_json(update_id, message_json(update_id, chat_id, text=text))


def _make_loop(
    fake_api: FakeBotApi,
    router: RecordingRouter,
    store: MemoryCursorStore | None = None,
    **kwargs,
):
    client = fake_api.make_client()
    store = store or MemoryCursorStore()
    loop = PollLoop(
        client, store, router, bot_name=BOT_NAME, poll_timeout=1, **kwargs
    )
    return loop, client, store


def _texts(router: RecordingRouter) -> list[str | None]:
    return [m.text for m in router.messages]


@pytest.mark.anyio
async def test_dispatches_in_order_and_advances_watermark(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add(
        "getUpdates",
        ok([_text_update(5, "hi"), _text_update(6, "there")]),
        ok([_text_update(7, "/stop")]),
    )
    router = RecordingRouter({"/stop": Stop("done")})
    loop, client, store = _make_loop(fake_api, router)

    await loop.run()

    assert _texts(router) == ["hi", "there", "/stop"]
    assert fake_api.offsets() == [0, 7]
    assert loop.watermark == 8
    assert store.saves == [7, 8]
    assert loop.state is LoopState.TERMINATED
    assert client.state is SessionState.CLOSED
    assert fake_api.sessions == 1


@pytest.mark.anyio
async def test_resumes_from_stored_cursor(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", ok([]), ok([_text_update(41, "/stop")]))
    router = RecordingRouter({"/stop": Stop()})
    loop, _, store = _make_loop(fake_api, router, MemoryCursorStore(41))

    await loop.run()

    assert fake_api.offsets() == [41, 41]
    assert store.saves == [42]


@pytest.mark.anyio
async def test_updates_without_message_advance_cursor(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add(
        "getUpdates",
        ok([{"update_id": 3, "callback_query": {"id": "q"}}]),
        ok([_text_update(4, "/stop")]),
    )
    router = RecordingRouter({"/stop": Stop()})
    loop, _, store = _make_loop(fake_api, router)

    await loop.run()

    assert _texts(router) == ["/stop"]
    assert fake_api.offsets() == [0, 4]
    assert store.saves == [4, 5]


@pytest.mark.anyio
async def test_identity_mismatch_never_polls(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user("other")))
    router = RecordingRouter()
    loop, client, store = _make_loop(fake_api, router, MemoryCursorStore(9))

    with pytest.raises(IdentityMismatchError):
        await loop.run()

    assert fake_api.calls("getUpdates") == []
    assert router.messages == []
    assert store.saves == [9]
    assert client.state is SessionState.CLOSED
    assert loop.state is LoopState.TERMINATED


@pytest.mark.anyio
async def test_http_error_does_not_advance_or_dispatch(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", httpx.Response(500, text="oops"))
    router = RecordingRouter()
    loop, client, store = _make_loop(fake_api, router)

    with pytest.raises(TransportError):
        await loop.run()

    assert router.messages == []
    assert loop.watermark == 0
    assert store.saves == [0]
    assert client.state is SessionState.CLOSED


@pytest.mark.anyio
async def test_connection_reset_restarts_session(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()), ok(bot_user()))
    fake_api.add(
        "getUpdates",
        ok([_text_update(5, "hi")]),
        httpx.RemoteProtocolError("peer closed connection"),
        ok([_text_update(6, "/stop")]),
    )
    router = RecordingRouter({"/stop": Stop()})
    loop, _, store = _make_loop(fake_api, router)

    await loop.run()

    assert _texts(router) == ["hi", "/stop"]
    assert fake_api.offsets() == [0, 6, 6]
    assert fake_api.sessions == 2
    assert loop.restarts == 1
    assert store.saves == [6, 6, 7]


@pytest.mark.anyio
async def test_abort_outcome_restarts_after_saving(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()), ok(bot_user()))
    fake_api.add(
        "getUpdates",
        ok([_text_update(5, "/crash"), _text_update(6, "after")]),
        ok([_text_update(6, "after"), _text_update(7, "/stop")]),
    )
    router = RecordingRouter({"/crash": Abort("crash"), "/stop": Stop()})
    loop, client, store = _make_loop(fake_api, router)

    await loop.run()

    assert _texts(router) == ["/crash", "after", "/stop"]
    assert fake_api.offsets() == [0, 6]
    assert store.saves[0] == 6
    assert store.value == 8
    assert fake_api.sessions == 2
    assert client.state is SessionState.CLOSED


@pytest.mark.anyio
async def test_fatal_outcome_saves_and_raises(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", ok([_text_update(5, "boom"), _text_update(6, "later")]))
    error = ProtocolError("sendMessage: ok=false (400): chat not found")
    router = RecordingRouter({"boom": Fatal(error)})
    loop, client, store = _make_loop(fake_api, router)

    with pytest.raises(ProtocolError) as exc:
        await loop.run()

    assert exc.value is error
    assert _texts(router) == ["boom"]
    assert store.saves == [6]
    assert client.state is SessionState.CLOSED


@pytest.mark.anyio
async def test_malformed_updates_are_acknowledged(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add(
        "getUpdates",
        ok(
            [
                _text_update(5, "a"),
                {"update_id": 6, "message": {"message_id": "x"}},
                {"update_id": 7, "message": {"date": 1}},
            ]
        ),
        ok([{"update_id": 8, "message": None}, _text_update(9, "/stop")]),
    )
    router = RecordingRouter({"/stop": Stop()})
    loop, _, store = _make_loop(fake_api, router)

    await loop.run()

    assert _texts(router) == ["a", "/stop"]
    assert fake_api.offsets() == [0, 8]
    assert store.saves == [8, 10]


@pytest.mark.anyio
async def test_restart_limit_stops_reconnecting(fake_api: FakeBotApi) -> None:
    fake_api.add(
        "getMe",
        *(httpx.RemoteProtocolError("peer closed connection") for _ in range(3)),
    )
    router = RecordingRouter()
    loop, _, _ = _make_loop(fake_api, router, max_restarts=2)

    with pytest.raises(SessionResetError):
        await loop.run()

    assert len(fake_api.calls("getMe")) == 3
    assert fake_api.calls("getUpdates") == []
    assert loop.state is LoopState.TERMINATED


@pytest.mark.anyio
async def test_cursor_save_failure_is_fatal(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", ok([_text_update(5, "hi")]))
    router = RecordingRouter()
    store = _FailingStore()
    loop, client, _ = _make_loop(fake_api, router, store)

    with pytest.raises(StoreError):
        await loop.run()

    assert _texts(router) == ["hi"]
    assert store.attempts == [6, 6]
    assert client.state is SessionState.CLOSED
    assert loop.state is LoopState.TERMINATED
    assert len(fake_api.calls("getUpdates")) == 1


@pytest.mark.anyio
async def test_save_failure_does_not_mask_original_error(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", httpx.Response(502, text="bad gateway"))
    store = _FailingStore()
    loop, client, _ = _make_loop(fake_api, RecordingRouter(), store)

    with pytest.raises(TransportError):
        await loop.run()

    assert store.attempts == [0]
    assert client.state is SessionState.CLOSED


@pytest.mark.anyio
async def test_save_failure_during_reset_is_fatal(fake_api: FakeBotApi) -> None:
    fake_api.add("getMe", ok(bot_user()))
    fake_api.add("getUpdates", httpx.RemoteProtocolError("peer closed connection"))
    store = _FailingStore()
    loop, client, _ = _make_loop(fake_api, RecordingRouter(), store)

    with pytest.raises(StoreError):
        await loop.run()

    assert store.attempts == [0]
    assert loop.restarts == 0
    assert fake_api.sessions == 1
    assert client.state is SessionState.CLOSED
