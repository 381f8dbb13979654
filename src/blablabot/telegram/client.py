from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import anyio
import httpx
import msgspec

from ..errors import (
    IdentityMismatchError,
    ProtocolError,
    SessionAbortedError,
    SessionConnectionError,
    SessionResetError,
    SessionStateError,
    TransportError,
)
from ..logging import get_logger
from .api_models import Update, User
from .decode import decode, decode_updates, json_type_name, raw_update_id

logger = get_logger(__name__)

DEFAULT_SERVER_URL = "https://api.telegram.org/"
DEFAULT_TIMEOUT_S = 60.0

# Errors raised when the peer drops an established exchange.
_RESET_ERRORS = (
    httpx.RemoteProtocolError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.CloseError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
)


@dataclass(frozen=True, slots=True)
class UpdateBatch:
    updates: list[Update]
    # Ids of elements that failed to decode; still acknowledged by the cursor.
    skipped_ids: tuple[int, ...] = ()


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


def parse_envelope(method: str, body: bytes) -> Any:
    """Validate the `{ok, result}` envelope and return `result`."""
    try:
        payload = msgspec.json.decode(body)
    except msgspec.DecodeError as exc:
        raise ProtocolError(f"{method}: response is not valid JSON: {exc}") from exc
    except RecursionError:
        raise ProtocolError(f"{method}: response nested too deeply") from None
    if not isinstance(payload, dict):
        raise ProtocolError(
            f"{method}: response is {json_type_name(payload)}, expected object"
        )
    if "ok" not in payload:
        fields = ", ".join(payload) or "none"
        raise ProtocolError(f"{method}: response has no 'ok' field; fields: {fields}")
    ok = payload["ok"]
    if not isinstance(ok, bool):
        raise ProtocolError(
            f"{method}: response 'ok' is {json_type_name(ok)}, expected bool"
        )
    if not ok:
        description = payload.get("description") or "no description"
        error_code = payload.get("error_code")
        raise ProtocolError(f"{method}: ok=false ({error_code}): {description}")
    if "result" not in payload:
        fields = ", ".join(payload)
        raise ProtocolError(
            f"{method}: response has no 'result' field; fields: {fields}"
        )
    return payload["result"]


class TelegramClient:
    """One HTTP session against the Bot API.

    The session moves ``UNINITIALIZED -> ACTIVE -> CLOSED``; ``init()`` may
    reopen a closed session with a fresh connection. Requests are only
    allowed while active.
    """

    def __init__(
        self,
        token: str,
        *,
        server_url: str = DEFAULT_SERVER_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        lenient_optional: bool = False,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        if not server_url.endswith("/"):
            server_url = f"{server_url}/"
        self._base = f"{server_url}bot{token}/"
        self._timeout_s = timeout_s
        self._lenient_optional = lenient_optional
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=timeout_s)
        )
        self._client: httpx.AsyncClient | None = None
        self._state = SessionState.UNINITIALIZED
        self._inflight: anyio.CancelScope | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    def request_url(self, method: str) -> str:
        return f"{self._base}{method}"

    async def init(self) -> None:
        if self._state is SessionState.ACTIVE:
            raise SessionStateError("session is already active")
        logger.info("session.init", previous=self._state.value)
        self._client = self._client_factory()
        self._state = SessionState.ACTIVE

    async def close(self) -> None:
        if self._state is not SessionState.ACTIVE:
            return
        logger.info("session.close")
        client, self._client = self._client, None
        self._state = SessionState.CLOSED
        if client is not None:
            await client.aclose()

    async def abort(self) -> None:
        if self._state is not SessionState.ACTIVE:
            return
        inflight = self._inflight
        logger.info("session.abort", inflight=inflight is not None)
        client, self._client = self._client, None
        self._state = SessionState.CLOSED
        if inflight is not None:
            inflight.cancel()
        if client is not None:
            with anyio.CancelScope(shield=True):
                await client.aclose()

    def _require_active(self, method: str) -> httpx.AsyncClient:
        if self._state is not SessionState.ACTIVE or self._client is None:
            raise SessionStateError(
                f"{method}: session is {self._state.value}, expected active"
            )
        return self._client

    async def _send(
        self,
        method: str,
        request: Callable[[httpx.AsyncClient], Awaitable[httpx.Response]],
    ) -> bytes:
        client = self._require_active(method)
        resp: httpx.Response | None = None
        with anyio.CancelScope() as scope:
            self._inflight = scope
            try:
                resp = await request(client)
            except _RESET_ERRORS as exc:
                logger.warning(
                    "telegram.connection_reset",
                    method=method,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                raise SessionResetError(f"{method}: connection reset: {exc}") from exc
            except httpx.HTTPError as exc:
                logger.error(
                    "telegram.network_error",
                    method=method,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                raise SessionConnectionError(f"{method}: {exc}") from exc
            finally:
                self._inflight = None
        if scope.cancelled_caught or resp is None:
            raise SessionAbortedError(f"{method}: session aborted")

        if resp.status_code != httpx.codes.OK:
            logger.error(
                "telegram.http_error",
                method=method,
                status=resp.status_code,
                reason=resp.reason_phrase,
                url=str(resp.request.url),
                body=resp.text,
            )
            raise TransportError(resp.status_code, resp.reason_phrase, method=method)
        return resp.content

    async def get(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: httpx.Timeout | None = None,
    ) -> bytes:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug("telegram.request", method=method, verb="GET", params=query)
        url = self.request_url(method)
        return await self._send(
            method,
            lambda client: client.get(
                url,
                params=query or None,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            ),
        )

    async def post(self, method: str, payload: dict[str, Any]) -> bytes:
        logger.debug("telegram.request", method=method, verb="POST", payload=payload)
        url = self.request_url(method)
        return await self._send(method, lambda client: client.post(url, json=payload))

    async def _call_get(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: httpx.Timeout | None = None,
    ) -> Any:
        body = await self.get(method, params, timeout=timeout)
        result = parse_envelope(method, body)
        logger.debug("telegram.response", method=method, result=result)
        return result

    async def _call_post(self, method: str, payload: dict[str, Any]) -> Any:
        body = await self.post(method, payload)
        result = parse_envelope(method, body)
        logger.debug("telegram.response", method=method, result=result)
        return result

    async def get_me(self) -> User:
        result = await self._call_get("getMe")
        return decode(result, User, lenient_optional=self._lenient_optional)

    async def check_bot_info(self, first_name: str) -> User:
        logger.info("session.check_bot_info", expected=first_name)
        user = await self.get_me()
        if not user.is_bot or user.first_name != first_name:
            logger.error(
                "session.identity_mismatch",
                expected=first_name,
                is_bot=user.is_bot,
                first_name=user.first_name,
            )
            raise IdentityMismatchError(f"Wrong bot info: {user.describe()}")
        return user

    async def get_update_batch(
        self,
        offset: int | None = None,
        timeout: int | None = None,
    ) -> UpdateBatch:
        params: dict[str, Any] = {"offset": offset, "timeout": timeout}
        http_timeout = None
        if timeout:
            http_timeout = httpx.Timeout(self._timeout_s + timeout)
        result = await self._call_get("getUpdates", params, timeout=http_timeout)
        skipped: list[int] = []

        def on_skip(item: Any, _: Exception) -> None:
            update_id = raw_update_id(item)
            if update_id is not None:
                skipped.append(update_id)

        updates = decode_updates(
            result, lenient_optional=self._lenient_optional, on_skip=on_skip
        )
        logger.info(
            "telegram.updates",
            offset=offset,
            received=len(result),
            decoded=len(updates),
        )
        return UpdateBatch(updates=updates, skipped_ids=tuple(skipped))

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int | None = None,
    ) -> list[Update]:
        batch = await self.get_update_batch(offset=offset, timeout=timeout)
        return batch.updates

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
        disable_web_page_preview: bool | None = None,
        disable_notification: bool | None = None,
        reply_to_message_id: int | None = None,
    ) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if disable_web_page_preview is not None:
            payload["disable_web_page_preview"] = disable_web_page_preview
        if disable_notification is not None:
            payload["disable_notification"] = disable_notification
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        return await self._call_post("sendMessage", payload)

    async def send_sticker(self, chat_id: int, sticker: str) -> Any:
        return await self._call_post(
            "sendSticker", {"chat_id": chat_id, "sticker": sticker}
        )

    async def send_document(self, chat_id: int, document: str) -> Any:
        return await self._call_post(
            "sendDocument", {"chat_id": chat_id, "document": document}
        )
