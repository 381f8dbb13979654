from __future__ import annotations

import enum
from typing import Protocol

import anyio

from ..commands import Abort, Continue, Fatal, Outcome, Stop
from ..cursor import CursorStore
from ..errors import SessionResetError, StoreError
from ..logging import get_logger
from .api_models import Message
from .client import TelegramClient

logger = get_logger(__name__)

DEFAULT_POLL_TIMEOUT_S = 30


class LoopState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    RECOVERING = "recovering"
    TERMINATED = "terminated"


class Dispatcher(Protocol):
    async def dispatch(self, message: Message) -> Outcome: ...


class PollLoop:
    """Long-polls ``getUpdates`` from the persisted cursor and dispatches.

    Updates are handled one at a time in server order. The cursor is saved
    after every non-empty batch and before any reaction to a stop, abort,
    reset or failure.
    """

    def __init__(
        self,
        client: TelegramClient,
        store: CursorStore,
        router: Dispatcher,
        *,
        bot_name: str,
        poll_timeout: int = DEFAULT_POLL_TIMEOUT_S,
        max_restarts: int | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._router = router
        self._bot_name = bot_name
        self._poll_timeout = poll_timeout
        self._max_restarts = max_restarts
        self.watermark = 0
        self.state = LoopState.IDLE
        self.restarts = 0
        self._polled = False
        self._last_reset: SessionResetError | None = None

    def _set_state(self, state: LoopState) -> None:
        if state is not self.state:
            logger.debug("loop.state", previous=self.state.value, state=state.value)
        self.state = state

    def _persist(self) -> None:
        self._store.save(self.watermark)

    def _persist_after_failure(self) -> None:
        try:
            self._persist()
        except StoreError as exc:
            logger.error("loop.save_failed", update_id=self.watermark, error=str(exc))

    async def run(self) -> None:
        self.watermark = self._store.load()
        logger.info("loop.start", offset=self.watermark, timeout=self._poll_timeout)
        consecutive = 0
        try:
            while await self._run_session():
                self.restarts += 1
                consecutive = 0 if self._polled else consecutive + 1
                if self._max_restarts is not None and consecutive > self._max_restarts:
                    logger.error("loop.restart_limit", restarts=consecutive)
                    if self._last_reset is not None:
                        raise self._last_reset
                    return
                logger.info("loop.restart", restarts=self.restarts, offset=self.watermark)
        finally:
            self._set_state(LoopState.TERMINATED)
        logger.info("loop.stopped", offset=self.watermark)

    async def _run_session(self) -> bool:
        """Drive one session; return True when the loop should restart."""
        self._polled = False
        await self._client.init()
        try:
            await self._client.check_bot_info(self._bot_name)
            while True:
                self._set_state(LoopState.POLLING)
                batch = await self._client.get_update_batch(
                    offset=self.watermark, timeout=self._poll_timeout
                )
                self._polled = True
                if not batch.updates and not batch.skipped_ids:
                    continue
                self._set_state(LoopState.DISPATCHING)
                for update in batch.updates:
                    self.watermark = max(self.watermark, update.update_id + 1)
                    if update.message is None:
                        continue
                    outcome = await self._router.dispatch(update.message)
                    if isinstance(outcome, Continue):
                        continue
                    if isinstance(outcome, Stop):
                        logger.info("loop.stop", reason=outcome.reason)
                        self._persist()
                        await self._client.close()
                        return False
                    if isinstance(outcome, Abort):
                        logger.warning("loop.abort", reason=outcome.reason)
                        self._set_state(LoopState.RECOVERING)
                        self._persist()
                        await self._client.abort()
                        return True
                    if isinstance(outcome, Fatal):
                        raise outcome.error
                if batch.skipped_ids:
                    self.watermark = max(self.watermark, max(batch.skipped_ids) + 1)
                self._persist()
        except SessionResetError as exc:
            logger.warning("loop.connection_reset", error=str(exc))
            self._set_state(LoopState.RECOVERING)
            self._last_reset = exc
            try:
                self._persist()
            finally:
                await self._client.close()
            return True
        except BaseException as exc:
            if isinstance(exc, Exception):
                logger.error(
                    "loop.fatal",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
            self._persist_after_failure()
            with anyio.CancelScope(shield=True):
                await self._client.close()
            raise
