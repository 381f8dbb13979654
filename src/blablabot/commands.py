from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias

from .errors import BotError, SessionResetError
from .logging import get_logger
from .telegram.api_models import Message

logger = get_logger(__name__)

RANDOM_MAX = 2**31 - 1
WEATHER_TEXT = "Winter Is Coming."
STYLEGUIDE_TEXT = "Lines should be at most 80 characters long. Jokes, at most 79."
STICKER_FILE_ID = "CAADAgADegADECECEAACxyOkybkFAg"
GIF_FILE_ID = "CgADAgADjQADJ7MRSM0LdfDklYBfAg"
ECHO_SUFFIX = " blablabla..."


@dataclass(frozen=True, slots=True)
class Continue:
    pass


@dataclass(frozen=True, slots=True)
class Stop:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Abort:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Fatal:
    error: BaseException


Outcome: TypeAlias = Continue | Stop | Abort | Fatal

CONTINUE = Continue()


class ReplyApi(Protocol):
    async def send_message(self, chat_id: int, text: str) -> Any: ...

    async def send_sticker(self, chat_id: int, sticker: str) -> Any: ...

    async def send_document(self, chat_id: int, document: str) -> Any: ...


Handler: TypeAlias = Callable[[Message], Awaitable[Outcome]]


class CommandRouter:
    """Maps literal message text to a handler; anything else is echoed."""

    def __init__(self, api: ReplyApi, *, rng: random.Random | None = None) -> None:
        self._api = api
        self._rng = rng or random.SystemRandom()
        self._commands: dict[str, Handler] = {
            "/random": self.handle_random,
            "/weather": self.handle_weather,
            "/styleguide": self.handle_styleguide,
            "/stop": self.handle_stop,
            "/crash": self.handle_crash,
            "/sticker": self.handle_sticker,
            "/gif": self.handle_gif,
        }

    @property
    def commands(self) -> tuple[str, ...]:
        return tuple(self._commands)

    async def dispatch(self, message: Message) -> Outcome:
        text = message.text
        if text is None:
            logger.debug(
                "commands.ignored",
                chat_id=message.chat.id,
                message_id=message.message_id,
            )
            return CONTINUE
        handler = self._commands.get(text, self.handle_default)
        logger.info(
            "commands.dispatch",
            command=text if text in self._commands else None,
            chat_id=message.chat.id,
            message_id=message.message_id,
        )
        try:
            return await handler(message)
        except SessionResetError:
            raise
        except BotError as exc:
            logger.error(
                "commands.failed",
                chat_id=message.chat.id,
                message_id=message.message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return Fatal(exc)

    async def handle_random(self, message: Message) -> Outcome:
        number = self._rng.randint(0, RANDOM_MAX)
        await self._api.send_message(message.chat.id, str(number))
        return CONTINUE

    async def handle_weather(self, message: Message) -> Outcome:
        await self._api.send_message(message.chat.id, WEATHER_TEXT)
        return CONTINUE

    async def handle_styleguide(self, message: Message) -> Outcome:
        await self._api.send_message(message.chat.id, STYLEGUIDE_TEXT)
        return CONTINUE

    async def handle_stop(self, message: Message) -> Outcome:
        return Stop("'/stop' command received")

    async def handle_crash(self, message: Message) -> Outcome:
        return Abort("'/crash' command received")

    async def handle_sticker(self, message: Message) -> Outcome:
        await self._api.send_sticker(message.chat.id, STICKER_FILE_ID)
        return CONTINUE

    async def handle_gif(self, message: Message) -> Outcome:
        await self._api.send_document(message.chat.id, GIF_FILE_ID)
        return CONTINUE

    async def handle_default(self, message: Message) -> Outcome:
        await self._api.send_message(message.chat.id, f"{message.text}{ECHO_SUFFIX}")
        return CONTINUE
