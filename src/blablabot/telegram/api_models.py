"""Msgspec models for the Telegram Bot API payloads the bot understands.

Every field past the mandatory ones defaults to ``None`` ("not present").
Objects the bot never looks into are kept as raw JSON placeholders.
"""

from __future__ import annotations

from typing import Any

import msgspec

__all__ = [
    "Chat",
    "Message",
    "Placeholder",
    "Sticker",
    "Update",
    "User",
]

Placeholder = dict[str, Any]


class _Record(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    pass


class User(_Record):
    id: int
    is_bot: bool
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None

    def describe(self) -> str:
        return f"id={self.id} is_bot={self.is_bot} first_name={self.first_name!r}"


class Chat(_Record):
    id: int
    type: str
    title: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    all_members_are_administrators: bool | None = None
    photo: Placeholder | None = None
    description: str | None = None
    invite_link: str | None = None
    pinned_message: Message | None = None
    sticker_set_name: str | None = None
    can_set_sticker_set: bool | None = None


class Sticker(_Record):
    file_id: str
    width: int
    height: int
    thumb: Placeholder | None = None
    emoji: str | None = None
    set_name: str | None = None
    mask_position: Placeholder | None = None
    file_size: int | None = None


class Message(_Record):
    message_id: int
    date: int
    chat: Chat
    from_: User | None = msgspec.field(default=None, name="from")
    forward_from: User | None = None
    forward_from_chat: Chat | None = None
    forward_from_message_id: int | None = None
    forward_signature: str | None = None
    forward_date: int | None = None
    reply_to_message: Message | None = None
    edit_date: int | None = None
    media_group_id: str | None = None
    author_signature: str | None = None
    text: str | None = None
    entities: list[Placeholder] | None = None
    caption_entities: list[Placeholder] | None = None
    audio: Placeholder | None = None
    document: Placeholder | None = None
    game: Placeholder | None = None
    photo: list[Placeholder] | None = None
    sticker: Sticker | None = None
    video: Placeholder | None = None
    voice: Placeholder | None = None
    video_note: Placeholder | None = None
    caption: str | None = None
    contact: Placeholder | None = None
    location: Placeholder | None = None
    venue: Placeholder | None = None
    new_chat_members: list[User] | None = None
    left_chat_member: User | None = None
    new_chat_title: str | None = None
    new_chat_photo: list[Placeholder] | None = None
    delete_chat_photo: bool | None = None
    group_chat_created: bool | None = None
    supergroup_chat_created: bool | None = None
    channel_chat_created: bool | None = None
    migrate_to_chat_id: int | None = None
    migrate_from_chat_id: int | None = None
    pinned_message: Message | None = None
    invoice: Placeholder | None = None
    successful_payment: Placeholder | None = None


class Update(_Record):
    update_id: int
    message: Message | None = None
    edited_message: Message | None = None
    channel_post: Message | None = None
    edited_channel_post: Message | None = None
    inline_query: Placeholder | None = None
    chosen_inline_result: Placeholder | None = None
    callback_query: Placeholder | None = None
    shipping_query: Placeholder | None = None
    pre_checkout_query: Placeholder | None = None
