"""
Attachment service and inlining of attachment text into prompts.

Files are uploaded and stored elsewhere; the chat only holds 'Attachment'
references. Before a message is sent upstream the controller fetches each
attachment's text and appends it to the outgoing user message as a clearly
marked block, so the model can tell the user's words from file content.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from streaming_chat.config import ATTACHMENTS_DIR
from streaming_chat.errors import AttachmentError
from streaming_chat.transcript import Attachment

ATTACHMENTS_HEADER = "\n\n**Attached Files:**\n"


class AttachmentService(ABC):
    @abstractmethod
    async def get_attachment(self, attachment_id: str) -> Attachment:
        pass

    @abstractmethod
    async def fetch_content(self, attachment_id: str) -> str:
        """Return the attachment's text. Raise 'AttachmentError' if it cannot be read."""
        pass


class LocalAttachmentService(AttachmentService):
    """Attachments whose 'url' is a path relative to a local directory."""

    def __init__(self, root: Path = ATTACHMENTS_DIR) -> None:
        self.root = root
        self.attachments: dict[str, Attachment] = {}

    def register(self, attachment: Attachment) -> Attachment:
        self.attachments[attachment.id] = attachment
        return attachment

    def delete(self, attachment_id: str) -> bool:
        return self.attachments.pop(attachment_id, None) is not None

    async def get_attachment(self, attachment_id: str) -> Attachment:
        try:
            return self.attachments[attachment_id]
        except KeyError:
            raise AttachmentError(f"Attachment {attachment_id} not found") from None

    async def fetch_content(self, attachment_id: str) -> str:
        attachment = await self.get_attachment(attachment_id)
        if attachment.content is not None:
            return attachment.content
        path = self.root / attachment.url.lstrip("/")
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise AttachmentError(f"Could not read {attachment.file_name}: {exc}") from exc


async def build_attachment_block(service: AttachmentService, attachments: Sequence[Attachment]) -> str:
    """Render the marked block appended to the outgoing message. Empty when there is nothing to attach."""
    if not attachments:
        return ""
    block = ATTACHMENTS_HEADER
    for attachment in attachments:
        try:
            content = await service.fetch_content(attachment.id)
        except AttachmentError as exc:
            logger.warning(f"Attachment {attachment.id} left out of the prompt: {exc}")
            block += f"\n**{attachment.file_name}:** (Error loading file)\n"
            continue
        block += f"\n**{attachment.file_name}:**\n```\n{content}\n```\n"
    return block
