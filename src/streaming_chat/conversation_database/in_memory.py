"""
In-memory repositories.

Dict-backed implementations of the storage interfaces, used by the test suite
and the bundled demo application. State lives only as long as the instance.
"""

from streaming_chat.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from streaming_chat.conversation_database.data_models.message import Message, MessageDatabase
from streaming_chat.errors import ConversationNotFoundError


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation
        return conversation

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        owned = [c for c in self.conversations.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.update_timestamp, reverse=True)

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise ConversationNotFoundError(conversation_id)
        return self.conversations[conversation_id]

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        if conversation.id not in self.conversations:
            raise ConversationNotFoundError(conversation.id)
        self.conversations[conversation.id] = conversation
        return conversation

    async def delete_conversation(self, conversation_id: str) -> bool:
        return self.conversations.pop(conversation_id, None) is not None


class InMemoryMessageDatabase(MessageDatabase):
    def __init__(self) -> None:
        self.messages: list[Message] = []

    async def create_message(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        return [m for m in self.messages if m.conversation_id == conversation_id]

    async def delete_messages_by_conversation_id(self, conversation_id: str) -> int:
        kept = [m for m in self.messages if m.conversation_id != conversation_id]
        deleted = len(self.messages) - len(kept)
        self.messages = kept
        return deleted
