"""
Conversations and messages

Starting a conversation always creates a new one, even between a pair who
already talk. Messages are append-only apart from the read flag.
"""
import logging
from typing import Callable, List, Optional

from database import StorageBackend, Unsubscribe, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from schemas import Conversation, Message, User, load_record, load_records

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000


def _clean_text(text: Optional[str]) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message must not exceed {MAX_MESSAGE_LENGTH} characters")
    return text


class MessagingService:
    def __init__(self, store: StorageBackend):
        self.store = store

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = load_record(Conversation, self.store.get_document("conversation", conversation_id))
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if user_id not in conversation.participants:
            raise PermissionDeniedError("You are not part of this conversation")
        return conversation

    def start_conversation(
        self,
        sender: User,
        recipient_id: str,
        text: str,
        subject: Optional[str] = None,
        sponsorship_id: Optional[str] = None,
    ) -> Conversation:
        text = _clean_text(text)
        if recipient_id == sender.id:
            raise ValidationError("You cannot message yourself")
        recipient = load_record(User, self.store.get_document("user", recipient_id))
        if recipient is None:
            raise NotFoundError("Recipient not found")

        now = utcnow()
        conversation = Conversation(
            participants=[sender.id, recipient.id],
            participant_names={sender.id: sender.name, recipient.id: recipient.name},
            participant_roles={sender.id: sender.role, recipient.id: recipient.role},
            last_message=text,
            last_message_at=now,
            subject=(subject or "").strip() or None,
            sponsorship_id=sponsorship_id,
        )
        conversation.id = self.store.create_document("conversation", conversation)
        self.store.create_document(
            "message",
            Message(conversation_id=conversation.id, sender_id=sender.id, sender_name=sender.name, text=text, sent_at=now),
        )
        logger.info("Conversation %s started by %s with %s", conversation.id, sender.id, recipient.id)
        return self.get_conversation(conversation.id, sender.id)

    def send_message(self, conversation_id: str, sender: User, text: str) -> Message:
        text = _clean_text(text)
        self.get_conversation(conversation_id, sender.id)
        now = utcnow()
        message = Message(conversation_id=conversation_id, sender_id=sender.id, sender_name=sender.name, text=text, sent_at=now)
        message.id = self.store.create_document("message", message)
        self.store.update_document("conversation", conversation_id, {"last_message": text, "last_message_at": now})
        return load_record(Message, self.store.get_document("message", message.id))

    def list_conversations(self, user_id: str) -> List[Conversation]:
        docs = self.store.get_documents("conversation", {"participants": user_id}, order_by="last_message_at", descending=True)
        return load_records(Conversation, docs)

    def list_messages(self, conversation_id: str, user_id: str) -> List[Message]:
        self.get_conversation(conversation_id, user_id)
        docs = self.store.get_documents("message", {"conversation_id": conversation_id}, order_by="sent_at")
        return load_records(Message, docs)

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Flag every message the reader received in this conversation as read."""
        self.get_conversation(conversation_id, reader_id)
        count = 0
        for doc in self.store.get_documents("message", {"conversation_id": conversation_id, "read": False}):
            if doc["sender_id"] != reader_id:
                self.store.update_document("message", doc["id"], {"read": True})
                count += 1
        return count

    def unread_count(self, user_id: str) -> int:
        total = 0
        for conversation in self.list_conversations(user_id):
            for doc in self.store.get_documents("message", {"conversation_id": conversation.id, "read": False}):
                if doc["sender_id"] != user_id:
                    total += 1
        return total

    def watch_messages(self, conversation_id: str, callback: Callable[[Message], None]) -> Unsubscribe:
        """Call callback for each new message in the conversation until unsubscribed."""

        def _listener(operation, doc):
            if operation == "insert" and doc.get("conversation_id") == conversation_id:
                callback(load_record(Message, doc))

        return self.store.subscribe("message", _listener)
