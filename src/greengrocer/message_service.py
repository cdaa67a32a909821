"""Messaging between customers, carriers and the owner.

Every operation acts on behalf of the logged-in user.  Database failures
are logged and reported as ``None``, ``[]``, ``0`` or ``False``.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from greengrocer.dao import MessageDAO, OrderDAO, UserDAO
from greengrocer.metrics import MESSAGES_SENT_TOTAL
from greengrocer.models import ROLE_OWNER, Message, Order, User
from greengrocer.session import Session

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 200


def order_subject(order_id: int, subject: str) -> str:
    return f"[Order #{order_id}] {subject}"


def order_content(order_id: int, content: str) -> str:
    return f"📦 Regarding Order #{order_id}\n\n{content}"


class MessageService:
    def __init__(self, session: Session, message_dao: MessageDAO | None = None,
                 user_dao: UserDAO | None = None, order_dao: OrderDAO | None = None) -> None:
        self.session = session
        self.message_dao = message_dao or MessageDAO()
        self.user_dao = user_dao or UserDAO()
        self.order_dao = order_dao or OrderDAO()

    def _store(self, message: Message) -> Optional[Message]:
        try:
            self.message_dao.insert(message)
        except sqlite3.Error as e:
            logger.error("Could not store message",
                         extra={"user_id": message.sender_id, "extra": {"receiver": message.receiver_id, "error": str(e)}})
            return None
        MESSAGES_SENT_TOTAL.inc(role=self.session.role or "")
        logger.info(
            "Message sent",
            extra={"user_id": message.sender_id,
                   "extra": {"message_id": message.id, "receiver": message.receiver_id, "reply": message.is_reply}},
        )
        return message

    # ---- Sending ----

    def send_message(self, receiver_id: int, subject: str, content: str) -> Optional[Message]:
        """Send a new message from the logged-in user.

        Raises:
            ValueError: If the content is blank, the subject is too long or
                the receiver does not exist.
        """
        user = self.session.user
        if user is None:
            return None
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty.")
        subject = (subject or "").strip()
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValueError(f"Subject must be at most {MAX_SUBJECT_LENGTH} characters.")
        try:
            receiver = self.user_dao.find_by_id(receiver_id)
        except sqlite3.Error as e:
            logger.error("Could not look up receiver", extra={"user_id": user.id, "extra": {"error": str(e)}})
            return None
        if receiver is None:
            raise ValueError("Recipient not found.")
        return self._store(Message(sender_id=user.id, receiver_id=receiver_id,
                                   subject=subject, content=content.strip(),
                                   sender_name=user.username, receiver_name=receiver.username))

    def send_to_owner(self, subject: str, content: str) -> Optional[Message]:
        try:
            owner = self.user_dao.find_owner()
        except sqlite3.Error as e:
            logger.error("Could not look up owner", extra={"extra": {"error": str(e)}})
            return None
        if owner is None:
            return None
        return self.send_message(owner.id, subject, content)

    def _my_active_orders(self) -> List[Order]:
        user = self.session.user
        if user is None or not user.is_customer:
            return []
        try:
            return self.order_dao.active_orders_with_carriers(user.id)
        except sqlite3.Error as e:
            logger.error("Could not load orders with carriers", extra={"user_id": user.id, "extra": {"error": str(e)}})
            return []

    def _latest_assigned_order(self) -> Optional[Order]:
        user = self.session.user
        if user is None or not user.is_customer:
            return None
        try:
            return self.order_dao.latest_assigned_for_customer(user.id)
        except sqlite3.Error as e:
            logger.error("Could not load assigned order", extra={"user_id": user.id, "extra": {"error": str(e)}})
            return None

    def send_to_my_carrier(self, subject: str, content: str) -> Optional[Message]:
        """Message the carrier of the customer's most recent active order."""
        latest = self._latest_assigned_order()
        if latest is None:
            return None
        return self.send_message(latest.carrier_id, order_subject(latest.id, subject),
                                 order_content(latest.id, content))

    def send_to_carrier_for_order(self, order_id: int, subject: str, content: str) -> Optional[Message]:
        user = self.session.user
        if user is None or not user.is_customer:
            return None
        try:
            order = self.order_dao.find_by_id(order_id, with_items=False)
        except sqlite3.Error as e:
            logger.error("Could not load order", extra={"user_id": user.id, "extra": {"order_id": order_id, "error": str(e)}})
            return None
        if order is None or order.customer_id != user.id or order.carrier_id is None:
            return None
        return self.send_message(order.carrier_id, order_subject(order_id, subject),
                                 order_content(order_id, content))

    def my_assigned_carrier(self) -> Optional[User]:
        latest = self._latest_assigned_order()
        if latest is None:
            return None
        try:
            return self.user_dao.find_by_id(latest.carrier_id)
        except sqlite3.Error as e:
            logger.error("Could not load carrier", extra={"extra": {"error": str(e)}})
            return None

    def has_assigned_carrier(self) -> bool:
        return self.my_assigned_carrier() is not None

    def my_orders_with_carriers(self) -> List[Order]:
        return self._my_active_orders()

    def reply_to_message(self, original_id: int, content: str) -> Optional[Message]:
        """Reply within a thread.

        The reply goes to the other party: the original receiver when the
        logged-in user wrote the original, otherwise the original sender.
        """
        user = self.session.user
        if user is None:
            return None
        if not content or not content.strip():
            raise ValueError("Reply cannot be empty.")
        original = self.get_message(original_id)
        if original is None:
            logger.warning("Reply to unknown message", extra={"user_id": user.id, "extra": {"message_id": original_id}})
            return None
        reply = original.create_reply(content.strip())
        reply.sender_id = user.id
        reply.sender_name = user.username
        if original.sender_id == user.id:
            reply.receiver_id = original.receiver_id
            reply.receiver_name = original.receiver_name
        else:
            reply.receiver_id = original.sender_id
            reply.receiver_name = original.sender_name
        return self._store(reply)

    # ---- Reading ----

    def _for_current_user(self, finder) -> List[Message]:
        user_id = self.session.user_id
        if user_id is None:
            return []
        try:
            return finder(user_id)
        except sqlite3.Error as e:
            logger.error("Could not load messages", extra={"user_id": user_id, "extra": {"error": str(e)}})
            return []

    def received_messages(self) -> List[Message]:
        return self._for_current_user(self.message_dao.find_by_receiver)

    def sent_messages(self) -> List[Message]:
        return self._for_current_user(self.message_dao.find_by_sender)

    def unread_messages(self) -> List[Message]:
        return self._for_current_user(self.message_dao.find_unread_by_receiver)

    def conversation_with(self, other_user_id: int) -> List[Message]:
        return self._for_current_user(lambda uid: self.message_dao.find_conversation_between(uid, other_user_id))

    def unread_count(self) -> int:
        user_id = self.session.user_id
        if user_id is None:
            return 0
        try:
            return self.message_dao.unread_count(user_id)
        except sqlite3.Error as e:
            logger.error("Could not count unread messages", extra={"user_id": user_id, "extra": {"error": str(e)}})
            return 0

    def mark_as_read(self, message_id: int) -> bool:
        """Mark a message read; only its receiver can."""
        message = self.get_message(message_id)
        if message is None or message.receiver_id != self.session.user_id:
            return False
        try:
            return self.message_dao.mark_as_read(message_id)
        except sqlite3.Error as e:
            logger.error("Could not mark message read", extra={"extra": {"message_id": message_id, "error": str(e)}})
            return False

    def mark_all_as_read(self) -> int:
        user_id = self.session.user_id
        if user_id is None:
            return 0
        try:
            return self.message_dao.mark_all_as_read(user_id)
        except sqlite3.Error as e:
            logger.error("Could not mark messages read", extra={"user_id": user_id, "extra": {"error": str(e)}})
            return 0

    def conversation_thread(self, message_id: int) -> List[Message]:
        """The thread around ``message_id``, limited to messages the user sent or received."""
        if self.get_message(message_id) is None:
            return []
        try:
            thread = self.message_dao.find_conversation_thread(message_id)
        except sqlite3.Error as e:
            logger.error("Could not load thread", extra={"extra": {"message_id": message_id, "error": str(e)}})
            return []
        return [m for m in thread if self._is_party(m)]

    def all_messages_for_owner(self) -> List[Message]:
        if self.session.role != ROLE_OWNER:
            return []
        try:
            owner = self.user_dao.find_owner()
            if owner is None:
                return []
            return self.message_dao.find_by_receiver(owner.id)
        except sqlite3.Error as e:
            logger.error("Could not load owner inbox", extra={"extra": {"error": str(e)}})
            return []

    def delete_message(self, message_id: int) -> bool:
        if self.get_message(message_id) is None:
            return False
        try:
            return self.message_dao.delete(message_id)
        except sqlite3.Error as e:
            logger.error("Could not delete message", extra={"extra": {"message_id": message_id, "error": str(e)}})
            return False

    def _is_party(self, message: Message) -> bool:
        user_id = self.session.user_id
        return user_id is not None and user_id in (message.sender_id, message.receiver_id)

    def get_message(self, message_id: int) -> Optional[Message]:
        """The message, or None when the logged-in user neither sent nor received it."""
        try:
            message = self.message_dao.find_by_id(message_id)
        except sqlite3.Error as e:
            logger.error("Could not load message", extra={"extra": {"message_id": message_id, "error": str(e)}})
            return None
        if message is None or not self._is_party(message):
            return None
        return message
