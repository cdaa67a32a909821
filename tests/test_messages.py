import helpers
from helpers import fresh_db, make_product, make_user, place_order, remove_db, session_for

import unittest

from greengrocer.message_service import MessageService, order_subject
from greengrocer.metrics import MESSAGES_SENT_TOTAL
from greengrocer.session import Session


class TestMessageService(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.owner = make_user("boss", role="owner")
        self.carrier = make_user("driver", role="carrier")
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        self.alice_msgs = MessageService(session_for(self.alice))
        self.owner_msgs = MessageService(session_for(self.owner))
        self.carrier_msgs = MessageService(session_for(self.carrier))

    def tearDown(self):
        remove_db(self.db_path)

    def test_send_validates_content_and_subject(self):
        with self.assertRaises(ValueError):
            self.alice_msgs.send_message(self.owner.id, "Hi", "   ")
        with self.assertRaises(ValueError):
            self.alice_msgs.send_message(self.owner.id, "x" * 201, "body")
        with self.assertRaises(ValueError):
            self.alice_msgs.send_message(9999, "Hi", "body")
        message = self.alice_msgs.send_message(self.owner.id, "  Hello  ", "  body  ")
        self.assertEqual((message.subject, message.content), ("Hello", "body"))
        self.assertGreater(message.id, 0)

    def test_send_to_owner_lands_in_owner_inbox(self):
        before = MESSAGES_SENT_TOTAL.value(role="customer")
        self.alice_msgs.send_to_owner("Question", "Do you sell figs?")
        inbox = self.owner_msgs.all_messages_for_owner()
        self.assertEqual(len(inbox), 1)
        self.assertEqual(inbox[0].sender_name, "alice")
        self.assertEqual(inbox[0].receiver_name, "boss")
        self.assertEqual(MESSAGES_SENT_TOTAL.value(role="customer"), before + 1)

    def test_carrier_message_needs_an_assigned_order(self):
        tomato = make_product()
        waiting = place_order(self.alice, tomato)
        self.assertIsNone(self.alice_msgs.send_to_carrier_for_order(waiting.id, "ETA", "When?"))
        self.assertIsNone(self.alice_msgs.send_to_my_carrier("ETA", "When?"))
        self.assertFalse(self.alice_msgs.has_assigned_carrier())
        self.assertEqual(self.alice_msgs.my_orders_with_carriers(), [])

        assigned = place_order(self.alice, tomato, carrier=self.carrier)
        message = self.alice_msgs.send_to_carrier_for_order(assigned.id, "ETA", "When?")
        self.assertEqual(message.receiver_id, self.carrier.id)
        self.assertEqual(message.subject, order_subject(assigned.id, "ETA"))
        self.assertTrue(message.subject.startswith(f"[Order #{assigned.id}] "))
        self.assertIn(f"Regarding Order #{assigned.id}", message.content)
        self.assertEqual(self.alice_msgs.my_assigned_carrier().id, self.carrier.id)
        self.assertEqual([o.id for o in self.alice_msgs.my_orders_with_carriers()], [assigned.id])

        bob_msgs = MessageService(session_for(self.bob))
        self.assertIsNone(bob_msgs.send_to_carrier_for_order(assigned.id, "ETA", "When?"))

    def test_reply_goes_to_the_other_party(self):
        original = self.alice_msgs.send_to_owner("Delivery", "Late again")
        reply = self.owner_msgs.reply_to_message(original.id, "Sorry!")
        self.assertEqual((reply.sender_id, reply.receiver_id), (self.owner.id, self.alice.id))
        self.assertEqual(reply.subject, "Re: Delivery")
        self.assertEqual(reply.parent_message_id, original.id)
        # replying to your own message still addresses the other side
        follow_up = self.owner_msgs.reply_to_message(original.id, "It is on its way")
        self.assertEqual(follow_up.receiver_id, self.alice.id)
        own = self.alice_msgs.reply_to_message(original.id, "Any news?")
        self.assertEqual(own.receiver_id, self.owner.id)
        with self.assertRaises(ValueError):
            self.owner_msgs.reply_to_message(original.id, " ")
        self.assertIsNone(self.owner_msgs.reply_to_message(9999, "hello"))

    def test_thread_is_returned_oldest_first(self):
        first = self.alice_msgs.send_to_owner("Figs", "Any figs?")
        second = self.owner_msgs.reply_to_message(first.id, "Next week")
        third = self.alice_msgs.reply_to_message(second.id, "Thanks")
        unrelated = self.alice_msgs.send_to_owner("Other", "Unrelated")
        thread = self.alice_msgs.conversation_thread(third.id)
        self.assertEqual([m.id for m in thread], [first.id, second.id, third.id])
        self.assertEqual([m.id for m in self.owner_msgs.conversation_thread(first.id)],
                         [first.id, second.id, third.id])
        self.assertEqual([m.id for m in self.owner_msgs.conversation_thread(unrelated.id)], [unrelated.id])

    def test_outsiders_cannot_reach_a_private_message(self):
        private = self.alice_msgs.send_to_owner("Card", "my card ends 1234")
        bob_msgs = MessageService(session_for(self.bob))
        self.assertIsNone(bob_msgs.get_message(private.id))
        self.assertEqual(bob_msgs.conversation_thread(private.id), [])
        self.assertFalse(bob_msgs.mark_as_read(private.id))
        self.assertIsNone(bob_msgs.reply_to_message(private.id, "hello"))
        self.assertFalse(bob_msgs.delete_message(private.id))
        self.assertEqual(bob_msgs.all_messages_for_owner(), [])
        # only the receiver marks a message read
        self.assertFalse(self.alice_msgs.mark_as_read(private.id))
        self.assertEqual(self.owner_msgs.unread_count(), 1)
        self.assertEqual(self.owner_msgs.get_message(private.id).content, "my card ends 1234")

    def test_unread_tracking(self):
        a = self.alice_msgs.send_to_owner("One", "1")
        self.alice_msgs.send_to_owner("Two", "2")
        self.carrier_msgs.send_message(self.owner.id, "Three", "3")
        self.assertEqual(self.owner_msgs.unread_count(), 3)
        self.assertTrue(self.owner_msgs.mark_as_read(a.id))
        self.assertEqual(len(self.owner_msgs.unread_messages()), 2)
        self.assertEqual(self.owner_msgs.mark_all_as_read(), 2)
        self.assertEqual(self.owner_msgs.unread_count(), 0)
        self.assertEqual(self.alice_msgs.unread_count(), 0)

    def test_sent_received_and_conversation(self):
        self.alice_msgs.send_to_owner("One", "1")
        self.carrier_msgs.send_message(self.alice.id, "Hi", "I'm outside")
        self.carrier_msgs.send_message(self.owner.id, "Shift", "Done for today")
        self.assertEqual(len(self.alice_msgs.sent_messages()), 1)
        self.assertEqual(len(self.alice_msgs.received_messages()), 1)
        conversation = self.carrier_msgs.conversation_with(self.owner.id)
        self.assertEqual([m.subject for m in conversation], ["Shift"])

    def test_delete_and_anonymous_session(self):
        message = self.alice_msgs.send_to_owner("Bye", "bye")
        self.assertTrue(self.owner_msgs.delete_message(message.id))
        self.assertIsNone(self.owner_msgs.get_message(message.id))
        anonymous = MessageService(Session())
        self.assertIsNone(anonymous.send_message(self.owner.id, "x", "y"))
        self.assertEqual(anonymous.received_messages(), [])
        self.assertEqual(anonymous.unread_count(), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
