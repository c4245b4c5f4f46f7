"""
Tests for the ordering dialog: step progression, replies, and order finalization.
"""

import threading

import pytest

from orderbot import replies
from orderbot.broker import AssignmentBroker
from orderbot.conversation import OrderConversation, OrderIdAllocator
from orderbot.models import OrderStatus
from orderbot.order_store import InMemoryOrderStore, OrderStoreError
from orderbot.session_store import SessionStep

from conftest import CUSTOMER, OTHER_CUSTOMER, VENDOR_A, VENDOR_B, RecordingGateway, send_all

CHECKOUT = ["hi", "Shirt x 2", "done", "Jane Doe", "12 Elm St", "Cash"]


class CommitThenFailStore(InMemoryOrderStore):
    """Writes the order, then reports a failure once, like a lost acknowledgement."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_after_write = 1

    def insert_order(self, order) -> None:
        super().insert_order(order)
        if self.fail_after_write > 0:
            self.fail_after_write -= 1
            raise OrderStoreError("connection reset after write")


class TestEndToEnd:
    def test_full_order_scenario(self, conversation, gateway, store, sessions):
        turns = send_all(conversation, CUSTOMER, *CHECKOUT)

        assert "Mochitochi Laundry Menu" in turns[0].replies[0]
        assert sessions.get(CUSTOMER) is not None
        assert turns[1].replies == [replies.item_added(sessions.get(CUSTOMER).cart.items[0]), replies.ADD_MORE]
        assert sessions.get(CUSTOMER).cart.total() == 30
        assert turns[2].replies == [replies.ASK_NAME]
        assert turns[3].replies == [replies.ASK_ADDRESS]
        assert turns[4].replies == [replies.ASK_PAYMENT]
        summary = turns[5].replies[0]
        assert "• Shirt x 2 = ₹30" in summary
        assert "💰 Total: ₹30" in summary
        assert "Jane Doe" in summary and "12 Elm St" in summary and "Cash" in summary

        placed = conversation.handle_message(CUSTOMER, "Place Order")

        assert placed.order is not None
        saved = store.find_order(placed.order.order_id)
        assert saved.status == OrderStatus.PENDING
        assert saved.customer_id == CUSTOMER
        assert saved.customer.name == "Jane Doe"
        assert saved.customer.payment_method == "Cash"
        assert saved.total == 30
        assert placed.replies == [replies.order_placed(saved.order_id)]
        assert CUSTOMER not in sessions
        for vendor in (VENDOR_A, VENDOR_B):
            cards = gateway.messages_to(vendor)
            assert len(cards) == 1
            assert f"Reply: ACCEPT {saved.order_id}" in cards[0]

    def test_replies_are_sent_in_order(self, conversation, gateway):
        send_all(conversation, CUSTOMER, "hi", "Shirt x 1")

        sent = gateway.messages_to(CUSTOMER)
        assert sent[1:] == ["✅ Added: Shirt x 1", replies.ADD_MORE]


class TestStepProgression:
    def test_steps_advance_strictly_in_sequence(self, conversation):
        texts = ["hi", "Shirt x 2", "Pants x 1", "done", "Jane", "Elm St", "UPI"]
        steps = [turn.step for turn in send_all(conversation, CUSTOMER, *texts)]

        assert steps == [
            SessionStep.ORDERING,
            SessionStep.ORDERING,
            SessionStep.ORDERING,
            SessionStep.GET_NAME,
            SessionStep.GET_ADDRESS,
            SessionStep.GET_PAYMENT,
            SessionStep.CONFIRM,
        ]

    def test_first_message_is_not_parsed_as_item(self, conversation, sessions):
        conversation.handle_message(CUSTOMER, "Shirt x 2")

        assert sessions.get(CUSTOMER).cart.is_empty()

    def test_done_with_empty_cart_stays_in_ordering(self, conversation):
        turns = send_all(conversation, CUSTOMER, "hi", "DONE")

        assert turns[1].replies == [replies.CART_EMPTY]
        assert turns[1].step == SessionStep.ORDERING

    def test_bad_item_line_gives_format_hint(self, conversation, sessions):
        turns = send_all(conversation, CUSTOMER, "hi", "two shirts please")

        assert turns[1].replies == [replies.ITEM_FORMAT_HINT]
        assert turns[1].step == SessionStep.ORDERING
        assert sessions.get(CUSTOMER).cart.is_empty()

    def test_unknown_item_gets_its_own_hint(self, conversation):
        turns = send_all(conversation, CUSTOMER, "hi", "Blanket x 2")

        assert turns[1].replies == [replies.UNKNOWN_ITEM_HINT]

    def test_blank_name_reprompts(self, conversation):
        turns = send_all(conversation, CUSTOMER, "hi", "Shirt x 1", "done", "   ")

        assert turns[3].replies == [replies.ASK_NAME]
        assert turns[3].step == SessionStep.GET_NAME

    def test_confirm_step_reprompts_without_state_change(self, conversation, store):
        send_all(conversation, CUSTOMER, *CHECKOUT)

        turn = conversation.handle_message(CUSTOMER, "yes please")

        assert turn.replies == [replies.CONFIRM_PROMPT]
        assert turn.step == SessionStep.CONFIRM
        assert turn.order is None

    def test_place_order_accepts_extra_spacing_and_case(self, conversation):
        send_all(conversation, CUSTOMER, *CHECKOUT)

        turn = conversation.handle_message(CUSTOMER, "  PLACE   order ")

        assert turn.order is not None

    def test_cancel_resets_the_session(self, conversation, sessions):
        send_all(conversation, CUSTOMER, "hi", "Shirt x 1", "done")

        turn = conversation.handle_message(CUSTOMER, "Cancel")

        assert turn.replies == [replies.CANCELLED]
        assert CUSTOMER not in sessions
        restart = conversation.handle_message(CUSTOMER, "hello again")
        assert restart.step == SessionStep.ORDERING

    def test_users_have_independent_sessions(self, conversation, sessions):
        send_all(conversation, CUSTOMER, "hi", "Shirt x 1", "done")
        conversation.handle_message(OTHER_CUSTOMER, "hi")

        assert sessions.get(CUSTOMER).step == SessionStep.GET_NAME
        assert sessions.get(OTHER_CUSTOMER).step == SessionStep.ORDERING


class TestFinalization:
    def test_duplicate_place_order_creates_one_order(self, conversation, store, gateway):
        send_all(conversation, CUSTOMER, *CHECKOUT)

        first = conversation.handle_message(CUSTOMER, "Place Order")
        second = conversation.handle_message(CUSTOMER, "Place Order")

        assert first.order is not None
        assert second.order is None
        assert second.replies == [replies.ALREADY_PLACED]
        assert len(store._orders) == 1
        assert len(gateway.messages_to(VENDOR_A)) == 1

    def test_place_order_after_window_starts_fresh_dialog(self, conversation, clock, store):
        send_all(conversation, CUSTOMER, *CHECKOUT, "Place Order")
        clock.advance(601)

        turn = conversation.handle_message(CUSTOMER, "place order")

        assert turn.step == SessionStep.ORDERING
        assert len(store._orders) == 1

    def test_store_failure_keeps_session_for_retry(self, conversation, store, sessions, gateway):
        send_all(conversation, CUSTOMER, *CHECKOUT)
        store.fail_inserts = 1
        gateway.clear()

        with pytest.raises(OrderStoreError):
            conversation.handle_message(CUSTOMER, "Place Order")

        assert sessions.get(CUSTOMER).step == SessionStep.CONFIRM
        assert store._orders == {}
        assert gateway.sent == []

        retry = conversation.handle_message(CUSTOMER, "Place Order")
        assert retry.order is not None
        assert store.find_order(retry.order.order_id) is not None

    def test_retry_after_unacknowledged_write_keeps_one_order(self, catalog, sessions, gateway):
        store = CommitThenFailStore()
        broker = AssignmentBroker(store, gateway, [VENDOR_A, VENDOR_B])
        conversation = OrderConversation(catalog, sessions, store, broker, gateway)
        send_all(conversation, CUSTOMER, *CHECKOUT)

        with pytest.raises(OrderStoreError):
            conversation.handle_message(CUSTOMER, "Place Order")
        retry = conversation.handle_message(CUSTOMER, "Place Order")

        assert list(store._orders) == [retry.order.order_id]
        assert retry.replies == [replies.order_placed(retry.order.order_id)]
        assert len(gateway.messages_to(VENDOR_A)) == 1
        assert CUSTOMER not in sessions

    def test_retry_reuses_the_order_id(self, conversation, store, sessions):
        send_all(conversation, CUSTOMER, *CHECKOUT)
        store.fail_inserts = 1

        with pytest.raises(OrderStoreError):
            conversation.handle_message(CUSTOMER, "Place Order")
        first_id = sessions.get(CUSTOMER).order_id
        retry = conversation.handle_message(CUSTOMER, "Place Order")

        assert retry.order.order_id == first_id

    def test_delivery_failure_does_not_affect_state(self, catalog, sessions, store):
        gateway = RecordingGateway(failing=(CUSTOMER, VENDOR_A))
        broker = AssignmentBroker(store, gateway, [VENDOR_A, VENDOR_B])
        conversation = OrderConversation(catalog, sessions, store, broker, gateway)

        turns = send_all(conversation, CUSTOMER, *CHECKOUT, "Place Order")

        assert turns[-1].order is not None
        assert store.find_order(turns[-1].order.order_id).status == OrderStatus.PENDING
        assert len(gateway.messages_to(VENDOR_B)) == 1

    def test_concurrent_messages_for_one_user_are_not_lost(self, conversation, sessions):
        conversation.handle_message(CUSTOMER, "hi")
        barrier = threading.Barrier(6)

        def add_item():
            barrier.wait()
            conversation.handle_message(CUSTOMER, "Shirt x 1")

        threads = [threading.Thread(target=add_item) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(sessions.get(CUSTOMER).cart) == 6


class TestOrderIdAllocator:
    def test_ids_are_timestamp_based_and_strictly_increasing(self):
        allocator = OrderIdAllocator(clock=lambda: 1700000000.0)

        ids = [allocator.next_id() for _ in range(3)]

        assert ids == ["ORD-1700000000000", "ORD-1700000000001", "ORD-1700000000002"]
