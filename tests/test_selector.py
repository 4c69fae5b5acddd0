"""Test suite for the conversation list state."""

import pytest

from marketplace_chat.domain.models import Conversation
from marketplace_chat.services.selector import Channel, ConversationSelector, matches_query


def conversation(conversation_id, supplier, product=None, unread=0):
    return Conversation(
        id=conversation_id,
        subject=f"Inquiry about {product.name}" if product else "General Support Inquiry",
        counterparty=supplier,
        product_context=product,
        unread_count=unread,
    )


def test_find_matches_counterparty_and_product(supplier, product, other_product):
    selector = ConversationSelector()
    selector.replace([
        conversation("c1", supplier),
        conversation("c2", supplier, product),
        conversation("c3", supplier, other_product),
    ])

    assert selector.find(supplier.id, product.id).id == "c2"
    assert selector.find(None, other_product.id).id == "c3"
    assert selector.find(supplier.id, None).id == "c1"
    assert selector.find("someone-else", product.id) is None


def test_active_conversation_vanishing_clears_selection(supplier, product):
    selector = ConversationSelector()
    selector.replace([conversation("c1", supplier, product)])
    selector.select("c1")

    selector.replace([])

    assert selector.active_id is None
    assert selector.active is None


def test_selecting_unknown_conversation_raises(supplier):
    selector = ConversationSelector()
    with pytest.raises(KeyError):
        selector.select("missing")


def test_listeners_are_notified_until_unsubscribed(supplier, product):
    selector = ConversationSelector()
    seen = []
    unsubscribe = selector.subscribe(lambda s: seen.append(s.active_id))

    selector.replace([conversation("c1", supplier, product)])
    selector.select("c1")
    selector.select("c1")
    unsubscribe()
    selector.clear_selection()

    assert seen == [None, "c1"]


def test_upsert_and_unread_total(supplier, product, other_product):
    selector = ConversationSelector()
    selector.replace([conversation("c1", supplier, product, unread=2)])
    selector.upsert(conversation("c2", supplier, other_product, unread=1))

    assert [c.id for c in selector.conversations] == ["c2", "c1"]
    assert selector.unread_total == 3

    selector.mark_read_locally("c1")
    assert selector.unread_total == 1


def test_channel_accepts_plain_strings(supplier, product):
    selector = ConversationSelector()
    selector.replace([conversation("c1", supplier), conversation("c2", supplier, product)])

    selector.set_channel("product")

    assert selector.channel == Channel.PRODUCT
    assert [c.id for c in selector.visible()] == ["c2"]


@pytest.mark.parametrize("query, expected", [("", True), ("BOLTS", True), ("p1", True), ("li wei", True), ("copper", False)])
def test_query_matches_listed_fields(supplier, product, query, expected):
    assert matches_query(conversation("c1", supplier, product), query) is expected
