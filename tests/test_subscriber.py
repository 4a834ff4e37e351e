import threading

import pytest

from mercurehub.subscriber import JSONLD_CONTEXT, Subscriber, Subscription
from mercurehub.update import Update


def test_dispatch_history_before_live():
    s = Subscriber("1")
    s.topics = ["http://example.com"]
    try:
        s.dispatch(Update(topics=s.topics, id="3"), False)
        s.dispatch(Update(topics=s.topics, id="1"), True)
        s.dispatch(Update(topics=s.topics, id="4"), False)
        s.dispatch(Update(topics=s.topics, id="2"), True)
        s.history_dispatched("")

        assert s.ready() == 2

        received = [s.receive(timeout=1).id for _ in range(4)]
        assert received == ["1", "2", "3", "4"]
        assert s.wait_response_last_event_id(timeout=1) == ""
    finally:
        s.disconnect()


def test_disconnect_twice():
    s = Subscriber("")
    s.disconnect()
    s.disconnect()

    assert s.dispatch(Update(), False) is False
    assert s.disconnected is True


def test_receive_drains_then_returns_none_after_disconnect():
    s = Subscriber("")
    s.ready()
    assert s.dispatch(Update(id="a"), False) is True
    s.disconnect()

    assert s.receive(timeout=1).id == "a"
    assert s.receive(timeout=1) is None


def test_receive_timeout():
    s = Subscriber("")
    with pytest.raises(TimeoutError):
        s.receive(timeout=0.01)


def test_wait_response_last_event_id_timeout():
    s = Subscriber("")
    with pytest.raises(TimeoutError):
        s.wait_response_last_event_id(timeout=0.01)


def test_receive_wakes_on_dispatch_from_other_thread():
    s = Subscriber("")
    s.ready()
    thread = threading.Thread(target=lambda: s.dispatch(Update(id="x"), False))
    thread.start()
    assert s.receive(timeout=2).id == "x"
    thread.join()


def test_log_subscriber():
    s = Subscriber("123")
    s.remote_addr = "127.0.0.1"
    s.set_topics(["https://example.com/bar"], ["https://example.com/foo"])

    fields = s.log_fields()
    assert fields["last_event_id"] == "123"
    assert fields["remote_addr"] == "127.0.0.1"
    assert fields["topic_selectors"] == ["https://example.com/foo"]
    assert fields["topics"] == ["https://example.com/bar"]
    assert fields["id"] == s.id


def test_log_fields_omit_unset_values():
    s = Subscriber("")
    assert s.log_fields() == {"id": s.id, "last_event_id": ""}


def test_id_is_uuid_urn_and_escaped():
    s = Subscriber("")
    assert s.id.startswith("urn:uuid:")
    assert s.escaped_id == s.id.replace(":", "%3A")


def test_match_topic_templates_and_raw_strings():
    s = Subscriber("")
    s.set_topics(
        [
            "http://example.com/books/1",
            "string",
            "http://example.com/reviews/{id}",
            "http://example.com/hub?topic=faulty{iri",
        ],
        None,
    )
    assert s.match_topic("http://example.com/books/1", False)
    assert s.match_topic("http://example.com/reviews/22", False)
    assert s.match_topic("string", False)
    assert s.match_topic("http://example.com/hub?topic=faulty{iri", False)
    assert not s.match_topic("http://example.com/not-subscribed", False)
    assert not s.match_topic("http://example.com/reviews/22", True)


def test_match_private_updates():
    s = Subscriber("")
    s.set_topics(
        ["http://example.com/subscribed", "http://example.com/subscribed-public-only"],
        ["http://example.com/subscribed"],
    )
    assert s.match(Update(topics=["http://example.com/subscribed"]))
    assert not s.match(Update(topics=["http://example.com/not-subscribed"]))
    assert not s.match(Update(topics=["http://example.com/subscribed-public-only"], private=True))
    assert s.match(Update(topics=["http://example.com/subscribed-public-only"]))


def test_match_star_private_selector():
    s = Subscriber("")
    s.set_topics(["http://example.com/reviews/{id}"], ["random", "*"])
    assert s.match(Update(topics=["http://example.com/reviews/21"], private=True))


def test_get_subscriptions_with_payload():
    s = Subscriber("")
    s.set_topics(["https://example.com"], None)
    s.claims = {"mercure": {"payload": {"foo": "bar"}}}

    subscriptions = s.get_subscriptions("", JSONLD_CONTEXT, True)
    assert len(subscriptions) == 1
    sub = subscriptions[0]
    assert sub.id == "/.well-known/mercure/subscriptions/https%3A%2F%2Fexample.com/" + s.escaped_id
    assert sub.topic == "https://example.com"
    assert sub.subscriber == s.id

    document = sub.to_dict()
    assert document["@context"] == "https://mercure.rocks/"
    assert document["type"] == "Subscription"
    assert document["active"] is True
    assert document["payload"] == {"foo": "bar"}
    assert "lastEventID" not in document


def test_get_subscriptions_filtered_by_topic():
    s = Subscriber("")
    s.set_topics(["http://example.com/foo"], None)
    assert s.get_subscriptions("http://example.com/bar", "", True) == []
    assert [sub.topic for sub in s.get_subscriptions("http://example.com/foo", "", False)] == [
        "http://example.com/foo"
    ]


def test_subscription_to_dict_omits_empty_fields():
    sub = Subscription(id="/x", subscriber="urn:uuid:abc", topic="t", active=False)
    assert sub.to_dict() == {
        "id": "/x",
        "type": "Subscription",
        "subscriber": "urn:uuid:abc",
        "topic": "t",
        "active": False,
    }
    sub.last_event_id = "earliest"
    assert sub.to_dict()["lastEventID"] == "earliest"