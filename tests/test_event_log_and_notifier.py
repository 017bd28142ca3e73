from __future__ import annotations

from datetime import timedelta

from src.fleet_alerts.schemas.common import EventType
from src.fleet_alerts.schemas.events import EventsQuery
from src.fleet_alerts.services.notifier import EventBroadcaster


def test_failing_listener_does_not_affect_others():
    broadcaster = EventBroadcaster()
    received = []

    def broken(event):
        raise ValueError("listener bug")

    broadcaster.subscribe(broken)
    broadcaster.subscribe(received.append)

    delivered = broadcaster.publish({"alertId": "a1", "type": "CREATED"})

    assert delivered == 1
    assert received == [{"alertId": "a1", "type": "CREATED"}]


def test_unsubscribe_is_idempotent():
    broadcaster = EventBroadcaster()
    unsubscribe = broadcaster.subscribe(lambda event: None)
    assert broadcaster.listener_count == 1

    unsubscribe()
    unsubscribe()

    assert broadcaster.listener_count == 0
    assert broadcaster.publish({"alertId": "a1"}) == 0


def test_append_persists_even_when_listener_fails(state):
    def broken(event):
        raise RuntimeError("down")

    state.broadcaster.subscribe(broken)

    entry = state.events.append("a1", EventType.info, {"msg": "hello"})

    items, total = state.events.list_events(EventsQuery(alertId="a1"))
    assert total == 1
    assert items[0].id == entry.id
    assert items[0].payload == {"msg": "hello"}


def test_list_events_filters_and_orders_newest_first(state, now):
    state.events.append("a1", EventType.created, ts=now - timedelta(minutes=30))
    state.events.append("a1", EventType.escalated, ts=now - timedelta(minutes=20))
    state.events.append("a2", EventType.created, ts=now - timedelta(minutes=10))

    items, total = state.events.list_events(EventsQuery())
    assert total == 3
    assert [(e.alert_id, e.type.value) for e in items] == [("a2", "CREATED"), ("a1", "ESCALATED"), ("a1", "CREATED")]

    items, total = state.events.list_events(EventsQuery(type=EventType.created))
    assert total == 2

    items, total = state.events.list_events(EventsQuery(since=now - timedelta(minutes=25), until=now))
    assert [e.type.value for e in items] == ["CREATED", "ESCALATED"]

    items, total = state.events.list_events(EventsQuery(limit=1, skip=1))
    assert total == 3
    assert [e.type.value for e in items] == ["ESCALATED"]


def test_counts_group_by_type(state, now):
    state.events.append("a1", EventType.created, ts=now - timedelta(hours=2))
    state.events.append("a2", EventType.created, ts=now - timedelta(minutes=5))
    state.events.append("a2", EventType.resolved, ts=now - timedelta(minutes=1))

    assert state.events.counts() == {"CREATED": 2, "RESOLVED": 1}
    assert state.events.counts(since=now - timedelta(hours=1)) == {"CREATED": 1, "RESOLVED": 1}
