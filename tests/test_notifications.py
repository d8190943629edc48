import pytest

from notifications import (
    OPERATIONS_ROOM, Event, NotificationBus, Target, socketio, user_room,
)


class RecordingEmitter:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def emit(self, event, data, **kwargs):
        if self.fail:
            raise ConnectionError("socket server gone")
        self.calls.append((event, data, kwargs))


def test_targets_combine_rooms():
    target = Target.user(1) | Target.users([2, 3]) | Target.operations()
    assert target.rooms == {user_room(1), user_room(2), user_room(3), OPERATIONS_ROOM}
    assert not target.everyone
    assert (Target.user(1) | Target.broadcast()).everyone


def test_empty_target_is_falsy():
    assert not Target.internal()
    assert not Target.users([])
    assert Target.broadcast()


def test_publish_to_rooms():
    emitter = RecordingEmitter()
    bus = NotificationBus(emitter)
    bus.publish(Event("request.created", Target.users([4, 2]), {"id": 1}))
    assert emitter.calls == [("request.created", {"id": 1}, {"to": ["user_2", "user_4"]})]


def test_broadcast_has_no_room():
    emitter = RecordingEmitter()
    NotificationBus(emitter).publish(Event("request.emergency", Target.broadcast(), {"id": 1}))
    assert emitter.calls == [("request.emergency", {"id": 1}, {})]


def test_internal_events_only_reach_subscribers():
    emitter = RecordingEmitter()
    bus = NotificationBus(emitter)
    seen = []
    bus.subscribe(seen.append)
    event = Event("request.declined", Target.internal(), {"donor_id": 3})
    bus.publish(event)
    assert emitter.calls == []
    assert seen == [event]


def test_emitter_failure_is_swallowed():
    bus = NotificationBus(RecordingEmitter(fail=True))
    seen = []
    bus.subscribe(seen.append)
    bus.publish(Event("request.accepted", Target.user(1), {}))
    assert len(seen) == 1


def test_failing_subscriber_does_not_stop_others():
    bus = NotificationBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.publish(Event("request.accepted", Target.user(1), {}))
    assert len(seen) == 1

    bus.unsubscribe(broken)
    bus.unsubscribe(broken)


@pytest.fixture
def socket_client(app):
    client = socketio.test_client(app)
    yield client
    if client.is_connected():
        client.disconnect()


def names(received):
    return [(m["name"], m["args"][0]) for m in received]


def test_socket_client_receives_events_for_its_room(app, socket_client):
    other = socketio.test_client(app)
    socket_client.emit("join", {"user_id": 7})
    other.emit("join", {"user_id": 8})
    socket_client.get_received()
    other.get_received()

    bus = NotificationBus(socketio)
    bus.publish(Event("request.accepted", Target.user(7), {"request_id": 1}))

    assert names(socket_client.get_received()) == [("request.accepted", {"request_id": 1})]
    assert other.get_received() == []
    other.disconnect()


def test_socket_client_in_two_target_rooms_gets_one_copy(app, socket_client):
    socket_client.emit("join", {"user_id": 7, "operations": True})
    socket_client.get_received()

    NotificationBus(socketio).publish(Event("delivery.status-changed",
                                            Target.user(7) | Target.operations(), {"status": "picked-up"}))

    assert len(socket_client.get_received()) == 1


def test_leave_stops_delivery(app, socket_client):
    socket_client.emit("join", {"user_id": 7})
    socket_client.emit("leave", {"user_id": 7})
    socket_client.get_received()

    NotificationBus(socketio).publish(Event("request.accepted", Target.user(7), {}))
    assert socket_client.get_received() == []


def test_broadcast_reaches_clients_without_rooms(app, socket_client):
    socket_client.get_received()
    NotificationBus(socketio).publish(Event("request.emergency", Target.broadcast(), {"blood_group": "O-"}))
    assert names(socket_client.get_received()) == [("request.emergency", {"blood_group": "O-"})]
