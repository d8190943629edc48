# notifications.py
import logging
from dataclasses import dataclass, field

from flask_socketio import SocketIO, join_room, leave_room

logger = logging.getLogger(__name__)

socketio = SocketIO()

OPERATIONS_ROOM = "operations"

REQUEST_CREATED = "request.created"
REQUEST_ACCEPTED = "request.accepted"
REQUEST_DECLINED = "request.declined"
REQUEST_CANCELLED = "request.cancelled"
REQUEST_FULFILLED = "request.fulfilled"
REQUEST_EMERGENCY = "request.emergency"
DELIVERY_STATUS_CHANGED = "delivery.status-changed"
DRIVE_CREATED = "drive.created"
DRIVE_UPDATED = "drive.updated"
DRIVE_PROGRESS = "drive.progress"


def user_room(user_id):
    return f"user_{user_id}"


@dataclass(frozen=True)
class Target:
    """Who an event goes to: a set of rooms, or everyone connected."""
    rooms: frozenset = frozenset()
    everyone: bool = False

    @classmethod
    def user(cls, user_id):
        return cls(frozenset([user_room(user_id)]))

    @classmethod
    def users(cls, user_ids):
        return cls(frozenset(user_room(u) for u in user_ids))

    @classmethod
    def operations(cls):
        return cls(frozenset([OPERATIONS_ROOM]))

    @classmethod
    def broadcast(cls):
        return cls(everyone=True)

    @classmethod
    def internal(cls):
        return cls()

    def __or__(self, other):
        return Target(self.rooms | other.rooms, self.everyone or other.everyone)

    def __bool__(self):
        return self.everyone or bool(self.rooms)


@dataclass(frozen=True)
class Event:
    type: str
    target: Target
    payload: dict = field(default_factory=dict)


class NotificationBus:
    """Best-effort, at-most-once fan-out of lifecycle events.

    Events go to the Socket.IO server (if one is attached) and then to
    in-process subscribers. Nothing is queued or retried: clients that are
    not connected simply miss the event. publish() never raises.
    """

    def __init__(self, emitter=None):
        self.emitter = emitter
        self._subscribers = []

    def subscribe(self, handler):
        self._subscribers.append(handler)
        return handler

    def unsubscribe(self, handler):
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def publish(self, event):
        if self.emitter is not None and event.target:
            try:
                if event.target.everyone:
                    self.emitter.emit(event.type, event.payload)
                else:
                    self.emitter.emit(event.type, event.payload, to=sorted(event.target.rooms))
            except Exception:
                logger.exception("dropped %s for %s", event.type, sorted(event.target.rooms))
        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:
                logger.exception("subscriber %r failed on %s", handler, event.type)


# event builders

def request_created(blood_request, donor_ids):
    return Event(REQUEST_CREATED, Target.users(donor_ids), {
        "request": blood_request.to_dict(),
        "message": f"Urgent {blood_request.blood_group} blood needed near your location!",
    })


def request_emergency(blood_request):
    return Event(REQUEST_EMERGENCY, Target.broadcast(), {
        "request_id": blood_request.id,
        "blood_group": blood_request.blood_group,
        "units": blood_request.units,
        "location": {"lat": blood_request.latitude, "lng": blood_request.longitude},
        "message": f"Critical: {blood_request.blood_group} blood needed, no nearby donor found",
    })


def request_accepted(blood_request, donor_id, donor_name=None):
    name = donor_name or f"Donor {donor_id}"
    return Event(REQUEST_ACCEPTED, Target.user(blood_request.recipient_id) | Target.operations(), {
        "request_id": blood_request.id,
        "donor_id": donor_id,
        "donor_name": donor_name,
        "status": blood_request.status,
        "message": f"{name} has accepted your blood request!",
    })


def request_declined(blood_request, donor_id):
    return Event(REQUEST_DECLINED, Target.internal(), {
        "request_id": blood_request.id,
        "donor_id": donor_id,
    })


def request_cancelled(blood_request, donor_ids):
    target = Target.user(blood_request.recipient_id) | Target.users(donor_ids) | Target.operations()
    return Event(REQUEST_CANCELLED, target, {
        "request_id": blood_request.id,
        "reason": blood_request.cancel_reason,
    })


def request_fulfilled(blood_request):
    return Event(REQUEST_FULFILLED, Target.user(blood_request.recipient_id) | Target.operations(), {
        "request_id": blood_request.id,
        "status": blood_request.status,
    })


def delivery_status_changed(delivery, recipient_id, location=None):
    return Event(DELIVERY_STATUS_CHANGED, Target.user(recipient_id) | Target.operations(), {
        "delivery_id": delivery.id,
        "request_id": delivery.request_id,
        "status": delivery.status,
        "location": {"lat": location[0], "lng": location[1]} if location else None,
    })


def _drive_audience(drive):
    return Target.broadcast() if drive.is_public else Target.operations()


def drive_created(drive):
    return Event(DRIVE_CREATED, _drive_audience(drive), {
        "drive": drive.to_dict(),
        "message": f"New blood drive: {drive.name}",
    })


def drive_joined(drive, participant_name):
    return Event(DRIVE_UPDATED, _drive_audience(drive), {
        "drive_id": drive.id,
        "type": "new-participant",
        "participant": participant_name,
        "participants": len(drive.participants),
    })


def drive_progress(drive):
    return Event(DRIVE_PROGRESS, _drive_audience(drive), {
        "drive_id": drive.id,
        "progress": {"donors": drive.progress_donors, "units": drive.progress_units},
        "goal": {"donors": drive.goal_donors, "units": drive.goal_units},
    })


# socket handlers


@socketio.on("join")
def on_join(data):
    data = data or {}
    uid = data.get("user_id")
    if uid is not None:
        join_room(user_room(uid))
    if data.get("operations"):
        join_room(OPERATIONS_ROOM)


@socketio.on("leave")
def on_leave(data):
    data = data or {}
    uid = data.get("user_id")
    if uid is not None:
        leave_room(user_room(uid))
    if data.get("operations"):
        leave_room(OPERATIONS_ROOM)
