# lifecycle.py
"""Blood request state machine and donor responses.

Everything here mutates model objects in memory only; callers hold the
request's lock and persist the result.
"""
import logging
from datetime import timedelta

from models import (
    PENDING, MATCHED, IN_DELIVERY, FULFILLED, CANCELLED,
    ACCEPTED, DECLINED, SCHEDULED, COMPLETED,
    ASSIGNED, PICKED_UP, IN_TRANSIT, DELIVERED,
    Donation, Delivery, TrackingPoint,
)
from errors import (
    InvalidRequestError, InvalidTransitionError, NotMatchedError, AlreadyRespondedError,
)

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PENDING: {MATCHED, CANCELLED},
    MATCHED: {IN_DELIVERY, CANCELLED},
    IN_DELIVERY: {FULFILLED, CANCELLED},
    FULFILLED: set(),
    CANCELLED: set(),
}
TERMINAL = {FULFILLED, CANCELLED}
OPEN_FOR_RESPONSES = {PENDING, MATCHED, IN_DELIVERY}

DELIVERY_FLOW = [ASSIGNED, PICKED_UP, IN_TRANSIT, DELIVERED]
DELIVERY_TERMINAL = {DELIVERED, CANCELLED}

ACCEPT = "accept"
DECLINE = "decline"
DEFAULT_SCHEDULE_OFFSET = timedelta(hours=24)


def transition(blood_request, target):
    current = blood_request.status
    if target not in TRANSITIONS.get(current, ()):
        raise InvalidTransitionError(current, target)
    blood_request.status = target
    logger.info("request %s: %s -> %s", blood_request.id, current, target)
    return blood_request


def is_terminal(blood_request):
    return blood_request.status in TERMINAL


def mark_matched(blood_request):
    if not any(m.status == ACCEPTED for m in blood_request.matches):
        raise InvalidTransitionError(blood_request.status, MATCHED, "No donor has accepted yet")
    return transition(blood_request, MATCHED)


def start_delivery(blood_request):
    return transition(blood_request, IN_DELIVERY)


def complete_delivery(blood_request):
    return transition(blood_request, FULFILLED)


def cancel(blood_request, now, reason="cancelled"):
    transition(blood_request, CANCELLED)
    blood_request.cancel_reason = reason
    blood_request.updated_at = now
    return blood_request


def is_expired(blood_request, now):
    return blood_request.expires_at is not None and now >= blood_request.expires_at


def expire_if_due(blood_request, now):
    """Cancel an open request whose expires_at has passed. Returns True if it did."""
    if is_terminal(blood_request) or not is_expired(blood_request, now):
        return False
    cancel(blood_request, now, reason="expired")
    return True


def respond(blood_request, donor_id, decision, now, schedule_offset=DEFAULT_SCHEDULE_OFFSET):
    """Record a donor's accept/decline on a request.

    Returns (blood_request, donation); donation is None on decline. The first
    acceptance moves a pending request to matched; later ones leave the
    status alone.
    """
    if decision not in (ACCEPT, DECLINE):
        raise InvalidRequestError(f"Unknown decision: {decision!r}")
    entry = blood_request.entry_for(donor_id)
    if entry is None:
        raise NotMatchedError(blood_request.id, donor_id)
    if entry.status != PENDING:
        raise AlreadyRespondedError(donor_id, entry.status)
    if blood_request.status not in OPEN_FOR_RESPONSES:
        raise InvalidTransitionError(blood_request.status, blood_request.status,
                                     f"Request {blood_request.id} is {blood_request.status}")

    entry.responded_at = now
    if decision == DECLINE:
        entry.status = DECLINED
        logger.info("request %s: donor %s declined", blood_request.id, donor_id)
        return blood_request, None

    entry.status = ACCEPTED
    if blood_request.status == PENDING:
        mark_matched(blood_request)
    donation = Donation(
        donor_id=donor_id,
        request_id=blood_request.id,
        scheduled_date=now + schedule_offset,
        status=SCHEDULED,
    )
    logger.info("request %s: donor %s accepted, donation scheduled for %s",
                blood_request.id, donor_id, donation.scheduled_date)
    return blood_request, donation


def pending_donor_ids(blood_request):
    return [m.donor_id for m in blood_request.matches if m.status == PENDING]


def attach_matches(blood_request, entries):
    """Append entries for donors not yet offered this request; returns the ones added."""
    seen = {m.donor_id for m in blood_request.matches}
    added = []
    for entry in entries:
        if entry.donor_id in seen:
            continue
        seen.add(entry.donor_id)
        blood_request.matches.append(entry)
        added.append(entry)
    return added


# deliveries

def open_delivery(blood_request, courier_id, now, **details):
    """Assign a courier; a request back from a cancelled delivery can be reassigned."""
    if blood_request.status == IN_DELIVERY:
        if any(d.status != CANCELLED for d in blood_request.deliveries):
            raise InvalidTransitionError(IN_DELIVERY, IN_DELIVERY,
                                         f"Request {blood_request.id} already has an active delivery")
    else:
        start_delivery(blood_request)
    delivery = Delivery(courier_id=courier_id, status=ASSIGNED, created_at=now, **details)
    blood_request.deliveries.append(delivery)
    blood_request.updated_at = now
    return delivery


def advance_delivery(delivery, status, now, location=None, notes=None):
    """Move a delivery forward; delivering it fulfils its request."""
    current = delivery.status
    if current in DELIVERY_TERMINAL:
        raise InvalidTransitionError(current, status)
    forward = status in DELIVERY_FLOW and DELIVERY_FLOW.index(status) > DELIVERY_FLOW.index(current)
    if not (forward or status == CANCELLED):
        raise InvalidTransitionError(current, status)

    if status == DELIVERED:
        complete_delivery(delivery.blood_request)
        delivery.actual_delivery_time = now
    delivery.status = status
    if notes:
        delivery.notes = notes
    if location is not None:
        delivery.tracking.append(TrackingPoint(status=status, latitude=location[0],
                                               longitude=location[1], recorded_at=now))
    delivery.blood_request.updated_at = now
    logger.info("delivery %s: %s -> %s", delivery.id, current, status)
    return delivery


# donations

def schedule_donation(donor_id, scheduled_date, request_id=None, **details):
    return Donation(donor_id=donor_id, request_id=request_id,
                    scheduled_date=scheduled_date, status=SCHEDULED, **details)


def complete_donation(donation, donor, now):
    if donation.status != SCHEDULED:
        raise InvalidTransitionError(donation.status, COMPLETED)
    donation.status = COMPLETED
    donation.completed_date = now
    donor.donation_count = (donor.donation_count or 0) + 1
    donor.last_donation_date = now.date()
    return donation


def cancel_donation(donation):
    if donation.status != SCHEDULED:
        raise InvalidTransitionError(donation.status, CANCELLED)
    donation.status = CANCELLED
    return donation
