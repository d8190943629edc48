# service.py
"""Coordinates matching, donor responses and deliveries for blood requests,
plus sign-ups for blood drives.

Every change to an existing request or drive runs under its own lock:
load, mutate, save. Events are published only after the lock is
released, and only for changes that were committed.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta

import drives
import lifecycle
import notifications
from errors import InvalidRequestError, InvalidTransitionError, RequestExpiredError
from matching import DEFAULT_RADIUS_KM, canonical_blood, donor_types_for, match_donors, nearby_donors
from models import (
    BLOOD_GROUPS, URGENCIES, DONATION_TYPES, DRIVE_ORGANIZATIONS,
    PENDING, MATCHED, FULFILLED, SCHEDULED, UPCOMING, ACTIVE,
    BloodRequest, BloodDrive,
)
from store import RequestLocks, RequestStore, DonorDirectory

logger = logging.getLogger(__name__)


def utcnow():
    return datetime.utcnow()


def _positive_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


class _Work:
    def __init__(self):
        self.request = None
        self.now = None
        self.expired = False
        self.drive = None
        self.events = []


class BloodRequestService:

    def __init__(self, store, directory, bus, locks=None, clock=utcnow,
                 radius_km=DEFAULT_RADIUS_KM, schedule_offset=lifecycle.DEFAULT_SCHEDULE_OFFSET,
                 request_ttl=timedelta(days=7)):
        self.store = store
        self.directory = directory
        self.bus = bus
        self.locks = locks or RequestLocks()
        self.clock = clock
        self.radius_km = radius_km
        self.schedule_offset = schedule_offset
        self.request_ttl = request_ttl

    @classmethod
    def from_config(cls, config, bus):
        return cls(
            store=RequestStore(),
            directory=DonorDirectory(config["MIN_DAYS_BETWEEN_DONATIONS"]),
            bus=bus,
            radius_km=config["MATCH_RADIUS_KM"],
            schedule_offset=timedelta(hours=config["DONATION_SCHEDULE_OFFSET_HOURS"]),
            request_ttl=timedelta(days=config["REQUEST_TTL_DAYS"]),
        )

    @contextmanager
    def _locked(self, request_id, allow_expired=False):
        work = _Work()
        try:
            with self.locks.hold(request_id):
                work.now = self.clock()
                work.request = self.store.load_request(request_id)
                if lifecycle.expire_if_due(work.request, work.now):
                    self.store.save_request(work.request, work.now)
                    work.expired = True
                    work.events.append(notifications.request_cancelled(
                        work.request, lifecycle.pending_donor_ids(work.request)))
                    if not allow_expired:
                        raise RequestExpiredError(request_id)
                try:
                    yield work
                except Exception:
                    self.store.rollback()
                    raise
        finally:
            for event in work.events:
                self.bus.publish(event)

    @contextmanager
    def _drive_locked(self, drive_id):
        work = _Work()
        try:
            with self.locks.hold(("drive", drive_id)):
                work.now = self.clock()
                work.drive = self.store.load_drive(drive_id)
                if drives.refresh_status(work.drive, work.now):
                    self.store.save_drive(work.drive, work.now)
                try:
                    yield work
                except Exception:
                    self.store.rollback()
                    raise
        finally:
            for event in work.events:
                self.bus.publish(event)

    # requests


    def create_request(self, recipient_id, blood_group, location, units=1, urgency="normal",
                       radius_km=None, expires_at=None, **details):
        group = canonical_blood(blood_group)
        if group is None:
            raise InvalidRequestError(f"Invalid blood group: {blood_group!r}")
        if urgency not in URGENCIES:
            raise InvalidRequestError(f"Invalid urgency: {urgency!r}")
        if not _positive_int(units):
            raise InvalidRequestError("units must be a positive integer")
        self.store.load_user(recipient_id)

        now = self.clock()
        lat, lng = location if location is not None else (None, None)
        blood_request = BloodRequest(
            recipient_id=recipient_id,
            blood_group=group,
            units=units,
            urgency=urgency,
            latitude=lat,
            longitude=lng,
            created_at=now,
            expires_at=expires_at or now + self.request_ttl,
            **details
        )
        # find donors
        candidates = self.directory.find_candidates(donor_types_for(group), exclude_ids={recipient_id},
                                                 today=now.date())
        entries = match_donors(blood_request, candidates, radius_km or self.radius_km, now)
        lifecycle.attach_matches(blood_request, entries)
        self.store.save_request(blood_request, now)
        logger.info("request %s created: %s x%d (%s), %d donor(s) matched",
                    blood_request.id, group, units, urgency, len(entries))

        if entries:
            self.bus.publish(notifications.request_created(blood_request, [e.donor_id for e in entries]))
        elif urgency == "critical":
            self.bus.publish(notifications.request_emergency(blood_request))
        return blood_request

    def get_request(self, request_id):
        with self._locked(request_id, allow_expired=True) as work:
            return work.request

    def rematch(self, request_id, radius_km=None):
        """Offer an open request to compatible donors not offered it yet."""
        with self._locked(request_id) as work:
            blood_request = work.request
            if blood_request.status not in (PENDING, MATCHED):
                raise InvalidTransitionError(blood_request.status, blood_request.status,
                                             f"Request {request_id} is {blood_request.status}")
            offered = {m.donor_id for m in blood_request.matches} | {blood_request.recipient_id}
            candidates = self.directory.find_candidates(donor_types_for(blood_request.blood_group), offered,
                                                     today=work.now.date())
            entries = match_donors(blood_request, candidates, radius_km or self.radius_km, work.now)
            added = lifecycle.attach_matches(blood_request, entries)
            self.store.save_request(blood_request, work.now)
            if added:
                work.events.append(notifications.request_created(blood_request, [e.donor_id for e in added]))
        return blood_request, added

    def respond(self, request_id, donor_id, decision):
        with self._locked(request_id) as work:
            blood_request, donation = lifecycle.respond(
                work.request, donor_id, decision, work.now, self.schedule_offset)
            if donation is not None:
                self.store.create_donation(donation, commit=False)
            self.store.save_request(blood_request, work.now)

            if donation is not None:
                donor = blood_request.entry_for(donor_id).donor
                work.events.append(notifications.request_accepted(
                    blood_request, donor_id, donor.name if donor else None))
            else:
                work.events.append(notifications.request_declined(blood_request, donor_id))
        return blood_request, donation

    def cancel(self, request_id):
        with self._locked(request_id) as work:
            lifecycle.cancel(work.request, work.now)
            self.store.save_request(work.request, work.now)
            work.events.append(notifications.request_cancelled(
                work.request, lifecycle.pending_donor_ids(work.request)))
        return work.request

    def expire_overdue(self):
        """Sweep open requests past expires_at; returns the ids cancelled."""
        now = self.clock()
        open_statuses = set(lifecycle.TRANSITIONS) - lifecycle.TERMINAL
        expired = []
        for request_id in self.store.overdue_request_ids(now, open_statuses):
            with self._locked(request_id, allow_expired=True) as work:
                if work.expired:
                    expired.append(request_id)
        if expired:
            logger.info("expired %d request(s): %s", len(expired), expired)
        return expired

    # deliveries

    def create_delivery(self, request_id, courier_id, **details):
        self.store.load_user(courier_id)
        with self._locked(request_id) as work:
            delivery = lifecycle.open_delivery(work.request, courier_id, work.now, **details)
            self.store.save_request(work.request, work.now)
            work.events.append(notifications.delivery_status_changed(delivery, work.request.recipient_id))
        return delivery

    def update_delivery(self, delivery_id, status, location=None, notes=None):
        request_id = self.store.load_delivery(delivery_id).request_id
        with self._locked(request_id) as work:
            delivery = self.store.load_delivery(delivery_id)
            lifecycle.advance_delivery(delivery, status, work.now, location=location, notes=notes)
            self.store.save_request(work.request, work.now)
            work.events.append(notifications.delivery_status_changed(
                delivery, work.request.recipient_id, location))
            if work.request.status == FULFILLED:
                work.events.append(notifications.request_fulfilled(work.request))
        return delivery

    # donations

    def schedule_donation(self, donor_id, scheduled_date, request_id=None, units=1,
                          donation_type="whole-blood", **details):
        if scheduled_date is None:
            raise InvalidRequestError("scheduled_date is required")
        if donation_type not in DONATION_TYPES:
            raise InvalidRequestError(f"Invalid donation type: {donation_type!r}")
        self.store.load_user(donor_id)
        if request_id is not None:
            self.store.load_request(request_id)
        donation = lifecycle.schedule_donation(donor_id, scheduled_date, request_id,
                                               units=units, donation_type=donation_type, **details)
        return self.store.create_donation(donation)

    def complete_donation(self, donation_id):
        donation = self.store.load_donation(donation_id)
        lifecycle.complete_donation(donation, self.store.load_user(donation.donor_id), self.clock())
        self.store.commit()
        return donation

    def cancel_donation(self, donation_id):
        donation = lifecycle.cancel_donation(self.store.load_donation(donation_id))
        self.store.commit()
        return donation

    # blood drives

    def create_drive(self, organizer_id, name, start_date, end_date, goal_donors=50, goal_units=50,
                     organization_type="community", **details):
        if not name:
            raise InvalidRequestError("name is required")
        if start_date is None or end_date is None:
            raise InvalidRequestError("start_date and end_date are required")
        if end_date <= start_date:
            raise InvalidRequestError("end_date must be after start_date")
        for label, goal in (("goal.donors", goal_donors), ("goal.units", goal_units)):
            if not _positive_int(goal):
                raise InvalidRequestError(f"{label} must be a positive integer")
        if organization_type not in DRIVE_ORGANIZATIONS:
            raise InvalidRequestError(f"Invalid organization type: {organization_type!r}")
        self.store.load_user(organizer_id)

        now = self.clock()
        if end_date < now:
            raise InvalidRequestError("end_date is in the past")
        drive = BloodDrive(
            organizer_id=organizer_id,
            name=name,
            start_date=start_date,
            end_date=end_date,
            goal_donors=goal_donors,
            goal_units=goal_units,
            organization_type=organization_type,
            status=ACTIVE if start_date <= now else UPCOMING,
            created_at=now,
            **details
        )
        self.store.save_drive(drive, now)
        logger.info("drive %s created: %s (%s)", drive.id, name, drive.status)
        self.bus.publish(notifications.drive_created(drive))
        return drive

    def join_drive(self, drive_id, user_id):
        user = self.store.load_user(user_id)
        with self._drive_locked(drive_id) as work:
            participant = drives.join(work.drive, user_id, work.now, self.schedule_offset)
            self.store.save_drive(work.drive, work.now)
            work.events.append(notifications.drive_joined(work.drive, user.name))
        return participant

    def record_drive_donation(self, drive_id, user_id, units=1):
        if not _positive_int(units):
            raise InvalidRequestError("units must be a positive integer")
        with self._drive_locked(drive_id) as work:
            participant = drives.record_donation(work.drive, user_id, units, work.now)
            donation = participant.donation
            if donation is not None and donation.status == SCHEDULED:
                donation.units = units
                lifecycle.complete_donation(donation, self.store.load_user(user_id), work.now)
            self.store.save_drive(work.drive, work.now)
            work.events.append(notifications.drive_progress(work.drive))
        return participant

    def active_drives(self):
        now = self.clock()
        running = self.store.drives_running(now)
        changed = False
        for drive in running:
            changed = drives.refresh_status(drive, now) or changed
        if changed:
            self.store.commit()
        return running

    # lookups

    def nearby_donors(self, location, blood_group=None, radius_km=None):
        group = None
        if blood_group:
            group = canonical_blood(blood_group)
            if group is None:
                raise InvalidRequestError(f"Invalid blood group: {blood_group!r}")
        types = donor_types_for(group) if group else frozenset(BLOOD_GROUPS)
        candidates = self.directory.find_candidates(types, today=self.clock().date())
        return nearby_donors(location, group, candidates, radius_km or self.radius_km)
