# store.py
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from models import db, User, BloodRequest, BloodDrive, Donation, Delivery, Coordinate
from drives import OPEN_STATUSES as OPEN_DRIVE_STATUSES
from matching import DonorCandidate, is_eligible
from errors import ConflictError, RequestNotFoundError

logger = logging.getLogger(__name__)


class RequestLocks:
    """One exclusive lock per blood request id.

    Locks are created on demand and dropped once nobody holds or waits on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, request_id):
        with self._guard:
            slot = self._locks.setdefault(request_id, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if not slot[1]:
                    del self._locks[request_id]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class RequestStore:
    """Load/save blood requests with optimistic version checks."""

    def load_request(self, request_id):
        # drop anything this session cached before the caller took the lock
        db.session.expire_all()
        blood_request = db.session.get(BloodRequest, request_id)
        if blood_request is None:
            raise RequestNotFoundError("Blood request", request_id)
        return blood_request

    def save_request(self, blood_request, now=None):
        blood_request.updated_at = now or datetime.utcnow()
        # an unchanged timestamp is not a change; force the UPDATE so the version still moves
        flag_modified(blood_request, "updated_at")
        db.session.add(blood_request)
        self.commit()
        return blood_request

    def create_donation(self, donation, commit=True):
        db.session.add(donation)
        if commit:
            self.commit()
        return donation

    def load_donation(self, donation_id):
        donation = db.session.get(Donation, donation_id)
        if donation is None:
            raise RequestNotFoundError("Donation", donation_id)
        return donation

    def load_delivery(self, delivery_id):
        delivery = db.session.get(Delivery, delivery_id)
        if delivery is None:
            raise RequestNotFoundError("Delivery", delivery_id)
        return delivery

    def load_user(self, user_id):
        user = db.session.get(User, user_id)
        if user is None:
            raise RequestNotFoundError("User", user_id)
        return user

    def overdue_request_ids(self, now, open_statuses):
        rows = db.session.execute(
            db.select(BloodRequest.id)
            .where(BloodRequest.status.in_(sorted(open_statuses)))
            .where(BloodRequest.expires_at <= now)
            .order_by(BloodRequest.id)
        )
        return [row[0] for row in rows]

    def load_drive(self, drive_id):
        db.session.expire_all()
        drive = db.session.get(BloodDrive, drive_id)
        if drive is None:
            raise RequestNotFoundError("Blood drive", drive_id)
        return drive

    def save_drive(self, drive, now=None):
        drive.updated_at = now or datetime.utcnow()
        flag_modified(drive, "updated_at")
        db.session.add(drive)
        self.commit()
        return drive

    def drives_running(self, now):
        """Public drives whose window contains now, newest first."""
        return BloodDrive.query.filter(
            BloodDrive.is_public.is_(True),
            BloodDrive.status.in_(sorted(OPEN_DRIVE_STATUSES)),
            BloodDrive.start_date <= now,
            BloodDrive.end_date >= now,
        ).order_by(BloodDrive.created_at.desc(), BloodDrive.id.desc()).all()

    def commit(self):
        try:
            db.session.commit()
        except (StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            logger.warning("concurrent modification detected: %s", exc)
            raise ConflictError() from exc

    def rollback(self):
        db.session.rollback()


class DonorDirectory:
    def __init__(self, min_days_between_donations=90):
        self.min_days = min_days_between_donations

    def find_candidates(self, blood_types, exclude_ids=(), today=None):
        query = User.query.filter(
            User.role == "donor",
            User.is_active.is_(True),
            User.blood_group.in_(sorted(blood_types)),
        )
        if exclude_ids:
            query = query.filter(User.id.notin_(sorted(exclude_ids)))
        return [self.candidate(u, today) for u in query.order_by(User.id).all()]

    def candidate(self, user, today=None):
        location = None
        if user.latitude is not None and user.longitude is not None:
            location = Coordinate(user.latitude, user.longitude)
        return DonorCandidate(
            id=user.id,
            blood_group=user.blood_group,
            location=location,
            eligible=is_eligible(user, today=today, min_days=self.min_days),
            online=bool(user.is_online),
        )
