# models.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from collections import namedtuple

db = SQLAlchemy()

Coordinate = namedtuple("Coordinate", ["lat", "lng"])

BLOOD_GROUPS = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")
URGENCIES = ("critical", "urgent", "normal")
ROLES = ("donor", "recipient", "delivery", "admin")

# request lifecycle
PENDING = "pending"
MATCHED = "matched"
IN_DELIVERY = "in-delivery"
FULFILLED = "fulfilled"
CANCELLED = "cancelled"

# match entry responses
ACCEPTED = "accepted"
DECLINED = "declined"
REJECTED = "rejected"

# donations
SCHEDULED = "scheduled"
COMPLETED = "completed"
DONATION_TYPES = ("whole-blood", "platelets", "plasma", "red-cells")

# deliveries
ASSIGNED = "assigned"
PICKED_UP = "picked-up"
IN_TRANSIT = "in-transit"
DELIVERED = "delivered"

# blood drives
UPCOMING = "upcoming"
ACTIVE = "active"
DRIVE_ORGANIZATIONS = ("corporate", "school", "community", "religious", "government")


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "user"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    role = db.Column(db.String(32), nullable=False, default="donor")  # donor, recipient, delivery, admin
    blood_group = db.Column(db.String(10), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    eligible_to_donate = db.Column(db.Boolean, default=True)
    is_active = db.Column(db.Boolean, default=True)
    is_online = db.Column(db.Boolean, default=False)
    last_seen = db.Column(db.DateTime, nullable=True)
    last_donation_date = db.Column(db.Date, nullable=True)
    donation_count = db.Column(db.Integer, default=0)

    dob = db.Column(db.Date, nullable=True)
    weight_kg = db.Column(db.Float, nullable=True)


class BloodRequest(db.Model):
    __tablename__ = "blood_request"
    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    blood_group = db.Column(db.String(10), nullable=False)
    units = db.Column(db.Integer, nullable=False, default=1)
    urgency = db.Column(db.String(16), nullable=False, default="normal")
    reason = db.Column(db.String(512), nullable=True)
    hospital_name = db.Column(db.String(256), nullable=True)
    hospital_address = db.Column(db.String(512), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(32), nullable=False, default=PENDING)  # pending, matched, in-delivery, fulfilled, cancelled
    cancel_reason = db.Column(db.String(32), nullable=True)  # cancelled, expired
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False)

    recipient = db.relationship("User", foreign_keys=[recipient_id])
    matches = db.relationship("MatchEntry", back_populates="blood_request",
                              order_by="MatchEntry.id", cascade="all, delete-orphan")
    deliveries = db.relationship("Delivery", back_populates="blood_request", order_by="Delivery.id")

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", PENDING)
        kwargs.setdefault("urgency", "normal")
        kwargs.setdefault("units", 1)
        super().__init__(**kwargs)

    @property
    def location(self):
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(self.latitude, self.longitude)

    def entry_for(self, donor_id):
        for entry in self.matches:
            if entry.donor_id == donor_id:
                return entry
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "blood_group": self.blood_group,
            "units": self.units,
            "urgency": self.urgency,
            "reason": self.reason,
            "hospital": {"name": self.hospital_name, "address": self.hospital_address},
            "location": {"lat": self.latitude, "lng": self.longitude} if self.location else None,
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "matches": [m.to_dict() for m in self.matches],
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }


class MatchEntry(db.Model):
    __tablename__ = "match_entry"
    __table_args__ = (db.UniqueConstraint("request_id", "donor_id", name="uq_match_request_donor"),)
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("blood_request.id"), nullable=False)
    donor_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PENDING)  # pending, accepted, declined, rejected
    distance_km = db.Column(db.Float, nullable=False)
    notified_at = db.Column(db.DateTime, nullable=True)
    responded_at = db.Column(db.DateTime, nullable=True)

    blood_request = db.relationship("BloodRequest", back_populates="matches")
    donor = db.relationship("User")

    def __init__(self, **kwargs):
        kwargs.setdefault("status", PENDING)
        super().__init__(**kwargs)

    def to_dict(self):
        return {
            "donor_id": self.donor_id,
            "status": self.status,
            "distance_km": round(self.distance_km, 1),
            "notified_at": _iso(self.notified_at),
            "responded_at": _iso(self.responded_at),
        }


class Donation(db.Model):
    __tablename__ = "donation"
    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    request_id = db.Column(db.Integer, db.ForeignKey("blood_request.id"), nullable=True)
    drive_id = db.Column(db.Integer, db.ForeignKey("blood_drive.id"), nullable=True)
    scheduled_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=SCHEDULED)  # scheduled, completed, cancelled
    units = db.Column(db.Integer, nullable=False, default=1)
    donation_type = db.Column(db.String(32), nullable=False, default="whole-blood")
    blood_bank_name = db.Column(db.String(256), nullable=True)
    completed_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.String(512), nullable=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("status", SCHEDULED)
        kwargs.setdefault("units", 1)
        kwargs.setdefault("donation_type", "whole-blood")
        super().__init__(**kwargs)

    def to_dict(self):
        return {
            "id": self.id,
            "donor_id": self.donor_id,
            "request_id": self.request_id,
            "drive_id": self.drive_id,
            "scheduled_date": _iso(self.scheduled_date),
            "status": self.status,
            "units": self.units,
            "donation_type": self.donation_type,
            "blood_bank": self.blood_bank_name,
            "completed_date": _iso(self.completed_date),
        }


class Delivery(db.Model):
    __tablename__ = "delivery"
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("blood_request.id"), nullable=False)
    courier_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ASSIGNED)  # assigned, picked-up, in-transit, delivered, cancelled
    pickup_name = db.Column(db.String(256), nullable=True)
    pickup_latitude = db.Column(db.Float, nullable=True)
    pickup_longitude = db.Column(db.Float, nullable=True)
    drop_name = db.Column(db.String(256), nullable=True)
    drop_latitude = db.Column(db.Float, nullable=True)
    drop_longitude = db.Column(db.Float, nullable=True)
    estimated_delivery_time = db.Column(db.DateTime, nullable=True)
    actual_delivery_time = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    blood_request = db.relationship("BloodRequest", back_populates="deliveries")
    tracking = db.relationship("TrackingPoint", order_by="TrackingPoint.id", cascade="all, delete-orphan")

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ASSIGNED)
        super().__init__(**kwargs)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "courier_id": self.courier_id,
            "status": self.status,
            "pickup": {"name": self.pickup_name, "lat": self.pickup_latitude, "lng": self.pickup_longitude},
            "drop": {"name": self.drop_name, "lat": self.drop_latitude, "lng": self.drop_longitude},
            "estimated_delivery_time": _iso(self.estimated_delivery_time),
            "actual_delivery_time": _iso(self.actual_delivery_time),
            "tracking": [t.to_dict() for t in self.tracking],
        }


class TrackingPoint(db.Model):
    __tablename__ = "tracking_point"
    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("delivery.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    recorded_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {"status": self.status, "lat": self.latitude, "lng": self.longitude,
                "recorded_at": _iso(self.recorded_at)}


class BloodDrive(db.Model):
    __tablename__ = "blood_drive"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False)
    organizer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    organization_name = db.Column(db.String(256), nullable=True)
    organization_type = db.Column(db.String(32), nullable=False, default="community")
    description = db.Column(db.String(1024), nullable=True)
    goal_donors = db.Column(db.Integer, nullable=False, default=50)
    goal_units = db.Column(db.Integer, nullable=False, default=50)
    progress_donors = db.Column(db.Integer, nullable=False, default=0)
    progress_units = db.Column(db.Integer, nullable=False, default=0)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=UPCOMING)  # upcoming, active, completed
    is_public = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False)

    participants = db.relationship("DriveParticipant", back_populates="drive",
                                   order_by="DriveParticipant.id", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", UPCOMING)
        kwargs.setdefault("organization_type", "community")
        kwargs.setdefault("goal_donors", 50)
        kwargs.setdefault("goal_units", 50)
        kwargs.setdefault("progress_donors", 0)
        kwargs.setdefault("progress_units", 0)
        kwargs.setdefault("is_public", True)
        super().__init__(**kwargs)

    def participant_for(self, user_id):
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "organizer_id": self.organizer_id,
            "organization": {"name": self.organization_name, "type": self.organization_type},
            "description": self.description,
            "goal": {"donors": self.goal_donors, "units": self.goal_units},
            "progress": {"donors": self.progress_donors, "units": self.progress_units},
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "status": self.status,
            "is_public": self.is_public,
            "participants": len(self.participants),
        }


class DriveParticipant(db.Model):
    __tablename__ = "drive_participant"
    __table_args__ = (db.UniqueConstraint("drive_id", "user_id", name="uq_drive_participant"),)
    id = db.Column(db.Integer, primary_key=True)
    drive_id = db.Column(db.Integer, db.ForeignKey("blood_drive.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    donation_id = db.Column(db.Integer, db.ForeignKey("donation.id"), nullable=True)
    joined_at = db.Column(db.DateTime, nullable=False)
    donated = db.Column(db.Boolean, nullable=False, default=False)
    donated_at = db.Column(db.DateTime, nullable=True)
    units = db.Column(db.Integer, nullable=True)

    drive = db.relationship("BloodDrive", back_populates="participants")
    donation = db.relationship("Donation")

    def __init__(self, **kwargs):
        kwargs.setdefault("donated", False)
        super().__init__(**kwargs)

    def to_dict(self):
        return {
            "drive_id": self.drive_id,
            "user_id": self.user_id,
            "joined_at": _iso(self.joined_at),
            "donated": self.donated,
            "donated_at": _iso(self.donated_at),
            "units": self.units,
            "donation": self.donation.to_dict() if self.donation else None,
        }
