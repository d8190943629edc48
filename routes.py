# routes.py
import logging
from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from errors import ConflictError, InvalidRequestError
from models import Coordinate

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


def service():
    return current_app.extensions["rapidred"]


def retry_on_conflict(f):
    """Re-run the view with a fresh read when the request changed underneath it."""
    @wraps(f)
    def wrapped(*args, **kwargs):
        attempts = max(1, current_app.config["CONFLICT_RETRIES"])
        for attempt in range(1, attempts + 1):
            try:
                return f(*args, **kwargs)
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.warning("%s: conflict on attempt %d/%d, retrying", request.path, attempt, attempts)
    return wrapped


# ============================
# PARSING HELPERS
# ============================
def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequestError("JSON object expected")
    return data


def _int(value, name, required=True):
    if value is None:
        if required:
            raise InvalidRequestError(f"{name} is required")
        return None
    if isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{name} must be an integer")


def _float(value, name):
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{name} must be a number")


def _object(value, name):
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidRequestError(f"{name} must be an object")
    return value


def _coordinate(value, name="location"):
    if value is None:
        return None
    if not isinstance(value, dict) or value.get("lat") is None or value.get("lng") is None:
        raise InvalidRequestError(f"{name} needs lat and lng")
    lat, lng = _float(value["lat"], f"{name}.lat"), _float(value["lng"], f"{name}.lng")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise InvalidRequestError(f"{name} is out of range")
    return Coordinate(lat, lng)


def _datetime(value, name):
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise InvalidRequestError(f"{name} must be an ISO 8601 datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _radius(value):
    if value is None:
        return None
    radius = _float(value, "radius_km")
    if radius <= 0:
        raise InvalidRequestError("radius_km must be positive")
    return radius


def ok(data, status=200, **extra):
    return jsonify({"success": True, "data": data, **extra}), status


# ==========================================
# BLOOD REQUESTS
# ==========================================
@api.route("/requests", methods=["POST"])
def create_request():
    data = _body()
    hospital = _object(data.get("hospital"), "hospital")
    br = service().create_request(
        recipient_id=_int(data.get("recipient_id"), "recipient_id"),
        blood_group=data.get("blood_group") or data.get("bloodType"),
        location=_coordinate(data.get("location")),
        units=_int(data.get("units", 1), "units"),
        urgency=data.get("urgency") or "normal",
        radius_km=_radius(data.get("radius_km")),
        reason=data.get("reason"),
        hospital_name=hospital.get("name"),
        hospital_address=hospital.get("address"),
    )
    return ok(br.to_dict(), 201, matched_donors=len(br.matches))


@api.route("/requests/<int:request_id>")
def get_request(request_id):
    return ok(service().get_request(request_id).to_dict())


@api.route("/requests/<int:request_id>/respond", methods=["POST"])
@retry_on_conflict
def respond(request_id):
    data = _body()
    br, donation = service().respond(
        request_id,
        _int(data.get("donor_id"), "donor_id"),
        (data.get("decision") or "").lower(),
    )
    return ok({"request": br.to_dict(), "donation": donation.to_dict() if donation else None})


@api.route("/requests/<int:request_id>/rematch", methods=["POST"])
@retry_on_conflict
def rematch(request_id):
    data = _body()
    br, added = service().rematch(request_id, _radius(data.get("radius_km")))
    return ok(br.to_dict(), added=len(added))


@api.route("/requests/<int:request_id>/cancel", methods=["POST"])
@retry_on_conflict
def cancel_request(request_id):
    return ok(service().cancel(request_id).to_dict())


# ==========================================
# DELIVERIES
# ==========================================
@api.route("/requests/<int:request_id>/deliveries", methods=["POST"])
@retry_on_conflict
def create_delivery(request_id):
    data = _body()
    pickup = _object(data.get("pickup"), "pickup")
    drop = _object(data.get("drop"), "drop")
    pickup_at = _coordinate(pickup.get("coordinates"), "pickup.coordinates")
    drop_at = _coordinate(drop.get("coordinates"), "drop.coordinates")
    delivery = service().create_delivery(
        request_id,
        _int(data.get("courier_id"), "courier_id"),
        pickup_name=pickup.get("name"),
        pickup_latitude=pickup_at.lat if pickup_at else None,
        pickup_longitude=pickup_at.lng if pickup_at else None,
        drop_name=drop.get("name"),
        drop_latitude=drop_at.lat if drop_at else None,
        drop_longitude=drop_at.lng if drop_at else None,
        estimated_delivery_time=_datetime(data.get("estimated_delivery_time"), "estimated_delivery_time"),
    )
    return ok(delivery.to_dict(), 201)


@api.route("/deliveries/<int:delivery_id>/status", methods=["POST"])
@retry_on_conflict
def update_delivery(delivery_id):
    data = _body()
    status = data.get("status")
    if not status:
        raise InvalidRequestError("status is required")
    delivery = service().update_delivery(
        delivery_id, status,
        location=_coordinate(data.get("location")),
        notes=data.get("notes"),
    )
    return ok(delivery.to_dict())


# ==========================================
# DONATIONS
# ==========================================
@api.route("/donations", methods=["POST"])
def schedule_donation():
    data = _body()
    bank = _object(data.get("blood_bank"), "blood_bank")
    donation = service().schedule_donation(
        donor_id=_int(data.get("donor_id"), "donor_id"),
        scheduled_date=_datetime(data.get("scheduled_date"), "scheduled_date"),
        request_id=_int(data.get("request_id"), "request_id", required=False),
        units=_int(data.get("units", 1), "units"),
        donation_type=data.get("donation_type") or "whole-blood",
        blood_bank_name=bank.get("name"),
        notes=data.get("notes"),
    )
    return ok(donation.to_dict(), 201)


@api.route("/donations/<int:donation_id>/complete", methods=["POST"])
def complete_donation(donation_id):
    return ok(service().complete_donation(donation_id).to_dict())


@api.route("/donations/<int:donation_id>/cancel", methods=["POST"])
def cancel_donation(donation_id):
    return ok(service().cancel_donation(donation_id).to_dict())


# ==========================================
# BLOOD DRIVES
# ==========================================
@api.route("/drives", methods=["POST"])
def create_drive():
    data = _body()
    organization = _object(data.get("organization"), "organization")
    goal = _object(data.get("goal"), "goal")
    drive = service().create_drive(
        organizer_id=_int(data.get("organizer_id"), "organizer_id"),
        name=data.get("name"),
        start_date=_datetime(data.get("start_date"), "start_date"),
        end_date=_datetime(data.get("end_date"), "end_date"),
        goal_donors=_int(goal.get("donors", 50), "goal.donors"),
        goal_units=_int(goal.get("units", 50), "goal.units"),
        organization_type=organization.get("type") or "community",
        organization_name=organization.get("name"),
        description=data.get("description"),
        is_public=bool(data.get("is_public", True)),
    )
    return ok(drive.to_dict(), 201)


@api.route("/drives/active")
@retry_on_conflict
def active_drives():
    data = [d.to_dict() for d in service().active_drives()]
    return ok(data, count=len(data))


@api.route("/drives/<int:drive_id>/join", methods=["POST"])
@retry_on_conflict
def join_drive(drive_id):
    data = _body()
    participant = service().join_drive(drive_id, _int(data.get("user_id"), "user_id"))
    return ok(participant.to_dict(), 201)


@api.route("/drives/<int:drive_id>/donations/<int:user_id>", methods=["POST"])
@retry_on_conflict
def record_drive_donation(drive_id, user_id):
    data = _body()
    participant = service().record_drive_donation(drive_id, user_id, _int(data.get("units", 1), "units"))
    return ok(participant.to_dict())


# ==========================================
# DONOR LOOKUP

# ==========================================
@api.route("/donors/nearby")
def nearby_donors():
    args = request.args
    if not args.get("lat") or not args.get("lng"):
        raise InvalidRequestError("Location coordinates required")
    location = _coordinate({"lat": args["lat"], "lng": args["lng"]})
    found = service().nearby_donors(location, args.get("blood_group"), _radius(args.get("radius")))
    data = [
        {"id": c.id, "blood_group": c.blood_group, "online": c.online, "distance": round(dist, 1)}
        for c, dist in found
    ]
    return ok(data, count=len(data))
