# matching.py
import math
import re
import logging
from dataclasses import dataclass
from datetime import datetime, date
from typing import Optional

from models import BLOOD_GROUPS, Coordinate, MatchEntry
from errors import InvalidRequestError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 50.0

# recipient -> donor groups it may receive from
COMPATIBILITY = {
    "O-": ["O-"],
    "O+": ["O-", "O+"],
    "A-": ["O-", "A-"],
    "A+": ["O-", "O+", "A-", "A+"],
    "B-": ["O-", "B-"],
    "B+": ["O-", "O+", "B-", "B+"],
    "AB-": ["O-", "A-", "B-", "AB-"],
    "AB+": ["O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"],
}

_DONATES_TO = {
    donor: frozenset(r for r, donors in COMPATIBILITY.items() if donor in donors)
    for donor in BLOOD_GROUPS
}


@dataclass(frozen=True)
class DonorCandidate:
    id: int
    blood_group: str
    location: Optional[Coordinate]
    eligible: bool
    online: bool = False


def canonical_blood(bg):
    if not bg: return None
    s = str(bg).upper().strip()
    s = re.sub(r'\s+', '', s)
    s = s.replace('+VE', '+').replace('-VE', '-').replace('POS', '+').replace('NEG', '-')
    return s if s in BLOOD_GROUPS else None


def donor_types_for(recipient_group):
    return frozenset(COMPATIBILITY.get(recipient_group, ()))


def recipient_types_for(donor_group):
    return _DONATES_TO.get(donor_group, frozenset())


def distance_km(a, b):
    """Great-circle (haversine) distance between two (lat, lng) points, in km.

    Out-of-range coordinates are not rejected; the result is then just a number.
    """
    lat1, lon1, lat2, lon2 = map(math.radians, (a[0], a[1], b[0], b[1]))
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(a, b, radius_km):
    return distance_km(a, b) <= radius_km


def is_eligible(donor, today=None, min_days=90, min_weight=50.0, min_age=18, max_age=65):
    """Whether a donor user may donate right now.

    Unknown weight or date of birth does not disqualify; the profile flag and
    the gap since the last donation always apply.
    """
    if not donor.eligible_to_donate:
        return False
    today = today or date.today()
    if donor.weight_kg is not None and donor.weight_kg < min_weight:
        return False
    if donor.dob:
        age = today.year - donor.dob.year - ((today.month, today.day) < (donor.dob.month, donor.dob.day))
        if age < min_age or age > max_age:
            return False
    if donor.last_donation_date:
        if (today - donor.last_donation_date).days < min_days:
            return False
    return True


def _in_range(candidates, location, compatible, radius_km):
    for c in candidates:
        if not c.eligible or c.blood_group not in compatible or c.location is None:
            continue
        dist = distance_km(location, c.location)
        if dist > radius_km:
            continue
        yield c, dist


def match_donors(blood_request, candidates, radius_km=DEFAULT_RADIUS_KM, now=None):
    """Select compatible, eligible donors within radius_km of the request.

    Returns one pending MatchEntry per donor, nearest first (ties by donor id).
    The entries are not attached to the request.
    """
    location = blood_request.location
    if location is None:
        raise InvalidRequestError("Request location is required for matching")
    now = now or datetime.utcnow()
    compatible = donor_types_for(blood_request.blood_group)

    found = sorted(_in_range(candidates, location, compatible, radius_km),
                   key=lambda pair: (pair[1], pair[0].id))
    logger.debug("request %s: %d of %d candidates within %.1f km",
                 blood_request.id, len(found), len(candidates), radius_km)
    return [
        MatchEntry(donor_id=c.id, distance_km=dist, notified_at=now)
        for c, dist in found
    ]


def nearby_donors(location, blood_group, candidates, radius_km=DEFAULT_RADIUS_KM):
    compatible = donor_types_for(blood_group) if blood_group else frozenset(BLOOD_GROUPS)
    found = list(_in_range(candidates, location, compatible, radius_km))
    found.sort(key=lambda pair: (pair[1], pair[0].id))
    return found
