# drives.py
"""Blood drives: time-boxed campaigns donors sign up to.

Like lifecycle, these only mutate model objects; the service holds the
drive's lock and persists the result.
"""
import logging

from models import UPCOMING, ACTIVE, COMPLETED, SCHEDULED, Donation, DriveParticipant
from errors import InvalidRequestError, InvalidTransitionError, RequestNotFoundError

logger = logging.getLogger(__name__)

OPEN_STATUSES = {UPCOMING, ACTIVE}


def refresh_status(drive, now):
    """Move a drive along its calendar; returns True if the status changed."""
    current = drive.status
    if current in OPEN_STATUSES and now > drive.end_date:
        drive.status = COMPLETED
    elif current == UPCOMING and now >= drive.start_date:
        drive.status = ACTIVE
    if drive.status != current:
        logger.info("drive %s: %s -> %s", drive.id, current, drive.status)
        return True
    return False


def is_open(drive, now):
    return drive.status in OPEN_STATUSES and now <= drive.end_date


def join(drive, user_id, now, schedule_offset):
    """Sign a user up and book their donation slot inside the drive window."""
    if not is_open(drive, now):
        raise InvalidTransitionError(drive.status, ACTIVE, f"Blood drive {drive.id} is {drive.status}")
    if drive.participant_for(user_id) is not None:
        raise InvalidRequestError("Already participating in this drive")

    slot = min(max(drive.start_date, now + schedule_offset), drive.end_date)
    donation = Donation(donor_id=user_id, drive_id=drive.id, scheduled_date=slot,
                        status=SCHEDULED, blood_bank_name=drive.name)
    participant = DriveParticipant(user_id=user_id, joined_at=now, donation=donation)
    drive.participants.append(participant)
    logger.info("drive %s: user %s joined, donation slot %s", drive.id, user_id, slot)
    return participant


def record_donation(drive, user_id, units, now):
    participant = drive.participant_for(user_id)
    if participant is None:
        raise RequestNotFoundError("Drive participant", user_id)
    if participant.donated:
        raise InvalidTransitionError("donated", "donated",
                                     f"Donation for user {user_id} in drive {drive.id} already recorded")
    participant.donated = True
    participant.donated_at = now
    participant.units = units
    drive.progress_donors += 1
    drive.progress_units += units
    return participant
