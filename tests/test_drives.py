from datetime import timedelta

import pytest

import drives
from errors import InvalidRequestError, InvalidTransitionError, RequestNotFoundError
from models import db, BloodDrive, Donation, User, UPCOMING, ACTIVE, COMPLETED, SCHEDULED, CANCELLED
from conftest import NOW

DAY = timedelta(days=1)


def make_drive(start=NOW - DAY, end=NOW + 5 * DAY, status=ACTIVE, **kwargs):
    return BloodDrive(id=1, name="Campus Drive", organizer_id=1, start_date=start, end_date=end,
                      status=status, **kwargs)


# calendar

@pytest.mark.parametrize("start,end,status,expected", [
    (NOW + DAY, NOW + 2 * DAY, UPCOMING, UPCOMING),
    (NOW - DAY, NOW + DAY, UPCOMING, ACTIVE),
    (NOW - 2 * DAY, NOW - DAY, ACTIVE, COMPLETED),
    (NOW - 2 * DAY, NOW - DAY, UPCOMING, COMPLETED),
    (NOW - 2 * DAY, NOW - DAY, COMPLETED, COMPLETED),
])
def test_refresh_status(start, end, status, expected):
    drive = make_drive(start, end, status)
    assert drives.refresh_status(drive, NOW) == (status != expected)
    assert drive.status == expected


# joining

def test_join_books_a_donation_slot():
    drive = make_drive()
    participant = drives.join(drive, 9, NOW, timedelta(hours=24))
    assert participant.joined_at == NOW
    assert participant.donation.scheduled_date == NOW + DAY
    assert (participant.donation.drive_id, participant.donation.status) == (1, SCHEDULED)
    assert drive.participant_for(9) is participant


def test_slot_stays_inside_the_drive_window():
    upcoming = make_drive(NOW + 3 * DAY, NOW + 4 * DAY, UPCOMING)
    assert drives.join(upcoming, 9, NOW, DAY).donation.scheduled_date == NOW + 3 * DAY

    closing = make_drive(NOW - DAY, NOW + timedelta(hours=2))
    assert drives.join(closing, 9, NOW, DAY).donation.scheduled_date == NOW + timedelta(hours=2)


def test_joining_twice_is_rejected():
    drive = make_drive()
    drives.join(drive, 9, NOW, DAY)
    with pytest.raises(InvalidRequestError):
        drives.join(drive, 9, NOW, DAY)
    assert len(drive.participants) == 1


def test_finished_drive_cannot_be_joined():
    with pytest.raises(InvalidTransitionError):
        drives.join(make_drive(status=COMPLETED), 9, NOW, DAY)


# progress

def test_record_donation_updates_progress():
    drive = make_drive()
    drives.join(drive, 9, NOW, DAY)
    drives.join(drive, 10, NOW, DAY)
    drives.record_donation(drive, 9, 2, NOW)

    assert (drive.progress_donors, drive.progress_units) == (1, 2)
    with pytest.raises(InvalidTransitionError):
        drives.record_donation(drive, 9, 1, NOW)
    with pytest.raises(RequestNotFoundError):
        drives.record_donation(drive, 11, 1, NOW)
    assert (drive.progress_donors, drive.progress_units) == (1, 2)


# service

@pytest.fixture
def organizer(make_user):
    return make_user(role="admin", blood_group=None)


@pytest.fixture
def drive(service, organizer):
    return service.create_drive(organizer.id, "Campus Drive", NOW - DAY, NOW + 5 * DAY,
                                organization_name="State University", organization_type="school")


def test_create_drive_is_announced(service, organizer, events):
    drive = service.create_drive(organizer.id, "Spring Drive", NOW + DAY, NOW + 3 * DAY, goal_units=20)
    assert drive.status == UPCOMING
    assert drive.goal_units == 20
    assert events[-1].type == "drive.created"
    assert events[-1].target.everyone


@pytest.mark.parametrize("kwargs", [
    {"name": ""},
    {"end_date": NOW - 2 * DAY},
    {"start_date": NOW - 3 * DAY, "end_date": NOW - DAY},
    {"goal_donors": 0},
    {"organization_type": "club"},
])
def test_create_drive_validates_input(service, organizer, kwargs):
    args = {"name": "Drive", "start_date": NOW - DAY, "end_date": NOW + DAY, **kwargs}
    with pytest.raises(InvalidRequestError):
        service.create_drive(organizer.id, **args)
    assert BloodDrive.query.count() == 0


def test_join_and_record_donation(service, drive, make_user, events):
    donor = make_user(blood_group="O+")
    participant = service.join_drive(drive.id, donor.id)
    assert events[-1].type == "drive.updated"
    assert events[-1].payload["participant"] == donor.name

    donation = Donation.query.one()
    assert (donation.donor_id, donation.drive_id, donation.request_id) == (donor.id, drive.id, None)
    assert participant.donation_id == donation.id

    service.record_drive_donation(drive.id, donor.id, units=2)
    stored = db.session.get(BloodDrive, drive.id)
    assert (stored.progress_donors, stored.progress_units) == (1, 2)
    assert db.session.get(Donation, donation.id).status == "completed"
    assert db.session.get(User, donor.id).donation_count == 1
    assert events[-1].type == "drive.progress"


def test_record_donation_after_cancelled_slot_still_counts(service, drive, make_user):
    donor = make_user(blood_group="O+")
    participant = service.join_drive(drive.id, donor.id)
    service.cancel_donation(participant.donation_id)

    service.record_drive_donation(drive.id, donor.id, units=1)
    assert db.session.get(BloodDrive, drive.id).progress_donors == 1
    assert db.session.get(Donation, participant.donation_id).status == CANCELLED


def test_join_unknown_drive(service, make_user):
    with pytest.raises(RequestNotFoundError):
        service.join_drive(404, make_user().id)


def test_drive_closes_when_its_window_ends(service, drive, make_user, clock):
    clock.advance(days=6)
    with pytest.raises(InvalidTransitionError):
        service.join_drive(drive.id, make_user().id)
    assert db.session.get(BloodDrive, drive.id).status == COMPLETED
    assert len(service.locks) == 0


def test_active_drives(service, organizer, drive, clock):
    later = service.create_drive(organizer.id, "Later", NOW + DAY, NOW + 2 * DAY)
    service.create_drive(organizer.id, "Private", NOW - DAY, NOW + DAY, is_public=False)
    assert [d.id for d in service.active_drives()] == [drive.id]

    clock.advance(days=1, hours=1)
    running = service.active_drives()
    assert [d.id for d in running] == [later.id, drive.id]
    assert db.session.get(BloodDrive, later.id).status == ACTIVE
