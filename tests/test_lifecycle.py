import sqlite3

import pytest

import db
import lifecycle
from errors import (
    CollaboratorUnavailable,
    InvalidTransition,
    ListingUnavailable,
    NotFound,
    PermissionDenied,
    TransitionFailed,
    ValidationError,
)
from notifications import get_user_notifications


def _statuses(claim_id):
    claim = db.get_claim_by_id(claim_id)
    listing = db.get_listing_by_id(claim["listing_id"])
    return claim["status"], listing["status"]


def _approved_claim(users, make_listing, recipient="ngo"):
    listing_id = make_listing()
    claim_id = lifecycle.claim_listing(listing_id, users[recipient])
    if recipient != "farmer":
        lifecycle.approve_claim(claim_id, users["admin"])
    return listing_id, claim_id


# =============================================================================
# Claiming and admin review
# =============================================================================

def test_ngo_claim_self_collection_end_to_end(users, make_listing):
    listing_id = make_listing()

    claim_id = lifecycle.claim_listing(listing_id, users["ngo"])
    assert _statuses(claim_id) == ("PENDING", "PENDING")
    listing = db.get_listing_by_id(listing_id)
    assert listing["claimed_by"] == users["ngo"]
    assert listing["claimed_by_contact"] == "0110000002"
    assert listing["claimed_at"] is not None

    lifecycle.approve_claim(claim_id, users["admin"])
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")
    assert db.get_claim_by_id(claim_id)["approved_at"] is not None

    lifecycle.set_collection_method(claim_id, users["ngo"], "self")
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")
    assert db.get_claim_by_id(claim_id)["collection_method"] == "self"

    lifecycle.confirm_self_collection(claim_id, users["ngo"])
    assert _statuses(claim_id) == ("COLLECTED", "COLLECTED")
    assert db.get_claim_by_id(claim_id)["collected_at"] is not None


def test_farmer_claims_directly_and_cancel_recycles_listing(users, make_listing):
    listing_id = make_listing()

    claim_id = lifecycle.claim_listing(listing_id, users["farmer"])
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")

    lifecycle.cancel_claim(claim_id, users["farmer"])
    assert _statuses(claim_id) == ("CANCELLED", "UNCLAIMED")
    listing = db.get_listing_by_id(listing_id)
    assert listing["claimed_by"] is None
    assert listing["claimed_by_contact"] is None
    assert listing["claimed_at"] is None

    # claimable again, and the history keeps both claims
    second = lifecycle.claim_listing(listing_id, users["ngo"])
    assert _statuses(second) == ("PENDING", "PENDING")
    assert [c["status"] for c in db.get_claims_for_listing(listing_id)] == ["CANCELLED", "PENDING"]


def test_reject_resets_listing_and_records_reason(users, make_listing):
    listing_id = make_listing()
    claim_id = lifecycle.claim_listing(listing_id, users["ngo"])

    lifecycle.reject_claim(claim_id, users["admin"], reason="Outside service area")

    claim = db.get_claim_by_id(claim_id)
    assert claim["status"] == "REJECTED"
    assert claim["rejection_reason"] == "Outside service area"
    assert claim["rejected_at"] is not None
    listing = db.get_listing_by_id(listing_id)
    assert listing["status"] == "UNCLAIMED"
    assert listing["claimed_by"] is None

    notes = get_user_notifications(users["ngo"])
    assert notes[0]["title"] == "Claim rejected"
    assert "Outside service area" in notes[0]["message"]


def test_claiming_claimed_listing_is_rejected_without_writes(users, make_listing):
    listing_id = make_listing()
    lifecycle.claim_listing(listing_id, users["ngo"])

    with pytest.raises(ListingUnavailable) as exc:
        lifecycle.claim_listing(listing_id, users["ngo2"])

    assert exc.value.current_status == "PENDING"
    assert len(db.get_claims_for_listing(listing_id)) == 1


def test_farmer_cannot_claim_listing_not_meant_for_farmers(users, make_listing):
    listing_id = make_listing(for_farmers=False)

    with pytest.raises(InvalidTransition):
        lifecycle.claim_listing(listing_id, users["farmer"])

    assert db.get_listing_by_id(listing_id)["status"] == "UNCLAIMED"


def test_only_recipients_can_claim(users, make_listing):
    listing_id = make_listing()
    with pytest.raises(PermissionDenied):
        lifecycle.claim_listing(listing_id, users["volunteer"])
    with pytest.raises(NotFound):
        lifecycle.claim_listing(9999, users["ngo"])


def test_only_admins_review_and_only_pending_claims(users, make_listing):
    listing_id = make_listing()
    claim_id = lifecycle.claim_listing(listing_id, users["ngo"])

    with pytest.raises(PermissionDenied):
        lifecycle.approve_claim(claim_id, users["ngo"])

    lifecycle.approve_claim(claim_id, users["admin"])
    with pytest.raises(InvalidTransition):
        lifecycle.approve_claim(claim_id, users["admin"])
    with pytest.raises(InvalidTransition):
        lifecycle.reject_claim(claim_id, users["admin"])
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")


def test_claim_notifies_donor(users, make_listing):
    listing_id = make_listing()
    lifecycle.claim_listing(listing_id, users["ngo"])

    notes = get_user_notifications(users["donor"])
    assert len(notes) == 1
    assert notes[0]["type"] == "claim"
    assert notes[0]["related_listing_id"] == listing_id
    assert notes[0]["related_user_name"] == "Hope Community Centre"


# =============================================================================
# Collection method
# =============================================================================

def test_collection_method_requires_approved_claim(users, make_listing):
    listing_id = make_listing()
    claim_id = lifecycle.claim_listing(listing_id, users["ngo"])

    with pytest.raises(InvalidTransition):
        lifecycle.set_collection_method(claim_id, users["ngo"], "self")


def test_collection_method_must_be_known(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    with pytest.raises(ValidationError):
        lifecycle.set_collection_method(claim_id, users["ngo"], "drone")


def test_collection_method_owner_only(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    with pytest.raises(PermissionDenied):
        lifecycle.set_collection_method(claim_id, users["ngo2"], "self")


def test_self_collection_needs_self_method(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")

    with pytest.raises(InvalidTransition):
        lifecycle.confirm_self_collection(claim_id, users["ngo"])
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")


# =============================================================================
# Volunteer deliveries
# =============================================================================

def test_volunteer_delivery_end_to_end(users, make_listing):
    listing_id, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")

    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])
    delivery = db.get_delivery_by_id(delivery_id)
    assert delivery["status"] == "ASSIGNED"
    assert delivery["listing_id"] == listing_id
    claim = db.get_claim_by_id(claim_id)
    assert claim["volunteer_assigned"] == users["volunteer"]
    assert claim["delivery_id"] == delivery_id
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")

    lifecycle.confirm_pickup(delivery_id, users["volunteer"])
    assert db.get_delivery_by_id(delivery_id)["status"] == "PICKED_UP"
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")

    lifecycle.complete_delivery(delivery_id, users["volunteer"])
    delivery = db.get_delivery_by_id(delivery_id)
    assert delivery["status"] == "DELIVERED"
    assert delivery["delivered_at"] is not None
    assert _statuses(claim_id) == ("COLLECTED", "COLLECTED")


def test_delivery_steps_must_happen_in_order(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])

    with pytest.raises(InvalidTransition):
        lifecycle.complete_delivery(delivery_id, users["volunteer"])

    lifecycle.confirm_pickup(delivery_id, users["volunteer"])
    with pytest.raises(InvalidTransition):
        lifecycle.confirm_pickup(delivery_id, users["volunteer"])
    with pytest.raises(InvalidTransition):
        lifecycle.cancel_delivery(delivery_id, users["volunteer"])
    assert db.get_delivery_by_id(delivery_id)["status"] == "PICKED_UP"


def test_accept_requires_volunteer_method_and_free_claim(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)

    with pytest.raises(InvalidTransition):
        lifecycle.accept_delivery(claim_id, users["volunteer"])

    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    lifecycle.accept_delivery(claim_id, users["volunteer"])
    with pytest.raises(InvalidTransition):
        lifecycle.accept_delivery(claim_id, users["volunteer2"])
    with pytest.raises(PermissionDenied):
        lifecycle.accept_delivery(claim_id, users["ngo2"])


def test_method_locked_once_volunteer_assigned(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    lifecycle.accept_delivery(claim_id, users["volunteer"])

    with pytest.raises(InvalidTransition):
        lifecycle.set_collection_method(claim_id, users["ngo"], "self")


def test_other_volunteer_cannot_touch_delivery(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])

    with pytest.raises(PermissionDenied):
        lifecycle.confirm_pickup(delivery_id, users["volunteer2"])


def test_volunteer_cancel_reopens_claim_for_volunteers(users, make_listing):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])

    lifecycle.cancel_delivery(delivery_id, users["volunteer"])

    assert db.get_delivery_by_id(delivery_id)["status"] == "CANCELLED"
    claim = db.get_claim_by_id(claim_id)
    assert claim["status"] == "CLAIMED"
    assert claim["collection_method"] == "volunteer"
    assert claim["volunteer_assigned"] is None
    assert claim["delivery_id"] is None

    second = lifecycle.accept_delivery(claim_id, users["volunteer2"])
    assert db.get_delivery_by_id(second)["status"] == "ASSIGNED"


def test_recipient_cancel_cascades_to_delivery(users, make_listing):
    listing_id, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])

    lifecycle.cancel_claim(claim_id, users["ngo"])

    assert _statuses(claim_id) == ("CANCELLED", "UNCLAIMED")
    assert db.get_delivery_by_id(delivery_id)["status"] == "CANCELLED"
    claim = db.get_claim_by_id(claim_id)
    assert claim["volunteer_assigned"] is None
    assert [n["title"] for n in get_user_notifications(users["volunteer"])] == ["Delivery cancelled"]


def test_cancel_rules(users, make_listing):
    listing_id, claim_id = _approved_claim(users, make_listing)

    with pytest.raises(PermissionDenied):
        lifecycle.cancel_claim(claim_id, users["ngo2"])

    lifecycle.set_collection_method(claim_id, users["ngo"], "self")
    lifecycle.confirm_self_collection(claim_id, users["ngo"])
    with pytest.raises(InvalidTransition):
        lifecycle.cancel_claim(claim_id, users["ngo"])


# =============================================================================
# Donor-side listing changes
# =============================================================================

def test_withdraw_listing(users, make_listing):
    listing_id = make_listing()
    lifecycle.withdraw_listing(listing_id, users["donor"])
    assert db.get_listing_by_id(listing_id)["status"] == "CANCELLED"

    with pytest.raises(InvalidTransition):
        lifecycle.claim_listing(listing_id, users["ngo"])


def test_withdraw_claimed_listing_is_rejected(users, make_listing):
    listing_id = make_listing()
    lifecycle.claim_listing(listing_id, users["farmer"])
    with pytest.raises(InvalidTransition):
        lifecycle.withdraw_listing(listing_id, users["donor"])
    with pytest.raises(PermissionDenied):
        lifecycle.withdraw_listing(listing_id, users["ngo"])


# =============================================================================
# Atomicity and consistency
# =============================================================================

def test_failed_write_rolls_back_whole_claim(users, make_listing, monkeypatch):
    listing_id = make_listing()

    def broken(*args, **kwargs):
        raise sqlite3.IntegrityError("notification insert failed")

    monkeypatch.setattr(lifecycle, "create_notification", broken)

    with pytest.raises(TransitionFailed):
        lifecycle.claim_listing(listing_id, users["ngo"])

    listing = db.get_listing_by_id(listing_id)
    assert listing["status"] == "UNCLAIMED"
    assert listing["claimed_by"] is None
    assert db.get_claims_for_listing(listing_id) == []


def test_failed_write_rolls_back_delivery_completion(users, make_listing, monkeypatch):
    _, claim_id = _approved_claim(users, make_listing)
    lifecycle.set_collection_method(claim_id, users["ngo"], "volunteer")
    delivery_id = lifecycle.accept_delivery(claim_id, users["volunteer"])
    lifecycle.confirm_pickup(delivery_id, users["volunteer"])

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(lifecycle, "create_notification", broken)

    with pytest.raises(TransitionFailed):
        lifecycle.complete_delivery(delivery_id, users["volunteer"])

    assert db.get_delivery_by_id(delivery_id)["status"] == "PICKED_UP"
    assert _statuses(claim_id) == ("CLAIMED", "CLAIMED")


def test_locked_database_is_transient(users, make_listing, monkeypatch):
    listing_id = make_listing()

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(lifecycle, "create_notification", locked)

    with pytest.raises(CollaboratorUnavailable):
        lifecycle.claim_listing(listing_id, users["ngo"])
    assert db.get_listing_by_id(listing_id)["status"] == "UNCLAIMED"


def test_status_pairs_stay_consistent(users, make_listing):
    first = make_listing()
    second = make_listing(food_type="Assorted Pastries")
    third = make_listing(food_type="Mixed Vegetables")

    c1 = lifecycle.claim_listing(first, users["ngo"])
    lifecycle.reject_claim(c1, users["admin"])
    c2 = lifecycle.claim_listing(first, users["farmer"])
    lifecycle.set_collection_method(c2, users["farmer"], "self")
    lifecycle.confirm_self_collection(c2, users["farmer"])

    c3 = lifecycle.claim_listing(second, users["ngo2"])
    lifecycle.approve_claim(c3, users["admin"])
    lifecycle.cancel_claim(c3, users["ngo2"])
    lifecycle.claim_listing(second, users["ngo"])

    lifecycle.claim_listing(third, users["farmer"])

    for claim in db.get_claims():
        assert lifecycle.is_consistent(claim["status"], claim["listing_status"]), claim

    # at most one active claim per listing
    for listing_id in (first, second, third):
        active = [c for c in db.get_claims_for_listing(listing_id) if c["status"] in ("PENDING", "CLAIMED")]
        assert len(active) <= 1


def test_unique_index_blocks_second_active_claim(users, make_listing):
    listing_id = make_listing()
    lifecycle.claim_listing(listing_id, users["ngo"])

    conn = db.get_conn()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("""
                INSERT INTO claims (listing_id, recipient_id, recipient_type, status, claimed_at)
                VALUES (?, ?, 'ngo', 'PENDING', '2026-01-01T00:00:00.000000+00:00')
            """, (listing_id, users["ngo2"]))
    finally:
        conn.close()
