# lifecycle.py
"""
Donation claim lifecycle.

Every public transition below runs inside one SQLite write transaction:
preconditions are read after the write lock is taken, and every listing,
claim and delivery update is applied together or not at all.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager

import db
from auth import RECIPIENT_ROLES, require_role
from config import get_float
from errors import (
    CollaboratorUnavailable,
    InvalidTransition,
    ListingUnavailable,
    NotFound,
    PermissionDenied,
    TransitionFailed,
    UbuntuEatsError,
    ValidationError,
)
from notifications import create_notification
from time_utils import now_iso, to_millis, utcnow

logger = logging.getLogger(__name__)

# Listing.status
UNCLAIMED = "UNCLAIMED"
PENDING = "PENDING"
CLAIMED = "CLAIMED"
IN_TRANSIT = "IN_TRANSIT"
COLLECTED = "COLLECTED"
CANCELLED = "CANCELLED"

# Claim.status (shares PENDING / CLAIMED / COLLECTED / CANCELLED)
REJECTED = "REJECTED"

# Delivery.status
ASSIGNED = "ASSIGNED"
PICKED_UP = "PICKED_UP"
DELIVERED = "DELIVERED"

SELF = "self"
VOLUNTEER = "volunteer"
COLLECTION_METHODS = (SELF, VOLUNTEER)

ACTIVE_CLAIM_STATUSES = (PENDING, CLAIMED)
OPEN_DELIVERY_STATUSES = (ASSIGNED, PICKED_UP)

TIMEOUT_CHOICES = (SELF, "cancel")

# Listing statuses each claim status may coexist with.
VALID_STATUS_PAIRS = {
    PENDING: {PENDING},
    CLAIMED: {CLAIMED},
    COLLECTED: {COLLECTED},
    # abandoned claims: the listing was recycled and may have moved on
    CANCELLED: {UNCLAIMED, PENDING, CLAIMED, COLLECTED, CANCELLED},
    REJECTED: {UNCLAIMED, PENDING, CLAIMED, COLLECTED, CANCELLED},
}


def is_consistent(claim_status, listing_status):
    return listing_status in VALID_STATUS_PAIRS.get(claim_status, ())


@contextmanager
def _transition(name):
    try:
        with db.transaction() as conn:
            yield conn
    except InvalidTransition as e:
        logger.warning("%s rejected: %s", name, e)
        raise
    except UbuntuEatsError:
        raise
    except sqlite3.OperationalError as e:
        if "locked" in str(e) or "busy" in str(e):
            raise CollaboratorUnavailable(f"{name}: database is busy, try again") from e
        logger.exception("%s failed, rolled back", name)
        raise TransitionFailed(f"{name} failed, no changes applied") from e
    except sqlite3.Error as e:
        logger.exception("%s failed, rolled back", name)
        raise TransitionFailed(f"{name} failed, no changes applied") from e


def _update_one(conn, sql, params, what):
    """Run a guarded UPDATE that must touch exactly one row."""
    cur = conn.execute(sql, params)
    if cur.rowcount != 1:
        raise TransitionFailed(f"{what} was not in the expected state, no changes applied")


def _load_claim(conn, claim_id):
    claim = db.get_claim_by_id(claim_id, conn)
    if claim is None:
        raise NotFound(f"Claim {claim_id} not found")
    return claim


def _load_delivery(conn, delivery_id, volunteer_id):
    delivery = db.get_delivery_by_id(delivery_id, conn)
    if delivery is None:
        raise NotFound(f"Delivery {delivery_id} not found")
    if delivery["volunteer_id"] != volunteer_id:
        raise PermissionDenied("This delivery is assigned to another volunteer")
    return delivery


def _expect_status(record, allowed, what):
    if isinstance(allowed, str):
        allowed = (allowed,)
    if record["status"] not in allowed:
        raise InvalidTransition(
            f"{what} is {record['status']}, expected {' or '.join(allowed)}",
            current_status=record["status"],
        )


def _expect_owner(claim, recipient_id):
    if claim["recipient_id"] != recipient_id:
        raise PermissionDenied("This claim belongs to another recipient")


# Claiming and admin review

def claim_listing(listing_id, recipient_id):
    """
    Claim an unclaimed listing. NGO claims wait for admin approval (PENDING);
    farmers claim directly (CLAIMED). Returns the new claim id.
    """
    with _transition("claim_listing") as conn:
        recipient = require_role(recipient_id, RECIPIENT_ROLES, conn)
        listing = db.get_listing_by_id(listing_id, conn)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if listing["donor_id"] == recipient["id"]:
            raise PermissionDenied("You cannot claim your own donation")
        is_farmer = recipient["role"] == "farmer"
        if is_farmer and not listing["for_farmers"]:
            raise InvalidTransition("This listing is not available for farmers", current_status=listing["status"])

        status = CLAIMED if is_farmer else PENDING
        now = now_iso()
        cur = conn.execute("""
            UPDATE listings
            SET status = ?, claimed_by = ?, claimed_by_contact = ?, claimed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'UNCLAIMED'
        """, (status, recipient["id"], recipient.get("phone") or recipient["email"], now, now, listing_id))
        if cur.rowcount == 0:
            raise ListingUnavailable("Listing is no longer available", current_status=listing["status"])

        cur = conn.execute("""
            INSERT INTO claims (listing_id, recipient_id, recipient_email, recipient_name, recipient_type,
                                status, claimed_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (listing_id, recipient["id"], recipient["email"], recipient.get("organization") or recipient["name"],
              recipient["role"], status, now, now))
        claim_id = cur.lastrowid

        create_notification(
            listing["donor_id"], "claim", "Donation claimed",
            f"{recipient.get('organization') or recipient['name']} claimed your {listing['food_type']}.",
            related_listing_id=listing_id, related_user_id=recipient["id"], conn=conn,
        )
    logger.info("Listing %s claimed by %s %s (claim %s, %s)", listing_id, recipient["role"], recipient_id, claim_id, status)
    return claim_id


def approve_claim(claim_id, admin_id):
    with _transition("approve_claim") as conn:
        require_role(admin_id, "admin", conn)
        claim = _load_claim(conn, claim_id)
        _expect_status(claim, PENDING, "Claim")
        now = now_iso()
        _update_one(conn, """
            UPDATE claims SET status = 'CLAIMED', approved_at = ?, updated_at = ?
            WHERE id = ? AND status = 'PENDING'
        """, (now, now, claim_id), f"Claim {claim_id}")
        _update_one(conn, """
            UPDATE listings SET status = 'CLAIMED', updated_at = ?
            WHERE id = ? AND status = 'PENDING'
        """, (now, claim["listing_id"]), f"Listing {claim['listing_id']}")
        create_notification(
            claim["recipient_id"], "approval", "Claim approved",
            f"Your claim for {claim['food_type']} was approved. Choose how you will collect it.",
            related_listing_id=claim["listing_id"], conn=conn,
        )
    logger.info("Claim %s approved by admin %s", claim_id, admin_id)


def reject_claim(claim_id, admin_id, reason=None):
    with _transition("reject_claim") as conn:
        require_role(admin_id, "admin", conn)
        claim = _load_claim(conn, claim_id)
        _expect_status(claim, PENDING, "Claim")
        now = now_iso()
        _update_one(conn, """
            UPDATE claims SET status = 'REJECTED', rejected_at = ?, rejection_reason = ?, updated_at = ?
            WHERE id = ? AND status = 'PENDING'
        """, (now, reason, now, claim_id), f"Claim {claim_id}")
        _release_listing(conn, claim["listing_id"], (PENDING,), now)
        create_notification(
            claim["recipient_id"], "approval", "Claim rejected",
            f"Your claim for {claim['food_type']} was rejected." + (f" Reason: {reason}" if reason else ""),
            related_listing_id=claim["listing_id"], conn=conn,
        )
    logger.info("Claim %s rejected by admin %s", claim_id, admin_id)


def _release_listing(conn, listing_id, from_statuses, now):
    """Put a listing back on the board with its claim pointers cleared."""
    placeholders = ", ".join("?" for _ in from_statuses)
    _update_one(conn, f"""
        UPDATE listings
        SET status = 'UNCLAIMED', claimed_by = NULL, claimed_by_contact = NULL, claimed_at = NULL, updated_at = ?
        WHERE id = ? AND status IN ({placeholders})
    """, (now, listing_id, *from_statuses), f"Listing {listing_id}")


# Collection

def set_collection_method(claim_id, recipient_id, method):
    if method not in COLLECTION_METHODS:
        raise ValidationError(f"Collection method must be one of {', '.join(COLLECTION_METHODS)}")
    with _transition("set_collection_method") as conn:
        claim = _load_claim(conn, claim_id)
        _expect_owner(claim, recipient_id)
        _expect_status(claim, CLAIMED, "Claim")
        if claim["volunteer_assigned"] is not None:
            raise InvalidTransition("A volunteer has already accepted this delivery", current_status=claim["status"])
        _update_one(conn, """
            UPDATE claims SET collection_method = ?, updated_at = ?
            WHERE id = ? AND status = 'CLAIMED' AND volunteer_assigned IS NULL
        """, (method, now_iso(), claim_id), f"Claim {claim_id}")
    logger.info("Claim %s collection method set to %s", claim_id, method)


def confirm_self_collection(claim_id, recipient_id):
    with _transition("confirm_self_collection") as conn:
        claim = _load_claim(conn, claim_id)
        _expect_owner(claim, recipient_id)
        _expect_status(claim, CLAIMED, "Claim")
        if claim["collection_method"] != SELF:
            raise InvalidTransition("Claim is not set to self-collection", current_status=claim["status"])
        _mark_collected(conn, claim, now_iso())
    logger.info("Claim %s collected by recipient %s", claim_id, recipient_id)


def _mark_collected(conn, claim, now):
    _update_one(conn, """
        UPDATE claims SET status = 'COLLECTED', collected_at = ?, updated_at = ?
        WHERE id = ? AND status = 'CLAIMED'
    """, (now, now, claim["id"]), f"Claim {claim['id']}")
    _update_one(conn, """
        UPDATE listings SET status = 'COLLECTED', updated_at = ?
        WHERE id = ? AND status = 'CLAIMED'
    """, (now, claim["listing_id"]), f"Listing {claim['listing_id']}")
    create_notification(
        claim["donor_id"], "delivery", "Donation collected",
        f"Your {claim['food_type']} reached {claim['recipient_name']}.",
        related_listing_id=claim["listing_id"], related_user_id=claim["recipient_id"], conn=conn,
    )


# Volunteer deliveries

def accept_delivery(claim_id, volunteer_id):
    """A volunteer takes on a volunteer-assisted claim. Returns the delivery id."""
    with _transition("accept_delivery") as conn:
        volunteer = require_role(volunteer_id, "volunteer", conn)
        claim = _load_claim(conn, claim_id)
        _expect_status(claim, CLAIMED, "Claim")
        if claim["collection_method"] != VOLUNTEER:
            raise InvalidTransition("Claim does not request volunteer collection", current_status=claim["status"])
        if claim["volunteer_assigned"] is not None:
            raise InvalidTransition("Another volunteer already accepted this delivery", current_status=claim["status"])

        now = now_iso()
        cur = conn.execute("""
            INSERT INTO deliveries (claim_id, listing_id, volunteer_id, status, assigned_at)
            VALUES (?, ?, ?, 'ASSIGNED', ?)
        """, (claim_id, claim["listing_id"], volunteer_id, now))
        delivery_id = cur.lastrowid
        _update_one(conn, """
            UPDATE claims SET volunteer_assigned = ?, delivery_id = ?, updated_at = ?
            WHERE id = ? AND status = 'CLAIMED' AND collection_method = 'volunteer' AND volunteer_assigned IS NULL
        """, (volunteer_id, delivery_id, now, claim_id), f"Claim {claim_id}")
        create_notification(
            claim["recipient_id"], "delivery", "Volunteer assigned",
            f"{volunteer['name']} will deliver your {claim['food_type']}.",
            related_listing_id=claim["listing_id"], related_user_id=volunteer_id, conn=conn,
        )
    logger.info("Volunteer %s accepted claim %s (delivery %s)", volunteer_id, claim_id, delivery_id)
    return delivery_id


def confirm_pickup(delivery_id, volunteer_id):
    with _transition("confirm_pickup") as conn:
        delivery = _load_delivery(conn, delivery_id, volunteer_id)
        _expect_status(delivery, ASSIGNED, "Delivery")
        _update_one(conn, """
            UPDATE deliveries SET status = 'PICKED_UP', picked_up_at = ?
            WHERE id = ? AND status = 'ASSIGNED'
        """, (now_iso(), delivery_id), f"Delivery {delivery_id}")
    logger.info("Delivery %s picked up", delivery_id)


def complete_delivery(delivery_id, volunteer_id):
    with _transition("complete_delivery") as conn:
        delivery = _load_delivery(conn, delivery_id, volunteer_id)
        _expect_status(delivery, PICKED_UP, "Delivery")
        claim = _load_claim(conn, delivery["claim_id"])
        now = now_iso()
        _update_one(conn, """
            UPDATE deliveries SET status = 'DELIVERED', delivered_at = ?
            WHERE id = ? AND status = 'PICKED_UP'
        """, (now, delivery_id), f"Delivery {delivery_id}")
        _mark_collected(conn, claim, now)
        create_notification(
            claim["recipient_id"], "delivery", "Donation delivered",
            f"Your {claim['food_type']} has been delivered.",
            related_listing_id=claim["listing_id"], related_user_id=volunteer_id, conn=conn,
        )
    logger.info("Delivery %s completed, claim %s collected", delivery_id, delivery["claim_id"])


def cancel_delivery(delivery_id, volunteer_id):
    """The volunteer backs out; the claim goes back on the delivery board."""
    with _transition("cancel_delivery") as conn:
        delivery = _load_delivery(conn, delivery_id, volunteer_id)
        _expect_status(delivery, ASSIGNED, "Delivery")
        claim = _load_claim(conn, delivery["claim_id"])
        now = now_iso()
        _update_one(conn, """
            UPDATE deliveries SET status = 'CANCELLED', cancelled_at = ?
            WHERE id = ? AND status = 'ASSIGNED'
        """, (now, delivery_id), f"Delivery {delivery_id}")
        _update_one(conn, """
            UPDATE claims SET volunteer_assigned = NULL, delivery_id = NULL, updated_at = ?
            WHERE id = ? AND status = 'CLAIMED' AND delivery_id = ?
        """, (now, claim["id"], delivery_id), f"Claim {claim['id']}")
        create_notification(
            claim["recipient_id"], "cancellation", "Volunteer cancelled",
            f"The volunteer for your {claim['food_type']} cancelled. We are looking for another one.",
            related_listing_id=claim["listing_id"], related_user_id=volunteer_id, conn=conn,
        )
    logger.info("Delivery %s cancelled by volunteer %s", delivery_id, volunteer_id)


# Cancellation

def cancel_claim(claim_id, recipient_id):
    """Recipient gives up a claim; the listing becomes claimable again."""
    with _transition("cancel_claim") as conn:
        claim = _load_claim(conn, claim_id)
        _expect_owner(claim, recipient_id)
        _expect_status(claim, ACTIVE_CLAIM_STATUSES, "Claim")
        now = now_iso()
        _update_one(conn, """
            UPDATE claims
            SET status = 'CANCELLED', cancelled_at = ?, volunteer_assigned = NULL, delivery_id = NULL, updated_at = ?
            WHERE id = ? AND status IN ('PENDING', 'CLAIMED')
        """, (now, now, claim_id), f"Claim {claim_id}")
        conn.execute("""
            UPDATE deliveries SET status = 'CANCELLED', cancelled_at = ?
            WHERE claim_id = ? AND status IN ('ASSIGNED', 'PICKED_UP')
        """, (now, claim_id))
        _release_listing(conn, claim["listing_id"], (claim["status"],), now)

        create_notification(
            claim["donor_id"], "cancellation", "Claim cancelled",
            f"{claim['recipient_name']} cancelled their claim. Your {claim['food_type']} is available again.",
            related_listing_id=claim["listing_id"], related_user_id=recipient_id, conn=conn,
        )
        if claim["volunteer_assigned"] is not None:
            create_notification(
                claim["volunteer_assigned"], "cancellation", "Delivery cancelled",
                f"The recipient cancelled the claim for {claim['food_type']}.",
                related_listing_id=claim["listing_id"], conn=conn,
            )
    logger.info("Claim %s cancelled by recipient %s", claim_id, recipient_id)


def withdraw_listing(listing_id, donor_id):
    """Donor takes an unclaimed listing off the board."""
    with _transition("withdraw_listing") as conn:
        listing = db.get_listing_by_id(listing_id, conn)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if listing["donor_id"] != donor_id:
            raise PermissionDenied("This listing belongs to another donor")
        _expect_status(listing, UNCLAIMED, "Listing")
        _update_one(conn, """
            UPDATE listings SET status = 'CANCELLED', updated_at = ?
            WHERE id = ? AND status = 'UNCLAIMED'
        """, (now_iso(), listing_id), f"Listing {listing_id}")
    logger.info("Listing %s withdrawn by donor %s", listing_id, donor_id)


# Volunteer timeout

def is_volunteer_timed_out(claim, now=None):
    """
    True once a claim waiting for a volunteer has used up half of the window
    between claiming and the collect-by deadline.
    """
    if claim.get("status") != CLAIMED or claim.get("collection_method") != VOLUNTEER:
        return False
    if claim.get("volunteer_assigned") is not None:
        return False
    if not claim.get("claimed_at") or not claim.get("collect_by"):
        return False
    start = to_millis(claim["claimed_at"])
    deadline = to_millis(claim["collect_by"])
    now_ms = to_millis(now if now is not None else utcnow())
    return now_ms - start >= (deadline - start) / 2


def timeout_choices(claim, now=None):
    return TIMEOUT_CHOICES if is_volunteer_timed_out(claim, now) else ()


def resolve_timeout(claim_id, recipient_id, choice):
    if choice == SELF:
        set_collection_method(claim_id, recipient_id, SELF)
    elif choice == "cancel":
        cancel_claim(claim_id, recipient_id)
    else:
        raise ValidationError(f"Choice must be one of {', '.join(TIMEOUT_CHOICES)}")


class VolunteerTimeoutWatcher:
    """
    Periodically re-evaluates a recipient's volunteer claims and calls
    on_timeout(claim) once for each claim that crosses the timeout.
    """

    def __init__(self, recipient_id, on_timeout, interval=None):
        self.recipient_id = recipient_id
        self.on_timeout = on_timeout
        self.interval = interval if interval is not None else get_float("volunteer_poll_seconds")
        self._notified = set()
        self._stop = threading.Event()
        self._thread = None

    def check_once(self, now=None):
        timed_out = [
            claim for claim in db.get_claims_for_recipient(self.recipient_id, status=CLAIMED)
            if is_volunteer_timed_out(claim, now)
        ]
        fresh = [claim for claim in timed_out if claim["id"] not in self._notified]
        # claims resolved since the last check drop out, so a later timeout reports again
        self._notified = {claim["id"] for claim in timed_out}
        for claim in fresh:
            self.on_timeout(claim)
        return fresh

    def _run(self, stop):
        while not stop.is_set():
            try:
                self.check_once()
            except (UbuntuEatsError, sqlite3.Error):
                logger.exception("volunteer timeout check failed for recipient %s", self.recipient_id)
            stop.wait(self.interval)

    def start(self):
        if self._thread is not None:
            return
        # one stop event per thread
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop,), name=f"timeout-watcher-{self.recipient_id}", daemon=True,
        )
        self._thread.start()

    def stop(self):
        self._stop.set()
        thread, self._thread = self._thread, None
        # on_timeout may stop the watcher from its own thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
