# db.py
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from config import get_setting
from errors import NotFound, PermissionDenied, ValidationError
from init_db import create_schema
from maps_utils import directions_url, distance_km, geocode, static_map_url
from time_utils import now_iso, to_iso, to_millis

logger = logging.getLogger(__name__)

LISTING_REQUIRED_FIELDS = ("food_type", "category", "quantity", "collect_by", "pickup_address")
LISTING_POSTER_ROLES = ("donor", "farmer")


def get_db_path(db_path=None):
    p = db_path or get_setting("db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    return p


def get_conn(db_path=None) -> sqlite3.Connection:
    p = get_db_path(db_path)
    # isolation_level=None: transactions are opened explicitly by transaction()
    conn = sqlite3.connect(p, check_same_thread=False, isolation_level=None, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def ensure_schema(db_path=None):
    conn = get_conn(db_path)
    try:
        create_schema(conn)
    finally:
        conn.close()


@contextmanager
def transaction(db_path=None):
    """
    Open a write transaction. BEGIN IMMEDIATE takes the write lock up front,
    so two writers racing on the same rows are serialized and the second one
    sees the first one's committed state.
    """
    conn = get_conn(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()


def _fetchone(sql, params=(), conn=None):
    own = conn is None
    conn = conn or get_conn()
    try:
        row = conn.execute(sql, params).fetchone()
        return dict(row) if row else None
    finally:
        if own:
            conn.close()


def _fetchall(sql, params=(), conn=None):
    own = conn is None
    conn = conn or get_conn()
    try:
        return [dict(row) for row in conn.execute(sql, params).fetchall()]
    finally:
        if own:
            conn.close()


# Listings

def _timestamp_field(data, field):
    try:
        return to_iso(data.get(field))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a timestamp") from None


def create_listing(data: dict):
    missing = [f for f in LISTING_REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing))
    try:
        quantity = float(data["quantity"])
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a number") from None
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    collect_by = _timestamp_field(data, "collect_by")
    expiry_at = _timestamp_field(data, "expiry_at")

    donor = _fetchone("SELECT * FROM users WHERE id = ?", (data.get("donor_id"),))
    if donor is None:
        raise NotFound(f"Donor {data.get('donor_id')} not found")
    if donor["role"] not in LISTING_POSTER_ROLES:
        raise PermissionDenied("Only donors and farmers can post listings")

    lat, lng = data.get("lat"), data.get("lng")
    if lat is None or lng is None:
        lat, lng = geocode(data["pickup_address"]) or (None, None)

    with transaction() as conn:
        unit = data.get("unit") or ""
        special = data.get("special_instructions") or ""
        description = data.get("description") or f"{data['food_type']} - {data['quantity']} {unit}. {special}".strip()
        now = now_iso()
        cur = conn.execute("""
            INSERT INTO listings (
                donor_id, donor_email, donor_type, listing_company, food_type, category, quantity, unit,
                description, special_instructions, expiry_at, collect_by, pickup_address,
                contact_person, contact_phone, for_farmers, image_url, lat, lng,
                status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'UNCLAIMED', ?, ?)
        """, (
            donor["id"],
            donor["email"],
            donor["role"],
            donor.get("organization") or donor["name"],
            data["food_type"],
            data["category"],
            quantity,
            unit,
            description,
            special,
            expiry_at,
            collect_by,
            data["pickup_address"],
            data.get("contact_person") or donor["name"],
            data.get("contact_phone") or donor.get("phone"),
            1 if data.get("for_farmers", False) else 0,
            data.get("image_url"),
            lat,
            lng,
            now,
            now,
        ))
        lid = cur.lastrowid
    logger.info("Created listing %s for donor %s", lid, donor["id"])
    return lid


def get_listing_by_id(lid, conn=None):
    return _fetchone("SELECT * FROM listings WHERE id = ?", (lid,), conn)


def get_listings_for_donor(donor_id, status=None):
    query = "SELECT * FROM listings WHERE donor_id = ?"
    params = [donor_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    return _fetchall(query, params)


def get_available_listings(user_id):
    """
    Unclaimed listings the user may claim. Farmers only see listings flagged
    for farmers and never their own donations.
    """
    user = _fetchone("SELECT role FROM users WHERE id = ?", (user_id,))
    role = user["role"] if user else None

    query = "SELECT * FROM listings WHERE status = 'UNCLAIMED' AND donor_id != ?"
    if role == "farmer":
        query += " AND for_farmers = 1"
    elif role != "ngo":
        return []
    query += " ORDER BY collect_by ASC, id ASC"
    return _fetchall(query, (user_id,))


def expire_old_listings(now=None):
    """Unclaimed listings past their expiry are withdrawn. Returns how many changed."""
    now_value = to_iso(now) if now is not None else now_iso()
    with transaction() as conn:
        cur = conn.execute("""
            UPDATE listings SET status = 'CANCELLED', updated_at = ?
            WHERE status = 'UNCLAIMED' AND expiry_at IS NOT NULL AND expiry_at < ?
        """, (now_value, now_value))
        count = cur.rowcount
    if count:
        logger.info("Expired %d listings", count)
    return count


# Claims

CLAIM_SELECT = """
    SELECT c.*, l.collect_by, l.food_type, l.category, l.quantity, l.unit,
           l.pickup_address, l.donor_id, l.donor_email, l.status AS listing_status
    FROM claims c JOIN listings l ON c.listing_id = l.id
"""


def get_claim_by_id(cid, conn=None):
    return _fetchone(CLAIM_SELECT + " WHERE c.id = ?", (cid,), conn)


def get_claims(status=None):
    """All claims, optionally by status. Used by the admin approvals queue."""
    if status:
        return _fetchall(CLAIM_SELECT + " WHERE c.status = ? ORDER BY c.claimed_at ASC, c.id ASC", (status,))
    return _fetchall(CLAIM_SELECT + " ORDER BY c.claimed_at ASC, c.id ASC")


def get_claims_for_recipient(recipient_id, status=None):
    query = CLAIM_SELECT + " WHERE c.recipient_id = ?"
    params = [recipient_id]
    if status:
        query += " AND c.status = ?"
        params.append(status)
    query += " ORDER BY c.claimed_at DESC, c.id DESC"
    return _fetchall(query, params)


def get_claims_for_listing(listing_id):
    return _fetchall(CLAIM_SELECT + " WHERE c.listing_id = ? ORDER BY c.id ASC", (listing_id,))


# Deliveries

def get_delivery_by_id(did, conn=None):
    return _fetchone("SELECT * FROM deliveries WHERE id = ?", (did,), conn)


def get_deliveries_for_volunteer(volunteer_id, status=None):
    query = """
        SELECT d.*, l.food_type, l.category, l.quantity, l.unit, l.pickup_address,
               l.collect_by, c.recipient_name, c.recipient_email
        FROM deliveries d
        JOIN listings l ON d.listing_id = l.id
        JOIN claims c ON d.claim_id = c.id
        WHERE d.volunteer_id = ?
    """
    params = [volunteer_id]
    if status:
        query += " AND d.status = ?"
        params.append(status)
    query += " ORDER BY d.assigned_at DESC, d.id DESC"
    return _fetchall(query, params)


def get_available_deliveries(volunteer_id, sort_by="urgency"):
    """
    Claims waiting for a volunteer. When both the volunteer and the listing
    have coordinates, listings beyond the volunteer's max distance are hidden
    and each row carries distance_km. Rows with coordinates also carry map
    and directions links.
    """
    volunteer = _fetchone("SELECT * FROM users WHERE id = ?", (volunteer_id,))
    if volunteer is None:
        raise NotFound(f"Volunteer {volunteer_id} not found")

    rows = _fetchall("""
        SELECT c.*, l.collect_by, l.food_type, l.category, l.quantity, l.unit,
               l.pickup_address, l.lat, l.lng
        FROM claims c JOIN listings l ON c.listing_id = l.id
        WHERE c.status = 'CLAIMED' AND c.collection_method = 'volunteer'
          AND c.volunteer_assigned IS NULL
    """)

    origin = None
    if volunteer.get("lat") is not None and volunteer.get("lng") is not None:
        origin = (volunteer["lat"], volunteer["lng"])
    max_km = volunteer.get("max_distance_km")

    out = []
    for row in rows:
        row["distance_km"] = row["map_url"] = row["directions_url"] = None
        if row["lat"] is not None and row["lng"] is not None:
            pickup = (row["lat"], row["lng"])
            if origin:
                row["distance_km"] = distance_km(origin, pickup)
                if max_km is not None and row["distance_km"] > max_km:
                    continue
                row["directions_url"] = directions_url(origin, pickup)
            row["map_url"] = static_map_url(*pickup)
        out.append(row)

    if sort_by == "distance":
        out.sort(key=lambda r: (r["distance_km"] is None, r["distance_km"] or 0))
    elif sort_by == "time":
        out.sort(key=lambda r: to_millis(r["claimed_at"]), reverse=True)
    else:
        out.sort(key=lambda r: to_millis(r["collect_by"]))
    return out


# Analytics

def get_system_stats():
    conn = get_conn()
    try:
        stats = {"users": {}, "listings": {}, "claims": {}, "deliveries": {}}
        for role, count in conn.execute("SELECT role, COUNT(*) FROM users GROUP BY role"):
            stats["users"][role] = count
        for table in ("listings", "claims", "deliveries"):
            for status, count in conn.execute(f"SELECT status, COUNT(*) FROM {table} GROUP BY status"):
                stats[table][status] = count
        row = conn.execute("SELECT COALESCE(SUM(quantity), 0) FROM listings WHERE status = 'COLLECTED'").fetchone()
        stats["quantity_collected"] = row[0]
        return stats
    finally:
        conn.close()
