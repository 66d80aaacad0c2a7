# init_db.py
import logging

logger = logging.getLogger(__name__)

SCHEMA = [
    # users
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL, -- donor / ngo / farmer / volunteer / admin
        organization TEXT,
        lat REAL,
        lng REAL,
        max_distance_km REAL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # listings
    """
    CREATE TABLE IF NOT EXISTS listings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        donor_id INTEGER NOT NULL,
        donor_email TEXT,
        donor_type TEXT NOT NULL DEFAULT 'donor', -- donor / farmer
        listing_company TEXT,
        food_type TEXT NOT NULL,
        category TEXT NOT NULL,
        quantity REAL NOT NULL,
        unit TEXT,
        description TEXT,
        special_instructions TEXT,
        expiry_at TEXT,
        collect_by TEXT NOT NULL,
        pickup_address TEXT NOT NULL,
        contact_person TEXT,
        contact_phone TEXT,
        for_farmers INTEGER DEFAULT 0, -- 1 = suitable for farmers / animal feed
        image_url TEXT,
        lat REAL,
        lng REAL,
        status TEXT NOT NULL DEFAULT 'UNCLAIMED'
            CHECK (status IN ('UNCLAIMED', 'PENDING', 'CLAIMED', 'IN_TRANSIT', 'COLLECTED', 'CANCELLED')),
        claimed_by INTEGER,
        claimed_by_contact TEXT,
        claimed_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(donor_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
    # claims
    """
    CREATE TABLE IF NOT EXISTS claims (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        listing_id INTEGER NOT NULL,
        recipient_id INTEGER NOT NULL,
        recipient_email TEXT,
        recipient_name TEXT,
        recipient_type TEXT NOT NULL, -- ngo / farmer
        status TEXT NOT NULL
            CHECK (status IN ('PENDING', 'CLAIMED', 'COLLECTED', 'CANCELLED', 'REJECTED')),
        claimed_at TEXT NOT NULL,
        collection_method TEXT CHECK (collection_method IN ('self', 'volunteer')),
        volunteer_assigned INTEGER,
        delivery_id INTEGER,
        approved_at TEXT,
        rejected_at TEXT,
        rejection_reason TEXT,
        cancelled_at TEXT,
        collected_at TEXT,
        updated_at TEXT,
        FOREIGN KEY(listing_id) REFERENCES listings(id) ON DELETE CASCADE,
        FOREIGN KEY(recipient_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
    # at most one active claim per listing
    """
    CREATE UNIQUE INDEX IF NOT EXISTS claims_one_active_per_listing
        ON claims(listing_id) WHERE status IN ('PENDING', 'CLAIMED');
    """,
    # delivery assignments
    """
    CREATE TABLE IF NOT EXISTS deliveries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        claim_id INTEGER NOT NULL,
        listing_id INTEGER NOT NULL,
        volunteer_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'ASSIGNED'
            CHECK (status IN ('ASSIGNED', 'PICKED_UP', 'DELIVERED', 'CANCELLED')),
        assigned_at TEXT NOT NULL,
        picked_up_at TEXT,
        delivered_at TEXT,
        cancelled_at TEXT,
        FOREIGN KEY(claim_id) REFERENCES claims(id) ON DELETE CASCADE,
        FOREIGN KEY(listing_id) REFERENCES listings(id) ON DELETE CASCADE,
        FOREIGN KEY(volunteer_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
    # chat rooms
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
        id TEXT PRIMARY KEY,
        donor_email TEXT NOT NULL,
        recipient_email TEXT NOT NULL,
        donation_id TEXT NOT NULL,
        last_message TEXT,
        last_message_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # chat messages
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_room_id TEXT NOT NULL,
        text TEXT NOT NULL,
        sender_email TEXT NOT NULL,
        sender_name TEXT,
        sender_role TEXT,
        timestamp TEXT NOT NULL,
        read INTEGER DEFAULT 0,
        FOREIGN KEY(chat_room_id) REFERENCES chat_rooms(id) ON DELETE CASCADE
    );
    """,
    # notifications
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        type TEXT NOT NULL, -- 'claim', 'approval', 'delivery', 'cancellation', 'system'
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        related_listing_id INTEGER,
        related_user_id INTEGER,
        is_read INTEGER DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY(related_listing_id) REFERENCES listings(id) ON DELETE CASCADE,
        FOREIGN KEY(related_user_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
]


def create_schema(conn):
    for statement in SCHEMA:
        conn.execute(statement)


def init_db(db_path=None):
    from db import get_conn

    conn = get_conn(db_path)
    try:
        create_schema(conn)
    finally:
        conn.close()
    logger.info("DB initialized at %s", db_path or "configured path")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
