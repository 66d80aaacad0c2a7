# notifications.py
import logging

from db import get_conn
from time_utils import now_iso

logger = logging.getLogger(__name__)


def create_notification(user_id, type, title, message, related_listing_id=None, related_user_id=None, conn=None):
    """
    Insert a notification. Pass the caller's connection to make the insert
    part of an open transaction; errors then propagate and roll it back.
    """
    own = conn is None
    conn = conn or get_conn()
    try:
        cur = conn.execute("""
            INSERT INTO notifications (user_id, type, title, message, related_listing_id, related_user_id, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        """, (user_id, type, title, message, related_listing_id, related_user_id, now_iso()))
        logger.debug("Notification %s for user %s: %s", cur.lastrowid, user_id, title)
        return cur.lastrowid
    finally:
        if own:
            conn.close()


def get_user_notifications(user_id, limit=20, unread_only=False):
    conn = get_conn()
    try:
        query = """
            SELECT n.*,
                   u.name AS related_user_name,
                   l.food_type AS listing_title
            FROM notifications n
            LEFT JOIN users u ON n.related_user_id = u.id
            LEFT JOIN listings l ON n.related_listing_id = l.id
            WHERE n.user_id = ?
        """
        if unread_only:
            query += " AND n.is_read = 0"
        query += " ORDER BY n.created_at DESC, n.id DESC LIMIT ?"
        return [dict(row) for row in conn.execute(query, (user_id, limit)).fetchall()]
    finally:
        conn.close()


def mark_notification_as_read(notification_id):
    conn = get_conn()
    try:
        cur = conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
        return cur.rowcount == 1
    finally:
        conn.close()


def get_unread_notification_count(user_id):
    conn = get_conn()
    try:
        row = conn.execute("SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)).fetchone()
        return row[0]
    finally:
        conn.close()


def clear_read_notifications(user_id):
    conn = get_conn()
    try:
        cur = conn.execute("DELETE FROM notifications WHERE user_id = ? AND is_read = 1", (user_id,))
        return cur.rowcount
    finally:
        conn.close()
