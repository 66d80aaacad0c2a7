# cloud_functions.py
"""
Handlers behind the authenticated HTTP endpoints. The HTTP layer verifies
the bearer token, then calls handle_request() with the caller's email and
the JSON body; every handler answers with a dict carrying a success flag.
"""
import functools
import logging
import sqlite3

from auth import get_user_by_email, public_profile
from chat import chat_room_id as build_chat_room_id
from chat import load_messages
from db import get_conn, get_listing_by_id, transaction
from errors import NotFound, PermissionDenied, UbuntuEatsError, ValidationError
from time_utils import now_iso

logger = logging.getLogger(__name__)


def endpoint(func):
    @functools.wraps(func)
    def wrapper(caller_email, *args, **kwargs):
        try:
            if not isinstance(caller_email, str) or not caller_email:
                raise PermissionDenied("User must be authenticated")
            return func(caller_email, *args, **kwargs)
        except UbuntuEatsError as e:
            logger.warning("%s failed for %s: %s", func.__name__, caller_email, e)
            return {"success": False, "message": str(e)}
        except sqlite3.Error:
            logger.exception("%s failed for %s", func.__name__, caller_email)
            return {"success": False, "message": f"Failed to {func.__name__.replace('_', ' ')}"}
    return wrapper


def _load_room(conn, room_id, caller_email):
    room = conn.execute("SELECT * FROM chat_rooms WHERE id = ?", (room_id,)).fetchone()
    if room is None:
        raise NotFound("Chat room not found")
    if caller_email.lower() not in (room["donor_email"].lower(), room["recipient_email"].lower()):
        raise PermissionDenied("Access denied - not a participant of this chat")
    return dict(room)


@endpoint
def get_user_data(caller_email, user_email):
    if not isinstance(user_email, str) or not user_email:
        raise ValidationError("userEmail is required")
    user = get_user_by_email(user_email)
    if user is None:
        raise NotFound("User not found")
    return {"success": True, "user": public_profile(user)}


@endpoint
def create_chat_room(caller_email, donor_email, recipient_email, donation_id):
    """Create the room for a donor/recipient pair on one donation, or return the existing one."""
    if not donor_email or not recipient_email or donation_id in (None, ""):
        raise ValidationError("donorEmail, recipientEmail and donationId are required")
    if not isinstance(donor_email, str) or not isinstance(recipient_email, str):
        raise ValidationError("donorEmail and recipientEmail must be strings")
    if caller_email.lower() not in (donor_email.lower(), recipient_email.lower()):
        raise PermissionDenied("Access denied - not a participant of this chat")
    listing = get_listing_by_id(donation_id)
    if listing is None:
        raise NotFound("Donation not found")
    if (listing["donor_email"] or "").lower() != donor_email.lower():
        raise ValidationError("donorEmail does not match the donation")

    room_id = build_chat_room_id(donor_email, recipient_email, donation_id)
    with transaction() as conn:
        cur = conn.execute("""
            INSERT OR IGNORE INTO chat_rooms (id, donor_email, recipient_email, donation_id, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (room_id, donor_email, recipient_email, str(donation_id), now_iso()))
        created = cur.rowcount == 1
    if created:
        logger.info("Created chat room %s", room_id)
    return {"success": True, "chatRoomId": room_id, "created": created}


@endpoint
def send_message(caller_email, chat_room_id, message, sender_name=None, sender_role=None):
    if message is not None and not isinstance(message, str):
        raise ValidationError("message must be a string")
    text = (message or "").strip()
    if not chat_room_id or not text:
        raise ValidationError("chatRoomId and message are required")
    with transaction() as conn:
        _load_room(conn, chat_room_id, caller_email)
        timestamp = now_iso()
        cur = conn.execute("""
            INSERT INTO messages (chat_room_id, text, sender_email, sender_name, sender_role, timestamp, read)
            VALUES (?, ?, ?, ?, ?, ?, 0)
        """, (chat_room_id, text, caller_email, sender_name or "User", sender_role, timestamp))
        message_id = cur.lastrowid
        conn.execute(
            "UPDATE chat_rooms SET last_message = ?, last_message_at = ? WHERE id = ?",
            (text, timestamp, chat_room_id),
        )
    return {"success": True, "messageId": message_id, "timestamp": timestamp}


@endpoint
def get_messages(caller_email, chat_room_id):
    conn = get_conn()
    try:
        _load_room(conn, chat_room_id, caller_email)
        return {"success": True, "messages": load_messages(chat_room_id, conn)}
    finally:
        conn.close()


@endpoint
def mark_messages_read(caller_email, chat_room_id):
    """Mark the other participant's messages as read."""
    with transaction() as conn:
        _load_room(conn, chat_room_id, caller_email)
        cur = conn.execute(
            "UPDATE messages SET read = 1 WHERE chat_room_id = ? AND sender_email != ? AND read = 0",
            (chat_room_id, caller_email),
        )
        updated = cur.rowcount
    return {"success": True, "updated": updated}


# JSON body keys of each endpoint, in handler argument order
ROUTES = {
    "getUserData": (get_user_data, ("userEmail",)),
    "createChatRoom": (create_chat_room, ("donorEmail", "recipientEmail", "donationId")),
    "sendMessage": (send_message, ("chatRoomId", "message", "senderName", "senderRole")),
    "getMessages": (get_messages, ("chatRoomId",)),
    "markMessagesRead": (mark_messages_read, ("chatRoomId",)),
}


def handle_request(endpoint_name, body, caller_email):
    route = ROUTES.get(endpoint_name)
    if route is None:
        return {"success": False, "message": f"Unknown endpoint: {endpoint_name}"}
    handler, keys = route
    if not isinstance(body, dict):
        body = {}
    return handler(caller_email, *(body.get(k) for k in keys))
