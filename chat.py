# chat.py
import logging
import sqlite3
import threading
import uuid

from config import get_float
from db import get_conn
from errors import CollaboratorUnavailable, ServiceError, UbuntuEatsError
from time_utils import to_millis, utcnow

logger = logging.getLogger(__name__)

SENDING = "sending"
SENT = "sent"
FAILED = "failed"

_DEFAULT = object()


def chat_room_id(donor_email, recipient_email, donation_id):
    return f"{donor_email.replace('@', '_')}_{recipient_email.replace('@', '_')}_{donation_id}"


def load_messages(chat_room_id, conn=None):
    """Confirmed messages of a room, oldest first."""
    own = conn is None
    conn = conn or get_conn()
    try:
        rows = conn.execute(
            "SELECT * FROM messages WHERE chat_room_id = ? ORDER BY timestamp ASC, id ASC",
            (chat_room_id,),
        ).fetchall()
    finally:
        if own:
            conn.close()
    out = []
    for row in rows:
        msg = dict(row)
        msg["read"] = bool(msg["read"])
        out.append(msg)
    return out


def _match_tolerance_ms():
    return get_float("optimistic_match_seconds") * 1000


def _find_confirmation(pending_msg, confirmed, taken, tolerance_ms):
    """Index of the closest unused confirmed message matching sender and text, or None."""
    sent_at = to_millis(pending_msg.get("timestamp"))
    best, best_gap = None, None
    for i, msg in enumerate(confirmed):
        if i in taken:
            continue
        if msg.get("sender_email") != pending_msg.get("sender_email") or msg.get("text") != pending_msg.get("text"):
            continue
        gap = abs(to_millis(msg.get("timestamp")) - sent_at)
        if gap <= tolerance_ms and (best_gap is None or gap < best_gap):
            best, best_gap = i, gap
    return best


def reconcile(confirmed, pending, tolerance_ms=None):
    """
    Merge confirmed messages from the feed with locally sent optimistic ones.

    A pending message disappears once a confirmed message from the same
    sender with the same text lands within tolerance_ms of it; each confirmed
    message stands in for at most one pending message. Entries with an id
    already seen are dropped. The result is sorted by normalized timestamp,
    confirmed before pending on ties.
    """
    if tolerance_ms is None:
        tolerance_ms = _match_tolerance_ms()

    merged = []
    seen = set()
    for msg in confirmed:
        key = msg.get("id")
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        merged.append(msg)

    confirmed_unique = list(merged)
    taken = set()
    for msg in pending:
        key = msg.get("id")
        if key is not None and key in seen:
            continue
        match = _find_confirmation(msg, confirmed_unique, taken, tolerance_ms)
        if key is not None:
            seen.add(key)
        if match is not None:
            taken.add(match)
            continue
        merged.append(msg)

    return sorted(merged, key=lambda m: to_millis(m.get("timestamp")))


class MessageFeed:
    """
    Live view of a room's messages. poll() fetches the room and hands the
    batch to on_batch when it changed; start() polls on a background thread
    until close().
    """

    def __init__(self, chat_room_id, on_batch, interval=None, fetch=None):
        self.chat_room_id = chat_room_id
        self.on_batch = on_batch
        self.interval = interval if interval is not None else get_float("chat_poll_seconds")
        self.fetch = fetch or load_messages
        self._last = None
        self._stop = threading.Event()
        self._thread = None

    @property
    def closed(self):
        return self._stop.is_set()

    def poll(self):
        if self.closed:
            return None
        batch = self.fetch(self.chat_room_id)
        signature = tuple((m.get("id"), m.get("read")) for m in batch)
        if signature == self._last:
            return None
        self._last = signature
        self.on_batch(batch)
        return batch

    def _run(self):
        while not self._stop.is_set():
            try:
                self.poll()
            except (UbuntuEatsError, sqlite3.Error):
                logger.exception("message feed for %s failed", self.chat_room_id)
            self._stop.wait(self.interval)

    def start(self):
        if self._thread is None and not self.closed:
            self._thread = threading.Thread(target=self._run, name=f"feed-{self.chat_room_id}", daemon=True)
            self._thread.start()
        return self

    def close(self):
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()


def subscribe_messages(chat_room_id, on_batch, interval=None, fetch=None, start=True):
    feed = MessageFeed(chat_room_id, on_batch, interval=interval, fetch=fetch)
    if start:
        feed.start()
    return feed


class ChatSession:
    """
    Client-side state of one open chat: confirmed messages from the feed,
    optimistic messages still in flight, and the merged view.

    sender(chat_room_id, text, sender_name, sender_role) delivers a message
    and raises ServiceError / CollaboratorUnavailable on failure.
    """

    def __init__(self, chat_room_id, user, sender, failed_message_ttl=_DEFAULT, clock=utcnow):
        self.chat_room_id = chat_room_id
        self.user = user
        self.sender = sender
        if failed_message_ttl is _DEFAULT:
            failed_message_ttl = get_float("failed_message_ttl_seconds")
        self.failed_message_ttl = failed_message_ttl
        self.clock = clock
        self.confirmed = []
        self.pending = []
        self.messages = []
        self.feed = None
        self._closed = False
        self._lock = threading.RLock()

    def open(self, interval=None, fetch=None, start=True):
        self.feed = subscribe_messages(self.chat_room_id, self.apply_batch, interval=interval, fetch=fetch, start=start)
        return self

    def close(self):
        self._closed = True
        if self.feed is not None:
            self.feed.close()
            self.feed = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _now_ms(self):
        return to_millis(self.clock())

    def _refresh(self):
        self.messages = reconcile(self.confirmed, self.pending)
        survivors = {m["id"] for m in self.messages if m.get("is_optimistic")}
        # superseded optimistic messages are forgotten so they cannot come back
        self.pending = [m for m in self.pending if m["id"] in survivors]
        return self.messages

    def apply_batch(self, confirmed):
        with self._lock:
            self.confirmed = list(confirmed)
            return self._refresh()

    def send(self, text):
        text = (text or "").strip()
        if not text or self._closed:
            return None
        sent_at = self._now_ms()
        msg = {
            "id": f"temp_{sent_at}_{uuid.uuid4().hex[:9]}",
            "chat_room_id": self.chat_room_id,
            "text": text,
            "sender_email": self.user["email"],
            "sender_name": self.user.get("name") or "User",
            "sender_role": self.user.get("role"),
            "timestamp": sent_at,
            "read": False,
            "is_optimistic": True,
            "status": SENDING,
        }
        with self._lock:
            self.pending.append(msg)
            self._refresh()

        try:
            self.sender(self.chat_room_id, text, msg["sender_name"], msg["sender_role"])
        except (ServiceError, CollaboratorUnavailable) as e:
            logger.warning("sending message to %s failed: %s", self.chat_room_id, e)
            with self._lock:
                msg["status"] = FAILED
                msg["failed_at"] = self._now_ms()
            return msg

        with self._lock:
            if msg["status"] == SENDING:
                msg["status"] = SENT
        return msg

    def visible_messages(self, now=None):
        """Merged view, minus failed messages older than failed_message_ttl."""
        with self._lock:
            if self.failed_message_ttl is not None:
                now_ms = to_millis(now) if now is not None else self._now_ms()
                cutoff = self.failed_message_ttl * 1000
                expired = {
                    m["id"] for m in self.pending
                    if m["status"] == FAILED and now_ms - m["failed_at"] >= cutoff
                }
                if expired:
                    self.pending = [m for m in self.pending if m["id"] not in expired]
                    self._refresh()
            return list(self.messages)
