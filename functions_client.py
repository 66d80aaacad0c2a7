# functions_client.py
import logging

import requests

from config import get_float, get_setting
from errors import CollaboratorUnavailable, PermissionDenied, ServiceError

logger = logging.getLogger(__name__)


class FunctionsClient:
    """
    Calls the serverless endpoints with the signed-in user's bearer token.

    token_provider is a zero-argument callable returning the current ID token
    (or None when nobody is signed in).
    """

    def __init__(self, token_provider, base_url=None, timeout=None, session=None):
        self.token_provider = token_provider
        self.base_url = (base_url or get_setting("functions_base_url")).rstrip("/")
        self.timeout = timeout if timeout is not None else get_float("http_timeout_seconds")
        self.session = session or requests.Session()

    def _post(self, endpoint, body):
        token = self.token_provider()
        if not token:
            raise PermissionDenied("User not authenticated")
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.session.post(
                url,
                json=body,
                headers={"Content-Type": "application/json", "Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s unreachable: %s", endpoint, e)
            raise CollaboratorUnavailable(f"{endpoint} is unreachable") from e

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}
        if response.status_code >= 500:
            raise CollaboratorUnavailable(result.get("message") or f"{endpoint} failed with {response.status_code}")
        if not response.ok or not result.get("success"):
            raise ServiceError(result.get("message") or "Request failed")
        return result

    def get_user_data(self, user_email):
        return self._post("getUserData", {"userEmail": user_email})["user"]

    def create_chat_room(self, donor_email, recipient_email, donation_id):
        result = self._post("createChatRoom", {
            "donorEmail": donor_email,
            "recipientEmail": recipient_email,
            "donationId": donation_id,
        })
        return result["chatRoomId"]

    def send_message(self, chat_room_id, message, sender_name, sender_role):
        return self._post("sendMessage", {
            "chatRoomId": chat_room_id,
            "message": message,
            "senderName": sender_name,
            "senderRole": sender_role,
        })

    def get_messages(self, chat_room_id):
        return self._post("getMessages", {"chatRoomId": chat_room_id})["messages"]

    def mark_messages_read(self, chat_room_id):
        return self._post("markMessagesRead", {"chatRoomId": chat_room_id})["updated"]
