from abc import ABC, abstractmethod
from typing import Optional, Tuple, TypedDict
import os
import uuid
import hmac
import hashlib
import base64
import json

from .errors import InvalidNotificationError, UnauthenticatedNotificationError

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
SIGNATURE_HEADER = "x-mockpay-signature"


def sign_payload(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    @abstractmethod
    def create_session_id_and_url(self) -> CreateSessionResult: ...

    # raises UnauthenticatedNotificationError before anything is trusted
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    # (competition_id, owner_id, quantity)
    @abstractmethod
    def event_purchase(self, event: dict) -> Tuple[int, str, int]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret or MOCK_SECRET

    def create_session_id_and_url(self) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def sign(self, payload: bytes) -> str:
        return sign_payload(payload, self.secret)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise UnauthenticatedNotificationError()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidNotificationError("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidNotificationError("Event must be a JSON object")
        return event

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )

    def event_purchase(self, event: dict) -> Tuple[int, str, int]:
        try:
            competition_id = int(event["competition_id"])
            owner_id = str(event["owner_id"])
            quantity = int(event["quantity"])
        except (KeyError, TypeError, ValueError):
            raise InvalidNotificationError(
                "competition_id, owner_id and quantity are required"
            )
        if quantity < 1 or not owner_id:
            raise InvalidNotificationError(
                "quantity must be positive and owner_id non-empty"
            )
        return competition_id, owner_id, quantity
