from abc import ABC, abstractmethod

import httpx

from kondo_agent.logging_config import get_logger
from kondo_agent.services.result import (
    ERROR_HTTP,
    ERROR_INVALID_INPUT,
    ERROR_NOT_CONFIGURED,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    Result,
)

logger = get_logger("whatsapp_service")

GRAPH_API_URL = "https://graph.facebook.com"
OUTBOUND_KINDS = frozenset({"text", "image", "document"})


class OutboundGateway(ABC):
    @abstractmethod
    def send(self, address: str, kind: str, content: str) -> Result[str]:
        """Send to the channel. On success the value is the channel's message id."""
        pass


def build_payload(address: str, kind: str, content: str) -> dict:
    payload = {
        "messaging_product": "whatsapp",
        "to": address,
        "type": kind,
    }
    if kind == "text":
        payload["text"] = {"body": content}
    else:
        # image / document carry a public link
        payload[kind] = {"link": content}
    return payload


class WhatsAppCloudGateway(OutboundGateway):
    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        api_version: str = "v20.0",
        timeout_seconds: float = 30.0,
    ):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds

    @property
    def url(self) -> str:
        return f"{GRAPH_API_URL}/{self.api_version}/{self.phone_number_id}/messages"

    def send(self, address: str, kind: str, content: str) -> Result[str]:
        if not self.phone_number_id or not self.access_token:
            logger.error("WhatsApp credentials are missing (WHATSAPP_PHONE_NUMBER_ID / WHATSAPP_ACCESS_TOKEN)")
            return Result.failure("WhatsApp credentials are not configured", ERROR_NOT_CONFIGURED)
        if kind not in OUTBOUND_KINDS or not address or not content:
            return Result.failure(f"Cannot send kind={kind} to={address!r}", ERROR_INVALID_INPUT)

        payload = build_payload(address, kind, content)
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            logger.warning(f"WhatsApp send timed out: to={address}")
            return Result.failure(f"WhatsApp send timed out: {exc}", ERROR_TIMEOUT)
        except Exception as exc:
            logger.error(f"Error sending WhatsApp message: {exc}")
            return Result.failure(f"WhatsApp send error: {exc}", ERROR_UNKNOWN)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            error = (data.get("error") or {}) if isinstance(data, dict) else {}
            message = error.get("message") or response.text[:200]
            if response.status_code == 401 and error.get("code") == 190:
                message = "Access token expired or invalid"
            logger.error(f"WhatsApp API error: status={response.status_code}, to={address}, error={message}")
            return Result.failure(f"WhatsApp API error: {response.status_code} - {message}", ERROR_HTTP)

        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id") or ""
        logger.info(f"WhatsApp send ok: to={address}, message_id={message_id}")
        return Result.success(message_id)
