"""WhatsApp Cloud API transport: the messaging channel the executor sends through."""

from dataclasses import dataclass
from typing import List, Optional

import httpx

from agent_os.config import settings
from agent_os.logging_config import get_logger
from agent_os.services.notification_service import alert_critical

logger = get_logger("whatsapp_service")


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class WhatsAppCloudClient:
    def __init__(
        self,
        token: str,
        phone_number_id: str,
        base_url: str = "https://graph.facebook.com/v20.0",
        template_language: str = "es_CL",
        timeout: float = 30.0,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.template_language = template_language
        self.timeout = timeout

    def send_text(self, destination: str, text: str, phone_number_id: Optional[str] = None) -> SendResult:
        return self._post(
            phone_number_id,
            {
                "messaging_product": "whatsapp",
                "to": destination,
                "type": "text",
                "text": {"body": text},
            },
        )

    def send_template(
        self,
        destination: str,
        template_name: str,
        variables: Optional[List[str]] = None,
        phone_number_id: Optional[str] = None,
    ) -> SendResult:
        template = {"name": template_name, "language": {"code": self.template_language}}
        if variables:
            template["components"] = [
                {"type": "body", "parameters": [{"type": "text", "text": value} for value in variables]}
            ]
        return self._post(
            phone_number_id,
            {"messaging_product": "whatsapp", "to": destination, "type": "template", "template": template},
        )

    def _post(self, phone_number_id: Optional[str], body: dict) -> SendResult:
        sender_id = phone_number_id or self.phone_number_id
        if not self.token or not sender_id:
            logger.error("WhatsApp transport is not configured (WHATSAPP_TOKEN / WHATSAPP_PHONE_NUMBER_ID)")
            return SendResult(success=False, error="whatsapp_not_configured")

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/{sender_id}/messages",
                    headers={"Authorization": f"Bearer {self.token}"},
                    json=body,
                )
        except Exception as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            alert_critical("WhatsApp send failed", {"to": body.get("to"), "error": str(e)})
            return SendResult(success=False, error=str(e))

        if response.status_code >= 300:
            logger.warning(f"WhatsApp API error: status={response.status_code}, body={response.text[:200]}")
            return SendResult(success=False, error=f"http_{response.status_code}: {response.text[:200]}")

        data = response.json()
        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(f"WhatsApp message sent: to={body.get('to')}, id={message_id}")
        return SendResult(success=True, message_id=message_id)


_whatsapp_client: Optional[WhatsAppCloudClient] = None


def get_whatsapp_client() -> WhatsAppCloudClient:
    global _whatsapp_client
    if _whatsapp_client is None:
        _whatsapp_client = WhatsAppCloudClient(
            token=settings.whatsapp_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            base_url=settings.whatsapp_graph_url,
            template_language=settings.whatsapp_template_language,
        )
    return _whatsapp_client
