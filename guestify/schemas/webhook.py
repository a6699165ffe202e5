"""Webhook acknowledgement schema."""

from typing import Any

from pydantic import BaseModel


class WebhookAck(BaseModel):
    data: dict[str, Any] = {}
    error: bool = False
    message: str = "ok"
