from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool
    duplicate: bool = False
