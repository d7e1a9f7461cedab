"""
Modelos Pydantic para la API HTTP y el payload del webhook.

Define los bodies de los endpoints de envío/respuesta, la configuración
del webhook y la forma normalizada de los mensajes entrantes.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.formatters import is_group_jid


class SendMessageRequest(BaseModel):
    """Body de POST /send."""
    to: str = Field(description="Número, id de grupo o JID destino")
    message: str = Field(description="Texto del mensaje")

    @field_validator('message')
    @classmethod
    def validate_body_length(cls, v):
        """Valida longitud del mensaje."""
        if len(v) > 4096:  # Límite realista para WhatsApp
            raise ValueError("Mensaje demasiado largo")
        return v


class ReplyRequest(BaseModel):
    """Body de POST /reply."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId", description="Chat donde responder")
    message_id: str = Field(alias="messageId", description="Mensaje citado (id serializado)")
    reply_text: str = Field(alias="replyText", description="Texto de la respuesta")


class WebhookConfigRequest(BaseModel):
    """Body de POST /webhook/set. La URL se guarda sin validar."""
    url: Optional[str] = None


class InboundMessage(BaseModel):
    """
    Mensaje entrante tal como lo emite el bridge de WhatsApp Web.js.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    from_: str = Field(alias="from")
    body: str = ""
    timestamp: Optional[int] = None
    has_media: bool = Field(default=False, alias="hasMedia")


class WebhookPayload(BaseModel):
    """Payload normalizado que se reenvía al webhook configurado."""
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    body: str
    timestamp: Optional[int] = None
    chat_id: str = Field(alias="chatId")
    is_group: bool = Field(alias="isGroup")
    has_media: bool = Field(alias="hasMedia")

    @classmethod
    def from_message(cls, message: InboundMessage) -> "WebhookPayload":
        return cls(
            from_=message.from_,
            body=message.body,
            timestamp=message.timestamp,
            chat_id=message.from_,
            is_group=is_group_jid(message.from_),
            has_media=message.has_media,
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GroupInfo(BaseModel):
    id: str
    name: Optional[str] = None


class GroupsResponse(BaseModel):
    groups: List[GroupInfo]


class HealthResponse(BaseModel):
    """Respuesta del endpoint de health check."""
    status: str
    authenticated: bool
    uptime: float
    timestamp: str
