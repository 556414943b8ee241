"""Inbound alert payloads.

Webhook and email payloads arrive as loosely-typed JSON. They are validated
here, once, into tagged pydantic models; the adapters only ever see the
validated form.
"""

from __future__ import annotations

import base64
import binascii
from decimal import Decimal
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from journal_ingest.errors import AlertValidationError
from journal_ingest.ingest.normalize import normalize_side, parse_number


class WebhookAlert(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    kind: Literal["webhook"] = "webhook"
    user_token: str
    account_tag: str
    symbol: str
    side: str
    qty: Decimal
    price: Decimal
    time: str | int | float | None = None
    order_id: str | None = None
    screenshot_url: str | None = None
    alert_text: str | None = None

    @field_validator("user_token", "account_tag", "symbol")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("side")
    @classmethod
    def _known_side(cls, value: str) -> str:
        value = value.strip()
        if normalize_side(value) is None:
            raise ValueError(f"unrecognized side {value!r}")
        return value

    @field_validator("qty", "price", mode="before")
    @classmethod
    def _number(cls, value: Any) -> Decimal:
        if isinstance(value, bool):
            raise ValueError("must be a number")
        return parse_number(value)

    @field_validator("qty")
    @classmethod
    def _positive_qty(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("order_id", "screenshot_url", "alert_text", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def normalized_side(self) -> str:
        return normalize_side(self.side) or ""


class EmailAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    filename: str = Field(
        default="attachment",
        validation_alias=AliasChoices("filename", "originalname", "name"),
    )
    content_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("content_type", "contentType", "mimetype"),
    )
    content: bytes = b""

    @field_validator("content", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        # JSON carries bytes as base64 text; in-process callers pass raw bytes.
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError("content must be base64") from exc
        return value

    @property
    def is_csv(self) -> bool:
        content_type = self.content_type.lower()
        return content_type in {"text/csv", "application/csv"} or self.filename.lower().endswith(".csv")

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")


class EmailAlert(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["email"] = "email"
    recipient: str = Field(validation_alias=AliasChoices("recipient", "To", "to"))
    sender: str | None = Field(default=None, validation_alias=AliasChoices("sender", "From", "from"))
    subject: str = Field(default="", validation_alias=AliasChoices("subject", "Subject"))
    html: str = Field(default="", validation_alias=AliasChoices("html", "body-html", "bodyHtml"))
    text: str = Field(default="", validation_alias=AliasChoices("text", "body-plain", "bodyPlain"))
    attachments: list[EmailAttachment] = Field(default_factory=list)

    @field_validator("subject", "html", "text", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value


InboundAlert = Annotated[Union[WebhookAlert, EmailAlert], Field(discriminator="kind")]

_INBOUND = TypeAdapter(InboundAlert)


def parse_inbound_alert(payload: Mapping[str, Any], kind: str | None = None) -> WebhookAlert | EmailAlert:
    """Validate a raw payload; ``kind`` pins the variant when the route already implies it."""
    data = dict(payload)
    if kind is not None:
        data["kind"] = kind
    try:
        return _INBOUND.validate_python(data)
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_context=False, include_input=False)
        raise AlertValidationError(f"Invalid {data.get('kind') or 'inbound'} payload", details) from exc
