from __future__ import annotations
"""
Concierge — Pydantic Request Models
"""
from pydantic import BaseModel, Field


class AuthSendCodeRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(default=None, max_length=100)
    resend: bool = False


class AuthVerifyCodeRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    code: str = Field(..., min_length=6, max_length=6)


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant|system)$")
    content: str = Field(default="", max_length=20000)


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    locale: str = Field(default="en", max_length=20)


class WebsiteScrapingRequest(BaseModel):
    url: str = Field(..., min_length=4, max_length=2000)


class FieldResetRequest(BaseModel):
    field_name: str = Field(..., min_length=1, max_length=100)


class AgentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
