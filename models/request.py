from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional
from urllib.parse import urlsplit

class ChallengeMode(str, Enum):
    TURNSTILE = "turnstile"
    IUAM = "iuam"

class ProxyCredentials(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.username and self.password)

class ChallengeRequest(BaseModel):
    """Body of POST /cloudflare.

    Accepts both the camelCase keys callers send (siteKey, userAgent, ttl)
    and the long forms (proxyCredentials, timeoutMs, cacheTtlMs).
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mode: ChallengeMode
    domain: str
    site_key: Optional[str] = Field(default=None, alias="siteKey")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    proxy: Optional[ProxyCredentials] = Field(
        default=None, validation_alias=AliasChoices("proxy", "proxyCredentials")
    )
    timeout_ms: Optional[int] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout", "timeoutMs")
    )
    cache_ttl_ms: Optional[int] = Field(
        default=None, gt=0, validation_alias=AliasChoices("ttl", "expire", "cacheTtlMs")
    )
    auth_token: Optional[str] = Field(default=None, alias="authToken")

    @field_validator("domain")
    @classmethod
    def domain_is_http_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("domain must not be empty")
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("domain must be an http(s) URL with a host")
        return value

    @model_validator(mode="after")
    def site_key_matches_mode(self) -> "ChallengeRequest":
        if self.mode == ChallengeMode.TURNSTILE and not self.site_key:
            raise ValueError("siteKey is required in turnstile mode")
        if self.mode == ChallengeMode.IUAM:
            self.site_key = None
        return self
