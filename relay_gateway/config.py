from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from relay_gateway.utils.model_utils import (
    WILDCARD_MODEL,
    coerce_models_string,
    parse_models_string,
)


class ChannelType(str, Enum):
    OPENAI = "openai"
    AZURE = "azure"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    CUSTOM = "custom"


class ChannelStatus(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    TESTING = "testing"


class TokenStatus(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    EXPIRED = "expired"


class AccountStatus(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"


# Numeric tags used by existing channel/token tables.
_CHANNEL_TYPE_CODES = {
    1: ChannelType.OPENAI,
    3: ChannelType.AZURE,
    14: ChannelType.ANTHROPIC,
    24: ChannelType.GOOGLE,
    99: ChannelType.CUSTOM,
}
_CHANNEL_STATUS_CODES = {
    0: ChannelStatus.DISABLED,
    1: ChannelStatus.ENABLED,
    2: ChannelStatus.TESTING,
}
_TOKEN_STATUS_CODES = {
    0: TokenStatus.DISABLED,
    1: TokenStatus.ENABLED,
    2: TokenStatus.EXPIRED,
}
_ACCOUNT_STATUS_CODES = {
    0: AccountStatus.DISABLED,
    1: AccountStatus.ENABLED,
}


def _coerce_enum_code(value: Any, codes: dict[int, Any]) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value not in codes:
            raise ValueError(f"Unknown code {value}; expected one of {sorted(codes)}.")
        return codes[value]
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized.isdigit():
            return _coerce_enum_code(int(normalized), codes)
        return normalized
    return value


def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
    if env_name:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return value


class Channel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    type: ChannelType = ChannelType.OPENAI
    key: str | None = None
    key_env: str | None = None
    base_url: str
    models: str = ""
    model_mapping: dict[str, str] = Field(default_factory=dict)
    status: ChannelStatus = ChannelStatus.ENABLED
    priority: int = 0
    weight: int = 1
    api_version: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        return _coerce_enum_code(value, _CHANNEL_TYPE_CODES)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return _coerce_enum_code(value, _CHANNEL_STATUS_CODES)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> str:
        return coerce_models_string(value)

    @field_validator("model_mapping", mode="before")
    @classmethod
    def _coerce_model_mapping(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return {}
            try:
                value = json.loads(text)
            except ValueError:
                # Unparseable tables behave as "no remapping".
                return {}
        if not isinstance(value, dict):
            return {}
        mapping: dict[str, str] = {}
        for source, target in value.items():
            if not isinstance(source, str) or not isinstance(target, str):
                continue
            if source.strip() and target.strip():
                mapping[source.strip()] = target.strip()
        return mapping

    @field_validator("weight")
    @classmethod
    def _validate_weight(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Channel weight must be >= 0.")
        return value

    @property
    def is_enabled(self) -> bool:
        return self.status == ChannelStatus.ENABLED

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.id}:{self.name}"
        return str(self.id)

    def model_list(self) -> list[str]:
        return parse_models_string(self.models)

    def advertised_models(self) -> list[str]:
        return [model for model in self.model_list() if model != WILDCARD_MODEL]

    def supports_model(self, model: str) -> bool:
        models = self.model_list()
        if not models:
            return True
        return model in models or WILDCARD_MODEL in models

    def upstream_model(self, requested_model: str) -> str:
        return self.model_mapping.get(requested_model) or requested_model

    def resolved_key(self) -> str:
        return _resolve_env_or_value(self.key_env, self.key) or ""


class ApiToken(BaseModel):
    id: int
    account_id: int
    key: str
    name: str = ""
    status: TokenStatus = TokenStatus.ENABLED
    quota: int = 0
    models: str = ""
    expired_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return _coerce_enum_code(value, _TOKEN_STATUS_CODES)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> str:
        return coerce_models_string(value)

    @field_validator("expired_at")
    @classmethod
    def _normalize_expired_at(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status == TokenStatus.EXPIRED:
            return True
        if self.expired_at is None:
            return False
        return self.expired_at < (now or datetime.now(UTC))

    def quota_exhausted(self, used_quota: int) -> bool:
        return self.quota > 0 and used_quota >= self.quota


class Account(BaseModel):
    id: int
    name: str = ""
    status: AccountStatus = AccountStatus.ENABLED
    quota: int = 0

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return _coerce_enum_code(value, _ACCOUNT_STATUS_CODES)

    @property
    def is_enabled(self) -> bool:
        return self.status == AccountStatus.ENABLED


class GatewayConfig(BaseModel):
    channels: list[Channel] = Field(default_factory=list)
    tokens: list[ApiToken] = Field(default_factory=list)
    accounts: list[Account] = Field(default_factory=list)

    @field_validator("channels")
    @classmethod
    def _unique_channel_ids(cls, value: list[Channel]) -> list[Channel]:
        seen: set[int] = set()
        for channel in value:
            if channel.id in seen:
                raise ValueError(f"Duplicate channel id {channel.id}.")
            seen.add(channel.id)
        return value

    @field_validator("tokens")
    @classmethod
    def _unique_token_keys(cls, value: list[ApiToken]) -> list[ApiToken]:
        seen: set[str] = set()
        for token in value:
            if token.key in seen:
                raise ValueError(f"Duplicate key for token {token.id}.")
            seen.add(token.key)
        return value

    def token_for_key(self, key: str) -> ApiToken | None:
        for token in self.tokens:
            if token.key == key:
                return token
        return None

    def account_by_id(self, account_id: int) -> Account | None:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None


def load_gateway_config(config_path: str) -> GatewayConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Gateway config not found at '{config_path}'. "
            "Create it or set GATEWAY_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return GatewayConfig.model_validate(raw)
