# config.py
import os
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


class Settings(BaseModel):
    broker_url: str = "ws://127.0.0.1:9000/peers"
    endpoint_prefix: str = Field("valentine", min_length=1)
    ice_servers: List[str] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    broker_open_timeout: float = Field(10.0, gt=0)
    connect_timeout: float = Field(15.0, gt=0)
    broker_negotiation_timeout: float = Field(60.0, gt=0)
    manual_negotiation_timeout: float = Field(300.0, gt=0)

    voice_enabled: bool = True
    voice_device: Optional[str] = None
    voice_format: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Builds settings from VALENTINE_* variables (and a .env file), then applies overrides."""
        load_dotenv(find_dotenv(usecwd=True))
        values = {}
        env_map = {
            "broker_url": "VALENTINE_BROKER_URL",
            "endpoint_prefix": "VALENTINE_ENDPOINT_PREFIX",
            "broker_open_timeout": "VALENTINE_BROKER_OPEN_TIMEOUT",
            "connect_timeout": "VALENTINE_CONNECT_TIMEOUT",
            "broker_negotiation_timeout": "VALENTINE_BROKER_NEGOTIATION_TIMEOUT",
            "manual_negotiation_timeout": "VALENTINE_MANUAL_NEGOTIATION_TIMEOUT",
            "voice_enabled": "VALENTINE_VOICE",
            "voice_device": "VALENTINE_VOICE_DEVICE",
            "voice_format": "VALENTINE_VOICE_FORMAT",
            "log_level": "LOGLEVEL",
        }
        for field, var in env_map.items():
            raw = os.getenv(var)
            if raw:
                values[field] = raw

        ice = os.getenv("VALENTINE_ICE_SERVERS")
        if ice:
            values["ice_servers"] = [u.strip() for u in ice.split(",") if u.strip()]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
