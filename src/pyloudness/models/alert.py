"""Alert notification model."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AlertNotification(BaseModel):
    """An alert that passed the cooldown filter and entered the feed."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    kind: str
    message: str
    rms: int
    zcr: float
    observed_at: datetime

    @staticmethod
    def format_message(kind: str, device_name: str) -> str:
        return f"{kind} detected at {device_name}"
