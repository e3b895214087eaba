from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ConnectionOut(BaseModel):
    uid: str
    last_seen: Optional[datetime]

    status: str
    seconds_since_last_seen: Optional[int]


class ReadingOut(BaseModel):
    id: int
    uid: str
    value: float
    # Reading time as reported by the client.
    created_at: datetime


class QueuedMessageOut(BaseModel):
    id: int
    payload: str
    created_at: datetime


class EnqueueRequest(BaseModel):
    # Pushed verbatim to every client; the relay does not interpret it.
    payload: str = Field(..., min_length=1, max_length=4096)


class EnqueueResponse(BaseModel):
    id: int
