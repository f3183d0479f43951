from __future__ import annotations
import json
from typing import Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    if _nats.is_connected:
        await _nats.drain()

async def publish_checkin(evt: dict):
    """
    evt = {
      "checkin_id": str,
      "destination_id": str,
      "user_id": str,
      "points_earned": int,
      "new_badge_ids": [str, ...],
      "checked_in_at": iso8601,
      "idempotency_key": "checkin:<checkin_id>"
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_checkin, json.dumps(evt).encode("utf-8"))
