"""
ZapFlow - Async Uazapi API Client

Wrapper around the Uazapi REST API for outbound WhatsApp traffic.

Auth:
  - Every endpoint uses header ``token`` (the per-instance token).
  - When an instance has no token we fall back to the global default token.
  - The instance is identified by the token, NOT by name in the URL.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from zapflow.config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None

_NON_DIGITS = re.compile(r"\D")


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            follow_redirects=True,
        )
    return _client


def _instance_headers(token: Optional[str]) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "token": token or get_settings().uazapi_global_token,
    }


def format_phone_number(phone: str) -> str:
    """
    Digits-only number with country code.

    10/11-digit numbers are Brazilian local numbers (DDD + subscriber)
    and get ``55`` prepended unless they already carry it.
    """
    cleaned = _NON_DIGITS.sub("", phone)
    if len(cleaned) in (10, 11) and not cleaned.startswith("55"):
        cleaned = "55" + cleaned
    return cleaned


async def send_text(instance_token: Optional[str], number: str, text: str) -> dict[str, Any]:
    """
    Send a plain text message.

    POST /send/text  { number, text }  with instance token header.
    """
    settings = get_settings()
    url = f"{settings.uazapi_base_url}/send/text"
    payload = {"number": number, "text": text}
    client = _get_client()
    try:
        response = await client.post(url, json=payload, headers=_instance_headers(instance_token))
        response.raise_for_status()
        data: dict[str, Any] = response.json() if response.content else {}
        logger.info("Uazapi text sent to %s (%d chars).", number, len(text))
        return data
    except httpx.HTTPStatusError as exc:
        logger.error("Uazapi API error %d sending text: %s", exc.response.status_code, exc.response.text)
        raise
    except httpx.RequestError:
        logger.exception("Network error sending Uazapi text to %s.", number)
        raise


def extract_message_id(data: Any) -> Optional[str]:
    """WhatsApp id of a sent message from a ``/send/*`` response, if any."""
    if not isinstance(data, dict):
        return None
    key = data.get("key") if isinstance(data.get("key"), dict) else {}
    message_id = data.get("id") or data.get("messageId") or data.get("messageid") or key.get("id")
    return str(message_id) if message_id else None


async def send_presence(instance_token: Optional[str], number: str, presence: str = "composing") -> bool:
    """
    Show a presence state (typing indicator) to the contact.

    POST /send/presence  { number, presence }. Best-effort: failures are
    logged and reported as ``False``, never raised.
    """
    settings = get_settings()
    url = f"{settings.uazapi_base_url}/send/presence"
    payload = {"number": number, "presence": presence}
    client = _get_client()
    try:
        response = await client.post(url, json=payload, headers=_instance_headers(instance_token))
        response.raise_for_status()
        return True
    except httpx.HTTPError as exc:
        logger.info("Uazapi presence '%s' for %s failed (ignored): %s", presence, number, exc)
        return False


async def close() -> None:
    """Close the shared httpx client."""
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
        _client = None
        logger.info("Uazapi HTTP client closed.")
