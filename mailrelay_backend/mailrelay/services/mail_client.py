"""
Mailbox provider client

Lists message metadata per folder (page-token pagination) and fetches
single messages for body hydration. Also hosts the body clean-up used
before bodies are stored: HTML to text, quoted-reply removal, length cap.
"""
import logging
import re
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

from mailrelay.core.config import resolve_settings
from mailrelay.core.http_client import RateLimitConfig, ResilientHTTPClient, require_credential

logger = logging.getLogger(__name__)

PROVIDER = "mail"
MAX_BODY_CHARS = 50000

# "On Tue, 3 Jan 2025 at 10:00, Jane <jane@x.com> wrote:"
_REPLY_HEADER_RE = re.compile(r"^\s*On .{0,200}wrote:\s*$", re.IGNORECASE)
_FORWARD_RE = re.compile(r"^\s*-{2,}\s*(Original Message|Forwarded message)\s*-{2,}", re.IGNORECASE)


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def strip_quoted_reply(text: str) -> str:
    """Drop the quoted history below a reply; keeps the new content only."""
    kept: List[str] = []
    for line in text.splitlines():
        if _REPLY_HEADER_RE.match(line) or _FORWARD_RE.match(line):
            break
        if line.lstrip().startswith(">"):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def clean_body(text_body: Optional[str], html_body: Optional[str]) -> str:
    if text_body and text_body.strip():
        body = text_body
    elif html_body:
        body = html_to_text(html_body)
    else:
        body = ""
    return strip_quoted_reply(body)[:MAX_BODY_CHARS]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _address(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("address") or value.get("email") or ""
    return (value or "").strip().lower() if isinstance(value, str) else ""


@dataclass
class MessagePage:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None


class MailClient:

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = resolve_settings(settings)
        self.base_url = self.settings.MAIL_API_BASE.rstrip("/")
        self._transport = transport
        self._http: Optional[ResilientHTTPClient] = None

    async def _client(self) -> ResilientHTTPClient:
        if self._http is None:
            token = require_credential(self.settings.MAIL_API_TOKEN, PROVIDER, "MAIL_API_TOKEN")
            self._http = ResilientHTTPClient(
                provider=PROVIDER,
                rate_limit_config=RateLimitConfig(min_request_interval=0.1),
                timeout=self.settings.PER_CALL_TIMEOUT_SECONDS,
                default_headers={"Authorization": f"Bearer {token}"},
                transport=self._transport,
            )
            await self._http.init()
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def list_messages(self, folder: str, limit: int, page_token: Optional[str] = None) -> MessagePage:
        params: Dict[str, Any] = {"folder": folder, "limit": limit}
        if page_token:
            params["pageToken"] = page_token
        client = await self._client()
        response = await client.get(f"{self.base_url}/email/messages", params=params)
        data = response.json()
        return MessagePage(
            messages=data.get("records") or [],
            next_page_token=data.get("nextPageToken") or None,
        )

    async def fetch_item(self, message_id: str) -> Dict[str, Any]:
        client = await self._client()
        response = await client.get(f"{self.base_url}/email/messages/{message_id}")
        return response.json()

    @staticmethod
    def to_row(message: Dict[str, Any], folder: str) -> Dict[str, Any]:
        """Metadata row for the destination store."""
        text_body = message.get("textBody")
        body = clean_body(text_body, message.get("htmlBody")) if text_body else None
        return {
            "external_id": str(message["id"]),
            "kind": "email",
            "status": "scanned",
            "thread_id": message.get("threadId"),
            "folder": folder.lower(),
            "from_email": _address(message.get("from")),
            "subject": (message.get("subject") or "")[:1000],
            "snippet": (message.get("bodySnippet") or "")[:500],
            "received_at": _parse_timestamp(message.get("receivedAt") or message.get("createdAt")),
            "body": body,
            "has_body": bool(body),
        }
