"""Gmail implementation of the mail capabilities the sorter needs.

Training reads labelled mail (list_documents_by_category); serving resolves
push notifications (list_new_items_since, get_document_content) and files
mail (apply_label).

Setup:
    1. Create a project at https://console.cloud.google.com/ and enable the Gmail API.
    2. Create OAuth 2.0 credentials and download them as credentials.json.
    3. The first run opens a browser for OAuth consent; token.json is saved for reuse.
"""

from __future__ import annotations

import base64
import re
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httplib2
import structlog
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import Settings
from .errors import GmailError
from .train import Document

logger = structlog.get_logger(__name__)

# modify is needed to add labels to incoming mail
SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
]

_GMAIL_CATEGORIES = {"primary", "social", "promotions", "updates", "forums"}
_PAGE_SIZE = 50
_CHUNK_SIZE = 10
_CHUNK_PAUSE = 0.25  # seconds between fetch chunks, keeps us under the per-user rate limit


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Return valid OAuth2 credentials, refreshing or re-authorising as needed."""
    creds: Credentials | None = None

    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        else:
            if not credentials_path.exists():
                raise GmailError(
                    f"credentials.json not found at '{credentials_path}'. "
                    "Download it from Google Cloud Console → APIs & Services → Credentials.",
                    details={"credentials_path": str(credentials_path)},
                )
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
            creds = flow.run_local_server(port=0)

        token_path.write_text(creds.to_json())
        logger.info("token_saved", token_path=str(token_path))

    return creds


# ---------------------------------------------------------------------------
# Body decoding helpers
# ---------------------------------------------------------------------------

def _b64_decode(data: str) -> bytes:
    """Decode Gmail's URL-safe base64 payload."""
    return base64.urlsafe_b64decode(data + "==")  # padding is always safe to add


def _strip_html(html: str) -> str:
    """Very lightweight HTML → plain-text: remove tags, collapse whitespace."""
    text = re.sub(r"<[^>]+>", " ", html)
    for entity, repl in (("&nbsp;", " "), ("&amp;", "&"), ("&lt;", "<"), ("&gt;", ">"),
                         ("&quot;", '"'), ("&#39;", "'")):
        text = text.replace(entity, repl)
    return re.sub(r"\s+", " ", text).strip()


def extract_body(payload: dict[str, Any]) -> str:
    """Recursively extract the best available body text from a message payload.

    Preference order: text/plain > text/html > empty string.
    For multipart messages all text/plain parts are concatenated.
    """
    mime_type: str = payload.get("mimeType", "")
    parts: list[dict] = payload.get("parts", [])
    body_data: str = (payload.get("body") or {}).get("data", "")

    if not parts:
        if not body_data:
            return ""
        raw = _b64_decode(body_data).decode("utf-8", errors="replace")
        return _strip_html(raw) if "html" in mime_type else raw

    plain_parts: list[str] = []
    html_parts: list[str] = []
    for part in parts:
        part_mime: str = part.get("mimeType", "")
        part_data: str = (part.get("body") or {}).get("data", "")
        if part_mime == "text/plain" and part_data:
            plain_parts.append(_b64_decode(part_data).decode("utf-8", errors="replace"))
        elif part_mime == "text/html" and part_data:
            html_parts.append(_strip_html(_b64_decode(part_data).decode("utf-8", errors="replace")))
        elif part_mime.startswith("multipart/"):
            nested = extract_body(part)
            if nested:
                plain_parts.append(nested)

    if plain_parts:
        return "\n".join(plain_parts).strip()
    if html_parts:
        return "\n".join(html_parts).strip()
    return ""


def extract_header(headers: list[dict[str, str]], name: str) -> str:
    name_lower = name.lower()
    for h in headers:
        if h.get("name", "").lower() == name_lower:
            return h.get("value", "")
    return ""


def document_text(subject: str, body: str) -> str:
    """The text the classifier sees: subject and body on one whitespace-collapsed line."""
    return re.sub(r"\s+", " ", f"{subject} {body}").strip()


def category_query(label_or_category: str) -> str:
    """Gmail search query for a built-in category tab or a user label."""
    name = label_or_category.lower()
    if name in _GMAIL_CATEGORIES:
        return f"category:{name}"
    return f"label:{name.replace(' ', '-')}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GmailClient:
    """Thin wrapper over the Gmail v1 `users` resource for the authenticated account.

    httplib2 connections are not thread-safe, so every thread that uses the
    client gets its own service (and HTTP transport) from service_factory.

    Args:
        service_factory: Returns a new googleapiclient Gmail service.
        sleep: Pause function used between fetch chunks (injectable for tests).
    """

    def __init__(
        self,
        service_factory: Callable[[], Any],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._service_factory = service_factory
        self._local = threading.local()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "GmailClient":
        creds = authenticate(settings.CREDENTIALS_PATH, settings.TOKEN_PATH)

        def service_factory() -> Any:
            # bounded per-request timeout so a slow Gmail call can't pin a dispatch
            http = AuthorizedHttp(creds, http=httplib2.Http(timeout=settings.REQUEST_TIMEOUT))
            return build("gmail", "v1", http=http, cache_discovery=False)

        return cls(service_factory)

    @property
    def _users(self) -> Any:
        users = getattr(self._local, "users", None)
        if users is None:
            users = self._local.users = self._service_factory().users()
        return users

    # --- training data ---

    def _message_text(self, message_id: str) -> tuple[str, str]:
        msg = self._users.messages().get(userId="me", id=message_id, format="full").execute()
        payload = msg.get("payload", {})
        return extract_header(payload.get("headers", []), "Subject"), extract_body(payload)

    def list_documents_by_category(self, category: str, max_count: int) -> list[Document]:
        """Fetch up to max_count messages filed under category, labelled with it.

        Messages without a body are skipped.
        """
        query = category_query(category)
        logger.info("fetching_category", category=category, query=query, max_count=max_count)

        documents: list[Document] = []
        page_token: str | None = None
        while len(documents) < max_count:
            kwargs: dict[str, Any] = {
                "userId": "me",
                "q": query,
                "maxResults": min(_PAGE_SIZE, max_count - len(documents)),
            }
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._users.messages().list(**kwargs).execute()
            messages = response.get("messages", [])
            if not messages:
                break

            for start in range(0, len(messages), _CHUNK_SIZE):
                for message in messages[start:start + _CHUNK_SIZE]:
                    if len(documents) >= max_count:
                        break
                    subject, body = self._message_text(message["id"])
                    if body:
                        documents.append(Document(text=document_text(subject, body), label=category))
                self._sleep(_CHUNK_PAUSE)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info("category_fetched", category=category, count=len(documents))
        return documents

    # --- serving ---

    def list_new_items_since(self, checkpoint: str) -> list[str]:
        """Ids of messages added since the history checkpoint, oldest first."""
        ids: list[str] = []
        page_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": checkpoint,
                "historyTypes": ["messageAdded"],
            }
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._users.history().list(**kwargs).execute()
            for record in response.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = (added.get("message") or {}).get("id")
                    if message_id and message_id not in ids:
                        ids.append(message_id)
            page_token = response.get("nextPageToken")
            if not page_token:
                return ids

    def get_document_content(self, message_id: str) -> str | None:
        """Subject + body text of one message, or None if it cannot be fetched."""
        try:
            subject, body = self._message_text(message_id)
        except (HttpError, OSError):
            logger.exception("content_fetch_failed", message_id=message_id)
            return None
        return document_text(subject, body)

    def apply_label(self, message_id: str, label_name: str) -> bool:
        """Add the named label to a message. Returns False (no-op) if the label doesn't exist."""
        labels = self._users.labels().list(userId="me").execute().get("labels", [])
        label_id = next((l.get("id") for l in labels if l.get("name") == label_name), None)
        if not label_id:
            logger.warning("label_not_found", label=label_name, message_id=message_id)
            return False

        self._users.messages().modify(
            userId="me", id=message_id, body={"addLabelIds": [label_id]}
        ).execute()
        logger.info("label_applied", label=label_name, message_id=message_id)
        return True

    def watch(self, topic_name: str) -> dict:
        """Subscribe the INBOX to push notifications on a Pub/Sub topic."""
        return self._users.watch(
            userId="me", body={"topicName": topic_name, "labelIds": ["INBOX"]}
        ).execute()
