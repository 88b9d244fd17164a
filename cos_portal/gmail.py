"""
Gmail access on behalf of the signed-in user.

Only three things are needed from the mailbox: list messages that carry
document attachments, download one attachment, and put a threaded reply
draft (with the artist's visa documents attached) into the user's Drafts.
All calls go through the Gmail REST API with the user's OAuth access token.
"""

import base64
import logging
import re
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid, parseaddr
from typing import Dict, Any, List, Optional

import requests
from dateutil import parser as date_parser

from .errors import AuthExpired, NotFound, PermissionRequired, RateLimited, UpstreamError, ValidationFailure
from .schema import SHOW_DATE_FIELDS, is_blank

DOCUMENT_EXTENSIONS = (".pdf", ".doc", ".docx")
DEFAULT_SUBJECT = "Certificate of Sponsorship"

REPLY_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Certificate of Sponsorship</title>
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ border-bottom: 3px solid #4285f4; padding-bottom: 15px; margin-bottom: 25px; }}
        .title {{ color: #4285f4; font-size: 24px; font-weight: bold; margin: 0; }}
        .important {{ background-color: #fff3cd; border: 2px solid #ffc107; border-radius: 6px; padding: 20px; margin: 25px 0; color: #856404; }}
        .contact {{ background-color: #e3f2fd; border: 2px solid #2196f3; border-radius: 6px; padding: 20px; margin: 25px 0; color: #1976d2; }}
        .highlight {{ background-color: #fff3cd; padding: 2px 4px; border-radius: 3px; }}
    </style>
</head>
<body>
    <div class="header">
        <h1 class="title">Certificate of Sponsorship</h1>
        <p>{date_range} - Visa Documentation</p>
    </div>
    <p>Attached is the certificate number on the .pdf file for the <span class="highlight">{date_range}</span> show mentioned in the subject. Please tell the artist to print it and bring it with them when arriving in the UK.</p>
    <div class="important">
        <h2>IMPORTANT</h2>
        <p>PLEASE MAKE SURE TO HAND THE ATTACHED DOCUMENTS TO BORDER CONTROL ON ENTERING THE COUNTRY EACH TIME.<br><br>
        <strong>IF YOU DON'T YOU WILL NOT BE LEGAL TO WORK.</strong></p>
    </div>
    <div class="contact">
        <h2>My contact details as your sponsor are:</h2>
        <p>{sponsor_block}</p>
    </div>
    <p><strong>Re: Immigration Stamp</strong><br>
    I must have a copy of these sent to me after you have arrived in the UK.<br>
    A copy by camera phone and emailed to me at <strong>{sponsor_email}</strong></p>
    <p>Best regards,<br><strong>{sponsor_name}</strong></p>
</body>
</html>"""


def show_date_range(record: Dict[str, Any]) -> str:
    """'D-M-Y - D-M-Y' from the record's show dates, or 'show' when any part is missing."""
    values = [str(record.get(f) or "").strip() for f in SHOW_DATE_FIELDS]
    if any(is_blank(v) for v in values):
        return "show"
    return f"{values[0]}-{values[1]}-{values[2]} - {values[3]}-{values[4]}-{values[5]}"


def normalize_date(value: str) -> str:
    """Converts an RFC 2822 Date header to ISO 8601. Unparseable values are returned as-is."""
    if not value:
        return ""
    try:
        return date_parser.parse(value).isoformat()
    except (ValueError, OverflowError):
        return value


def _iter_parts(payload: Dict[str, Any]):
    for part in payload.get("parts") or []:
        yield part
        yield from _iter_parts(part)


class GmailClient:
    """
    Minimal Gmail REST client bound to one user's access token.

    HTTP 401 becomes AuthExpired and 403 becomes PermissionRequired so the
    client can prompt the user to sign in again.
    """
    def __init__(self, access_token: str, config: Dict[str, Any], session: Optional[requests.Session] = None):
        if not access_token:
            raise AuthExpired("Not authenticated", code="AUTH_ERROR")
        self.config = config.get('gmail', {})
        self.api_base = self.config.get('api_base', 'https://gmail.googleapis.com/gmail/v1/users/me').rstrip("/")
        self.max_results = int(self.config.get('max_results', 20))
        self.timeout = float(self.config.get('timeout_seconds', 30))
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        self.session.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            self.logger.error(f"Gmail request {method} {path} failed: {e}")
            raise UpstreamError(f"Gmail request failed: {e}")

        if response.status_code == 401:
            raise AuthExpired("Authentication expired. Please sign in again.", code="AUTH_ERROR")
        if response.status_code == 403:
            raise PermissionRequired("Gmail permissions required. Please sign out and sign in again.")
        if response.status_code == 404:
            raise NotFound(f"Gmail resource not found: {path}")
        if response.status_code == 429:
            raise RateLimited("Gmail rate limit exceeded. Please wait a moment and try again.")
        if response.status_code >= 400:
            raise UpstreamError(f"Gmail returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Unexpected Gmail response: {e}")

    def list_emails(self, max_results: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Lists recent messages with document attachments.

        Returns:
            One dict per message with id, threadId, subject, sender, receivedAt
            and the .pdf/.doc/.docx attachments it carries.
        """
        listing = self._request("GET", "messages", params={
            "q": "has:attachment",
            "maxResults": max_results or self.max_results,
        })
        messages = listing.get("messages") or []
        self.logger.info(f"Found {len(messages)} message(s) with attachments.")

        emails = []
        for message in messages:
            detail = self._request("GET", f"messages/{message['id']}")
            payload = detail.get("payload") or {}
            headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []}

            attachments = []
            for part in _iter_parts(payload):
                filename = part.get("filename") or ""
                if filename.lower().endswith(DOCUMENT_EXTENSIONS):
                    body = part.get("body") or {}
                    attachments.append({
                        "filename": filename,
                        "mimeType": part.get("mimeType"),
                        "attachmentId": body.get("attachmentId"),
                        "size": body.get("size"),
                    })

            emails.append({
                "id": message["id"],
                "threadId": detail.get("threadId") or message.get("threadId"),
                "subject": headers.get("subject", ""),
                "sender": headers.get("from", ""),
                "receivedAt": normalize_date(headers.get("date", "")),
                "snippet": detail.get("snippet", ""),
                "hasAttachment": bool(attachments),
                "attachments": attachments,
            })
        return emails

    def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Returns the decoded bytes of one attachment."""
        if not message_id or not attachment_id:
            raise ValidationFailure("Email ID and attachment ID are required")
        data = self._request("GET", f"messages/{message_id}/attachments/{attachment_id}").get("data")
        if not data:
            raise NotFound("Attachment data not found")
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

    def get_thread_info(self, message_id: str) -> Dict[str, Optional[str]]:
        """
        Looks up the Message-ID header and thread of the email being answered.

        Lookup failures fall back to a synthetic Message-ID and no thread.
        """
        try:
            detail = self._request("GET", f"messages/{message_id}", params={
                "format": "metadata",
                "metadataHeaders": "Message-ID",
            })
        except (NotFound, UpstreamError) as e:
            self.logger.warning(f"Could not fetch original email {message_id} for threading: {e}")
            return {"messageId": f"<{message_id}@gmail.com>", "threadId": None}

        headers = (detail.get("payload") or {}).get("headers") or []
        header = next((h.get("value") for h in headers if h.get("name", "").lower() == "message-id"), None)
        return {
            "messageId": header or f"<{detail.get('id', message_id)}@gmail.com>",
            "threadId": detail.get("threadId"),
        }

    def fetch_document(self, url: str) -> Optional[bytes]:
        """Downloads a stored visa document. Returns None on failure."""
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.warning(f"Failed to fetch document from {url}: {e}")
            return None
        if response.status_code >= 400:
            self.logger.warning(f"Failed to fetch document from {url}: HTTP {response.status_code}")
            return None
        return response.content

    def create_reply_draft(self, draft: "ReplyDraft") -> Dict[str, Any]:
        """Creates the draft in the user's mailbox and returns its id."""
        draft.validate()
        thread = self.get_thread_info(draft.original_email_id) if draft.original_email_id else {}

        attachments = []
        for doc in draft.visa_documents:
            content = self.fetch_document(doc.get("url", ""))
            if content is None:
                continue
            attachments.append((doc.get("filename") or "document", doc.get("mimeType") or "application/octet-stream", content))
        self.logger.info(f"Creating draft to {draft.recipient} with {len(attachments)} attachment(s).")

        message = draft.build_message(attachments, in_reply_to=thread.get("messageId"))
        request_body = {"message": {"raw": base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")}}
        if thread.get("threadId"):
            request_body["message"]["threadId"] = thread["threadId"]

        created = self._request("POST", "drafts", json=request_body)
        self.logger.info(f"Gmail draft created: {created.get('id')}")
        return {"draftId": created.get("id"), "attachments": len(attachments), "threadId": thread.get("threadId")}


class ReplyDraft:
    """The reply sent back to the requester with an artist's visa documents."""

    def __init__(self, config: Dict[str, Any], artist_name: str, record: Dict[str, Any],
                 visa_documents: List[Dict[str, Any]], original_subject: Optional[str] = None,
                 original_from: Optional[str] = None, original_email_id: Optional[str] = None,
                 sender_email: Optional[str] = None):
        self.config = config.get('gmail', {})
        self.artist_name = artist_name
        self.record = record or {}
        self.visa_documents = visa_documents or []
        self.original_email_id = original_email_id
        self.subject = f"Re: {original_subject or DEFAULT_SUBJECT}"
        self.sender_email = sender_email or self.config.get('sponsor_email', '')

        address = parseaddr(original_from or "")[1]
        if not address and original_from:
            match = re.search(r"[\w.+-]+@[\w-]+\.[\w.-]+", original_from)
            address = match.group(0) if match else ""
        self.recipient = address or self.config.get('sponsor_email', '')

    def validate(self):
        if is_blank(self.artist_name) or not self.visa_documents:
            raise ValidationFailure("Artist name and visa documents are required")
        if not self.recipient:
            raise ValidationFailure("No recipient address could be determined for the reply")

    def html_body(self) -> str:
        sponsor_lines = [
            self.config.get('sponsor_name', ''),
            self.config.get('sponsor_company', ''),
            *self.config.get('sponsor_address', []),
        ]
        if self.config.get('sponsor_phone'):
            sponsor_lines.append(f"Tel: {self.config['sponsor_phone']}")
        return REPLY_TEMPLATE.format(
            date_range=show_date_range(self.record),
            sponsor_block="<br>".join(line for line in sponsor_lines if line),
            sponsor_email=self.config.get('sponsor_email', ''),
            sponsor_name=self.config.get('sponsor_name', ''),
        )

    def build_message(self, attachments: List[tuple], in_reply_to: Optional[str] = None) -> MIMEMultipart:
        """Builds the multipart MIME message with HTML body and attachments."""
        message = MIMEMultipart("mixed")
        message["To"] = self.recipient
        if self.sender_email:
            message["From"] = self.sender_email
        message["Subject"] = self.subject
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid()
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
            message["References"] = in_reply_to

        message.attach(MIMEText(self.html_body(), "html", "utf-8"))
        for filename, mime_type, content in attachments:
            maintype, _, subtype = mime_type.partition("/")
            part = MIMEApplication(content, _subtype=subtype or "octet-stream")
            if maintype and maintype != "application":
                part.replace_header("Content-Type", mime_type)
            part.add_header("Content-Disposition", "attachment", filename=filename)
            message.attach(part)
        return message
