"""Parse Gmail API message payloads into plain dicts the reconciler can store."""
import base64
import binascii
import email.utils
import logging
import re
from datetime import datetime, timezone as utc_tz
from email.utils import parsedate_to_datetime
from html import unescape
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

SNIPPET_MAX_LENGTH = 140
MAX_MIME_DEPTH = 10

_CID_REF_RE = re.compile(r"""cid:([^"'\s>)]+)""", re.IGNORECASE)
_BLOCK_BREAK_RE = re.compile(r"(?i)<br\s*/?>|</p>|</div>|</blockquote>|</tr>|</li>")
_SCRIPT_STYLE_RE = re.compile(r"(?is)<(script|style|head)[^>]*>.*?</\1>")


def _truncate(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate string to max_length for DB varchar fields; preserve None."""
    if value is None:
        return None
    s = str(value)
    return s[:max_length] if len(s) > max_length else s


def _decode_body_data(data: str) -> str:
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def html_to_text(html: str) -> str:
    """Strip HTML tags and decode entities, keeping paragraph breaks."""
    if not html:
        return ""
    text = _SCRIPT_STYLE_RE.sub("", html)
    text = _BLOCK_BREAK_RE.sub("\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def derive_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    if not text:
        return ""
    snippet = re.sub(r"\s+", " ", text).strip()
    if len(snippet) > max_length:
        snippet = snippet[:max_length] + "…"
    return snippet


def normalize_cid(value: str) -> str:
    """'<Image001.png@01D>' and 'cid:image001.png@01d' normalize to the same key."""
    if not value:
        return ""
    cid = value.strip()
    if cid.lower().startswith("cid:"):
        cid = cid[4:]
    return cid.strip().strip("<>").strip().lower()


def extract_cids_from_html(html: str) -> List[str]:
    """Distinct normalized content ids referenced as cid: URLs, in document order."""
    if not html:
        return []
    seen = []
    for match in _CID_REF_RE.finditer(html):
        cid = normalize_cid(match.group(1))
        if cid and cid not in seen:
            seen.append(cid)
    return seen


def replace_cid_reference(html: str, content_id: str, url: str) -> str:
    """Point every cid:<content_id> reference in html at url."""
    if not html or not content_id:
        return html or ""

    def _sub(match):
        if normalize_cid(match.group(1)) == content_id:
            return url
        return match.group(0)

    return _CID_REF_RE.sub(_sub, html)


def parse_addresses(header_value: str) -> List[str]:
    if not header_value:
        return []
    addresses = email.utils.getaddresses([header_value])
    return [addr[1] for addr in addresses if addr[1]]


def extract_body_from_parts(parts: List[dict], depth: int = 0) -> Tuple[str, str]:
    """Extract HTML and plain text bodies from message parts (recursive)."""
    html_body = ""
    plain_body = ""
    if not parts or depth > MAX_MIME_DEPTH:
        return html_body, plain_body

    for part in parts:
        mime_type = part.get("mimeType", "")
        if part.get("parts"):
            nested_html, nested_plain = extract_body_from_parts(part["parts"], depth + 1)
            if nested_html and not html_body:
                html_body = nested_html
            if nested_plain and not plain_body:
                plain_body = nested_plain

        body_data = (part.get("body") or {}).get("data", "")
        filename = (part.get("filename") or "").strip()
        if body_data and not filename:
            decoded = _decode_body_data(body_data)
            if mime_type == "text/html" and not html_body:
                html_body = decoded
            elif mime_type == "text/plain" and not plain_body:
                plain_body = decoded

    return html_body, plain_body


def extract_body_from_payload(payload: dict) -> Tuple[str, str]:
    """Return (body_html, body_text). body_text falls back to the stripped HTML."""
    if not payload:
        return "", ""
    body_html = ""
    body_text = ""
    if payload.get("parts"):
        body_html, body_text = extract_body_from_parts(payload["parts"])
    else:
        mime_type = payload.get("mimeType", "")
        decoded = _decode_body_data((payload.get("body") or {}).get("data", ""))
        if mime_type == "text/html":
            body_html = decoded
        elif mime_type == "text/plain" or decoded:
            body_text = decoded
    if body_html and not body_text:
        body_text = html_to_text(body_html)
    return body_html, body_text


def extract_attachments_from_parts(parts: List[dict], depth: int = 0) -> List[dict]:
    """Attachment references only; bytes are fetched later by the CID resolver."""
    items = []
    if not parts or depth > MAX_MIME_DEPTH:
        return items
    for part in parts:
        if part.get("parts"):
            items.extend(extract_attachments_from_parts(part["parts"], depth + 1))

        part_headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in part.get("headers", [])
        }
        body = part.get("body") or {}
        filename = (part.get("filename") or "").strip()
        attachment_id = body.get("attachmentId")
        mime_type = (part.get("mimeType") or "").strip() or "application/octet-stream"
        content_disposition = (part_headers.get("content-disposition") or "").lower()
        content_id = normalize_cid(part_headers.get("content-id") or "")
        is_inline = "inline" in content_disposition or bool(content_id)
        looks_like_attachment = bool(
            filename or attachment_id or "attachment" in content_disposition
        )
        if not looks_like_attachment or (mime_type in ("text/plain", "text/html") and not filename):
            continue

        items.append(
            {
                "provider_attachment_id": _truncate(attachment_id or "", 1024),
                "filename": _truncate(filename or "attachment", 255),
                "content_type": _truncate(mime_type, 128),
                "size_bytes": int(body.get("size") or 0),
                "is_inline": is_inline,
                "content_id": _truncate(content_id, 255),
            }
        )
    return items


def _parse_sent_at(msg_data: dict, date_header: str) -> Optional[datetime]:
    internal_date = msg_data.get("internalDate")
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=utc_tz.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=utc_tz.utc)
        return parsed
    return None


def parse_message(msg_data: dict) -> dict:
    """Parse a Gmail API message (format=full) into reconciler fields."""
    payload = msg_data.get("payload") or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
    label_ids = list(msg_data.get("labelIds") or [])

    body_html, body_text = extract_body_from_payload(payload)
    attachments = extract_attachments_from_parts(payload.get("parts") or [])
    from_header = headers.get("from", "")
    from_name, from_address = email.utils.parseaddr(from_header)

    snippet = unescape(msg_data.get("snippet") or "").strip()
    if not snippet:
        snippet = derive_snippet(body_text)

    return {
        "external_message_id": msg_data["id"],
        "external_thread_id": msg_data.get("threadId") or msg_data["id"],
        "history_id": msg_data.get("historyId"),
        "subject": _truncate(headers.get("subject", ""), 512),
        "from_address": _truncate(from_address, 255),
        "from_name": _truncate(from_name.strip('"'), 255),
        "to_addresses": parse_addresses(headers.get("to", "")),
        "cc_addresses": parse_addresses(headers.get("cc", "")),
        "sent_at": _parse_sent_at(msg_data, headers.get("date", "")),
        "label_ids": label_ids,
        "is_outbound": "SENT" in label_ids,
        "snippet": _truncate(snippet, 1000),
        "body_html": body_html,
        "body_text": body_text,
        "has_body": bool(body_html or body_text),
        "attachments": attachments,
        "cid_refs": extract_cids_from_html(body_html),
    }
