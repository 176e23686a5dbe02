"""
Text processing utilities for email bodies, subjects and headers.

Provides body cleaning (quoted replies and signatures removed), subject
normalization for thread matching, reply threading headers, order-number
and address extraction, and sentence-boundary truncation for LLM input.
All functions are pure and deterministic.
"""

import html
import re
import unicodedata
from email.utils import parseaddr
from typing import Optional
from uuid import uuid4


# Lines from which everything below is a quoted earlier message
QUOTE_MARKERS = [
    re.compile(r"^On .+ wrote:\s*$", re.IGNORECASE),
    re.compile(r"^Em .+ escreveu:\s*$", re.IGNORECASE),
    re.compile(r"^El .+ escribi[oó]:\s*$", re.IGNORECASE),
    re.compile(r"^Le .+ a [ée]crit\s*:\s*$", re.IGNORECASE),
    re.compile(r"^Am .+ schrieb .+:\s*$", re.IGNORECASE),
    re.compile(r"^Il .+ ha scritto:\s*$", re.IGNORECASE),
    re.compile(r"-{2,}\s*Original Message\s*-{2,}", re.IGNORECASE),
    re.compile(r"-{2,}\s*Mensagem Original\s*-{2,}", re.IGNORECASE),
    re.compile(r"^_{10,}\s*$"),
    re.compile(r"^From:\s", re.IGNORECASE),
    re.compile(r"^De:\s.+@", re.IGNORECASE),
]

# Lines from which everything below is a signature
SIGNATURE_MARKERS = [
    re.compile(r"^--\s*$"),
    re.compile(r"^Enviado do meu (iPhone|iPad|Android|celular)", re.IGNORECASE),
    re.compile(r"^Enviado de meu ", re.IGNORECASE),
    re.compile(r"^Sent from my ", re.IGNORECASE),
    re.compile(r"^Get Outlook for ", re.IGNORECASE),
    re.compile(r"^Obtenha o Outlook para ", re.IGNORECASE),
]

QUOTED_LINE = re.compile(r"^\s*>")

REPLY_PREFIX = re.compile(
    r"^\s*((re|res|fw|fwd|enc|tr|aw|wg|rv|sv|vs)\s*(\[\d+\])?\s*:\s*)+",
    re.IGNORECASE,
)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

CONTACT_FORM_EMAIL = re.compile(
    r"(?:E-?mail|Correo|Courriel)\s*:\s*\n?\s*([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})",
    re.IGNORECASE,
)
CONTACT_FORM_NAME = re.compile(r"(?:Name|Nome|Nombre|Nom)\s*:\s*\n?\s*([^\n]+)", re.IGNORECASE)

ORDER_KEYWORD_PATTERNS = [
    re.compile(
        r"\b(?:order|pedido|encomenda|n[uú]mero(?:\s+do\s+pedido)?|n[ºo°]\.?|commande|bestellung|"
        r"bestelling|ordine|ordernummer|orden)\s*(?:number|n[uú]mero|nr\.?|no\.?|n[ºo°])?\s*"
        r"[:#]?\s*#?\s*([A-Z]{0,4}\d{3,}[A-Z0-9-]*)",
        re.IGNORECASE,
    ),
]
ORDER_HASH_PATTERN = re.compile(r"#\s*([A-Z]*\d+[A-Z]*\d*)", re.IGNORECASE)
ORDER_LONG_DIGITS_PATTERN = re.compile(r"\b(\d{7,})\b")
ORDER_LINE_PATTERN = re.compile(r"^\s*#?([A-Z]*\d{4,}[A-Z]*\d*)\s*$", re.IGNORECASE | re.MULTILINE)

_TAG = re.compile(r"<[^>]+>")
_BLOCK_TAG = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h\d)\s*/?>", re.IGNORECASE)
_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WHITESPACE = re.compile(r"\s+")
_BLANK_LINES = re.compile(r"\n{3,}")


def normalize_text(text: Optional[str]) -> str:
    """
    Lowercase, strip accents and collapse whitespace.

    Heuristic rules match against this form so "Obrigado" and "OBRIGADÓ"
    hit the same pattern.
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    without_accents = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", without_accents.lower()).strip()


def html_to_text(body_html: Optional[str]) -> str:
    """Reduce an HTML body to plain text (line breaks kept at block ends)."""
    if not body_html:
        return ""
    text = _SCRIPT_STYLE.sub("", body_html)
    text = _BLOCK_TAG.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    lines = [line.strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def clean_email_body(text: Optional[str], body_html: Optional[str] = None) -> str:
    """
    Strip quoted replies and signatures from an email body.

    Falls back to the HTML body when there is no text part.

    Examples:
        >>> clean_email_body("Where is my order?\\n\\nOn Mon, Jan 1, Shop wrote:\\n> Hi")
        'Where is my order?'
        >>> clean_email_body("Thanks!\\n--\\nJohn")
        'Thanks!'
    """
    source = text if text and text.strip() else html_to_text(body_html)
    if not source:
        return ""

    kept: list[str] = []
    for raw_line in source.replace("\r\n", "\n").split("\n"):
        line = raw_line.strip()
        if any(marker.search(line) for marker in QUOTE_MARKERS):
            break
        if any(marker.search(line) for marker in SIGNATURE_MARKERS):
            break
        if QUOTED_LINE.match(raw_line):
            continue
        kept.append(line)

    cleaned = "\n".join(kept)
    return _BLANK_LINES.sub("\n\n", cleaned).strip()


def strip_reply_prefixes(subject: Optional[str]) -> str:
    """Remove Re:/Fwd:/Enc:/Fw:/RES:/AW:/TR: prefixes (repeated or nested)."""
    if not subject:
        return ""
    return REPLY_PREFIX.sub("", subject).strip()


def thread_key(subject: Optional[str]) -> str:
    """
    Normalized subject used to group messages into one conversation.

    Examples:
        >>> thread_key("RE: Fwd:  Pedido #1234  atrasado")
        'pedido #1234 atrasado'
    """
    return normalize_text(strip_reply_prefixes(subject))[:500]


def build_reply_subject(subject: Optional[str]) -> str:
    base = strip_reply_prefixes(subject)
    return f"Re: {base}" if base else "Re:"


def build_reply_headers(
    message_id: Optional[str],
    references: Optional[str],
) -> tuple[Optional[str], Optional[str]]:
    """
    Threading headers for a reply to a message.

    Returns:
        (in_reply_to, references) where references is the inbound chain
        plus the inbound message id (added only if not already present)
    """
    if not message_id:
        return None, references or None
    if not references:
        return message_id, message_id
    if message_id in references.split():
        return message_id, references
    return message_id, f"{references} {message_id}"


def reference_ids(in_reply_to: Optional[str], references: Optional[str]) -> list[str]:
    """Message ids an inbound email points at, most recent first."""
    ids: list[str] = []
    if in_reply_to:
        ids.extend(in_reply_to.split())
    if references:
        ids.extend(reversed(references.split()))
    seen: set[str] = set()
    ordered = []
    for value in ids:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def extract_address(value: Optional[str]) -> tuple[str, Optional[str]]:
    """
    Split a From-style value into (lowercased email, display name).

    Examples:
        >>> extract_address('"Maria Silva" <Maria@Example.com>')
        ('maria@example.com', 'Maria Silva')
    """
    if not value:
        return "", None
    name, address = parseaddr(value)
    return address.strip().lower(), (name.strip() or None)


def name_from_email(address: str) -> str:
    """Best-effort display name from the local part of an address."""
    local = address.split("@", 1)[0]
    parts = [p for p in re.split(r"[._\-+]+", local) if p and not p.isdigit()]
    return " ".join(p.capitalize() for p in parts) or local


def extract_emails(text: Optional[str]) -> list[str]:
    """All distinct email addresses in text, lowercased, in order of appearance."""
    if not text:
        return []
    seen: list[str] = []
    for match in EMAIL_PATTERN.findall(text):
        address = match.lower().rstrip(".")
        if address not in seen:
            seen.append(address)
    return seen


def extract_contact_form_sender(body: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Customer email and name from a store contact-form notification.

    Contact forms arrive from the platform's or the shop's own address with
    the customer's details in "Email:" / "Name:" lines of the body.
    """
    if not body:
        return None, None
    email_match = CONTACT_FORM_EMAIL.search(body)
    if not email_match:
        return None, None
    name_match = CONTACT_FORM_NAME.search(body)
    name = name_match.group(1).strip() if name_match else None
    return email_match.group(1).lower(), name or None


def _valid_order_candidate(candidate: str) -> bool:
    return sum(ch.isdigit() for ch in candidate) >= 3


def extract_order_number(text: Optional[str]) -> Optional[str]:
    """
    First plausible order number in text.

    Tried in order: keyword patterns (order, pedido, commande, ...), a
    "#1234" reference, a run of 7+ digits, a line holding only an order
    code. A candidate must contain at least 3 digits.

    Examples:
        >>> extract_order_number("Pedido #1234 atrasado")
        '1234'
        >>> extract_order_number("hello there")
    """
    if not text:
        return None
    for pattern in ORDER_KEYWORD_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip("-")
            if _valid_order_candidate(candidate):
                return candidate
    for pattern in (ORDER_HASH_PATTERN, ORDER_LONG_DIGITS_PATTERN, ORDER_LINE_PATTERN):
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if _valid_order_candidate(candidate):
                return candidate
    return None


def generate_message_id(sender_address: Optional[str]) -> str:
    """RFC 5322 Message-ID on the sender's domain."""
    domain = "localhost"
    if sender_address and "@" in sender_address:
        domain = sender_address.rsplit("@", 1)[1].strip().lower() or domain
    return f"<{uuid4().hex}@{domain}>"


def truncate_at_sentence_boundary(text: str, max_chars: int) -> str:
    """
    Truncate text at the nearest sentence boundary before max_chars.

    Preserves complete sentences to keep the body coherent for the LLM.

    Examples:
        >>> truncate_at_sentence_boundary("Hello. World. Test.", 15)
        'Hello. World.'
    """
    if len(text) <= max_chars:
        return text

    truncated_segment = text[:max_chars]
    matches = list(re.finditer(r"[.!?](?:\s|$)", truncated_segment))

    if matches:
        cutoff = matches[-1].end()
        if truncated_segment[cutoff - 1:cutoff].isspace():
            cutoff -= 1
        return text[:cutoff]

    last_space = truncated_segment.rfind(" ")
    if last_space > max_chars * 0.8:
        return text[:last_space]

    return text[:max_chars]
