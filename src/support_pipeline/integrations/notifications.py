"""
Emails the pipeline sends to shops and owners (not to customers).

- Forward to human: a copy of the customer's message sent to the shop's
  support inbox when a conversation is escalated.
- Credits warning: a rate-limited notice to the account owner when the
  usage quota is exhausted.
- Human fallback: the shop's own "someone will contact you" template,
  rendered without an LLM call.

All of these go out through the shop's own mailbox via the Mailbox Gateway.
"""

from typing import Optional

import structlog

from support_pipeline.integrations.mailbox import MailboxGateway
from support_pipeline.models.mail_models import MailboxCredentials, OutgoingEmail, SentEmail
from support_pipeline.models.pipeline_models import ShopPolicy

logger = structlog.get_logger(__name__)


FORWARD_BODY_TEMPLATE = """\
This conversation was handed over to your team.

Customer: {customer_name} <{customer_email}>
Category: {category}
Reason: {reason}

----- Original message -----
Subject: {subject}

{body}
"""

CREDITS_WARNING_SUBJECT = "[{store_name}] Your email credits are exhausted"

CREDITS_WARNING_TEMPLATE = """\
Hello {owner_name},

Your plan's email credits for {store_name} are used up ({emails_used} of {emails_limit}).
New customer emails are being held and will be answered automatically as soon
as credits are available again.

Upgrade your plan or buy an extra package to resume automatic replies.
"""

_FALLBACK_PLACEHOLDERS = ("customer_name", "attendant_name", "support_email", "store_name")


def build_forward_subject(prefix: str, subject: Optional[str], from_email: str) -> str:
    return f"{prefix} {subject or '(no subject)'} - De: {from_email}"


def render_fallback_template(policy: ShopPolicy, customer_name: Optional[str]) -> Optional[str]:
    """
    Render the shop's fallback template, or None when the shop has none.

    Unknown placeholders are left untouched.
    """
    template = (policy.fallback_message_template or "").strip()
    if not template:
        return None
    values = {
        "customer_name": customer_name or "",
        "attendant_name": policy.sender_name,
        "support_email": policy.support_email or "",
        "store_name": policy.name,
    }
    rendered = template
    for key in _FALLBACK_PLACEHOLDERS:
        rendered = rendered.replace("{" + key + "}", values[key])
    return rendered


class ShopNotifier:
    """Sends forward-to-human and owner warning emails."""

    def __init__(self, mailbox: MailboxGateway, forward_prefix: str = "[ENCAMINHADO]"):
        self.mailbox = mailbox
        self.forward_prefix = forward_prefix

    async def forward_to_human(
        self,
        credentials: MailboxCredentials,
        policy: ShopPolicy,
        customer_email: str,
        customer_name: Optional[str],
        subject: Optional[str],
        body: str,
        category: Optional[str],
        reason: str,
    ) -> Optional[SentEmail]:
        """
        Forward the customer's message to the shop's support address.

        Returns None (and logs) when the shop has no support address.

        Raises:
            MailboxError subclass on send failure
        """
        if not policy.support_email:
            logger.warning("No support email configured, forward skipped", shop_id=policy.shop_id)
            return None

        email = OutgoingEmail(
            to=policy.support_email,
            subject=build_forward_subject(self.forward_prefix, subject, customer_email),
            text_body=FORWARD_BODY_TEMPLATE.format(
                customer_name=customer_name or customer_email,
                customer_email=customer_email,
                category=category or "unclassified",
                reason=reason,
                subject=subject or "",
                body=body,
            ),
            from_name=policy.sender_name,
        )
        sent = await self.mailbox.send(credentials, email)
        logger.info(
            "Conversation forwarded to human",
            shop_id=policy.shop_id,
            customer_email=customer_email,
            reason=reason,
        )
        return sent

    async def send_credits_warning(
        self,
        credentials: MailboxCredentials,
        policy: ShopPolicy,
        owner_email: str,
        owner_name: Optional[str],
        emails_used: int,
        emails_limit: Optional[int],
    ) -> SentEmail:
        email = OutgoingEmail(
            to=owner_email,
            subject=CREDITS_WARNING_SUBJECT.format(store_name=policy.name),
            text_body=CREDITS_WARNING_TEMPLATE.format(
                owner_name=owner_name or owner_email,
                store_name=policy.name,
                emails_used=emails_used,
                emails_limit=emails_limit if emails_limit is not None else "unlimited",
            ),
            from_name=policy.name,
        )
        return await self.mailbox.send(credentials, email)
