"""
Ingestion Worker: pulls unseen mail from every active shop mailbox.

One run:
1. Lists active shops with a mailbox, never-synced/oldest-synced first
2. Processes shops concurrently up to a cap; once the wall-clock budget is
   spent no new shop is started (in-flight shops finish)
3. Per shop: decrypt credentials, fetch unseen mail since the start date,
   then persist each email sequentially (dedup, conversation, message, job)

A mailbox failure is recorded on the shop and never blocks other shops.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from support_pipeline.cache.image_cache import ImageCache
from support_pipeline.heuristics.text import extract_contact_form_sender, html_to_text
from support_pipeline.integrations.exceptions import (
    MailboxAuthError,
    MailboxError,
    VaultError,
)
from support_pipeline.integrations.mailbox import MailboxGateway
from support_pipeline.integrations.vault import CredentialResolver
from support_pipeline.logging_config import pipeline_context
from support_pipeline.models.enums import EmailStartMode, JobType
from support_pipeline.models.mail_models import InboundEmail, MailboxCredentials
from support_pipeline.models.run_models import IngestionRunResult, ShopIngestionResult
from support_pipeline.monitoring.metrics import (
    ingested_messages_total,
    ingestion_duplicates_total,
    ingestion_errors_total,
)
from support_pipeline.persistence.exceptions import DuplicateJobError
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore
from support_pipeline.persistence.tables import ShopRow, utc_now

logger = structlog.get_logger(__name__)

# Store platform addresses that deliver contact-form submissions
CONTACT_FORM_SENDERS = (
    "mailer@shopify.com",
    "noreply@shopify.com",
    "no-reply@shopify.com",
)


def _is_contact_form_sender(address: str) -> bool:
    return address in CONTACT_FORM_SENDERS


class IngestionWorker:
    """
    Mailbox poller.

    Responsibilities:
    - Fair, bounded-concurrency polling of shop mailboxes
    - Dedup by provider message id (re-ingestion is a no-op)
    - Own-address exclusion and contact-form sender extraction
    - Conversation resolution, pending Message + Job creation
    - Image attachment caching for vision input

    Does NOT handle:
    - Classification or replies (queue worker)
    """

    def __init__(
        self,
        store: MessageStore,
        queue: JobQueue,
        mailbox: MailboxGateway,
        credentials: CredentialResolver,
        image_cache: Optional[ImageCache] = None,
        max_concurrent_shops: int = 10,
        max_emails_per_shop: int = 50,
        default_lookback_days: int = 7,
        time_budget_seconds: float = 110.0,
        job_max_attempts: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.mailbox = mailbox
        self.credentials = credentials
        self.image_cache = image_cache
        self.max_concurrent_shops = max_concurrent_shops
        self.max_emails_per_shop = max_emails_per_shop
        self.default_lookback_days = default_lookback_days
        self.time_budget_seconds = time_budget_seconds
        self.job_max_attempts = job_max_attempts
        self.clock = clock

    async def run(self) -> IngestionRunResult:
        start = time.monotonic()
        deadline = start + self.time_budget_seconds
        result = IngestionRunResult()

        shops = await self.store.list_shops_for_ingestion()
        logger.info("Ingestion run started", shops=len(shops))

        semaphore = asyncio.Semaphore(self.max_concurrent_shops)

        async def guarded(shop: ShopRow) -> Optional[ShopIngestionResult]:
            async with semaphore:
                if time.monotonic() >= deadline:
                    return None
                with pipeline_context(shop_id=shop.id):
                    try:
                        return await self.ingest_shop(shop)
                    except Exception as e:
                        logger.error("Shop ingestion failed", error=str(e), exc_info=True)
                        return ShopIngestionResult(
                            shop_id=shop.id, shop_name=shop.name, errors=1, error_message=str(e)
                        )

        outcomes = await asyncio.gather(*(guarded(shop) for shop in shops))

        for outcome in outcomes:
            if outcome is None:
                result.shops_skipped += 1
                continue
            result.shops_processed += 1
            result.emails_fetched += outcome.emails_fetched
            result.jobs_enqueued += outcome.jobs_enqueued
            result.errors += outcome.errors
            result.shops.append(outcome)

        result.budget_exhausted = result.shops_skipped > 0
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Ingestion run finished",
            shops_processed=result.shops_processed,
            shops_skipped=result.shops_skipped,
            emails_fetched=result.emails_fetched,
            jobs_enqueued=result.jobs_enqueued,
            errors=result.errors,
            duration_ms=result.duration_ms,
        )
        return result

    def fetch_since(self, shop: ShopRow) -> datetime:
        """Start of the fetch window for a shop."""
        if shop.email_start_mode == EmailStartMode.FROM_INTEGRATION_DATE.value and shop.email_start_date:
            return shop.email_start_date
        return self.clock() - timedelta(days=self.default_lookback_days)

    async def ingest_shop(self, shop: ShopRow) -> ShopIngestionResult:
        """Fetch and persist one shop's unseen mail; never raises for mailbox errors."""
        outcome = ShopIngestionResult(shop_id=shop.id, shop_name=shop.name)
        log = logger.bind(shop_id=shop.id)

        try:
            credentials = self.credentials.mailbox_credentials(shop)
            if credentials is None:
                return outcome
            emails = await self.mailbox.fetch_unseen(
                credentials,
                self.max_emails_per_shop,
                self.fetch_since(shop),
            )
        except (MailboxError, VaultError) as e:
            kind = "auth" if isinstance(e, MailboxAuthError) else "vault" if isinstance(e, VaultError) else "connection"
            ingestion_errors_total.labels(kind=kind).inc()
            await self.store.record_sync_error(shop.id, f"{type(e).__name__}: {e.message}")
            log.warning("Mailbox fetch failed", error=e.message, kind=kind)
            outcome.errors += 1
            outcome.error_message = e.message
            return outcome

        await self.store.record_sync_success(shop.id, self.clock())
        outcome.emails_fetched = len(emails)

        own_addresses = set(credentials.own_addresses)
        if shop.support_email:
            own_addresses.add(shop.support_email.lower())

        for email in emails:
            try:
                await self._ingest_email(shop, credentials, own_addresses, email, outcome)
            except Exception as e:
                outcome.errors += 1
                ingestion_errors_total.labels(kind="store").inc()
                log.error(
                    "Failed to ingest email",
                    provider_message_id=email.message_id,
                    error=str(e),
                    exc_info=True,
                )

        log.info(
            "Shop ingested",
            fetched=outcome.emails_fetched,
            created=outcome.messages_created,
            duplicates=outcome.duplicates_skipped,
            self_skipped=outcome.self_skipped,
        )
        return outcome

    async def _ingest_email(
        self,
        shop: ShopRow,
        credentials: MailboxCredentials,
        own_addresses: set[str],
        email: InboundEmail,
        outcome: ShopIngestionResult,
    ) -> None:
        if await self.store.message_exists(email.message_id):
            outcome.duplicates_skipped += 1
            ingestion_duplicates_total.inc()
            return

        from_email = (email.from_email or "").strip().lower()
        from_name = email.from_name

        if from_email in own_addresses or _is_contact_form_sender(from_email):
            form_email, form_name = extract_contact_form_sender(
                email.text_body or html_to_text(email.html_body)
            )
            if form_email and form_email not in own_addresses:
                from_email, from_name = form_email, form_name or from_name
            elif from_email in own_addresses:
                outcome.self_skipped += 1
                logger.debug("Skipping mail from the shop's own address", shop_id=shop.id)
                return

        conversation = await self.store.resolve_conversation(
            shop_id=shop.id,
            customer_email=from_email,
            customer_name=from_name,
            subject=email.subject,
            in_reply_to=email.in_reply_to,
            references=email.references,
            message_at=email.received_at,
        )
        message = await self.store.insert_inbound(conversation, email, from_email, from_name)
        if message is None:
            outcome.duplicates_skipped += 1
            ingestion_duplicates_total.inc()
            return
        outcome.messages_created += 1
        ingested_messages_total.inc()

        if self.image_cache is not None and email.attachments:
            self.image_cache.put(email.message_id, email.attachments)

        try:
            await self.queue.enqueue(
                JobType.PROCESS_EMAIL,
                shop_id=shop.id,
                message_id=message.id,
                payload={"provider_message_id": email.message_id},
                max_attempts=self.job_max_attempts,
            )
        except DuplicateJobError:
            logger.debug("Job already queued", message_id=message.id)
            return
        outcome.jobs_enqueued += 1
