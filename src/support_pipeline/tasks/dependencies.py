"""
Wiring of the pipeline components from settings.

Out-of-scope collaborators (mailbox transport, order lookup, credential
vault, extra-package biller) are loaded from dotted paths in settings, e.g.
MAILBOX_GATEWAY_CLASS="mailbox_adapters.imap:ImapSmtpGateway", and
instantiated without arguments.

A PipelineContainer lives for one scheduled run: the database engine,
Redis pool and HTTP client are bound to the run's event loop and are
released by `aclose()`.
"""

from typing import Any, Optional

import structlog
from celery.utils.imports import symbol_by_name

from support_pipeline.admission.controller import AdmissionController
from support_pipeline.cache.image_cache import ImageCache, get_image_cache
from support_pipeline.config import Settings
from support_pipeline.integrations.billing import ExtraPackageBiller
from support_pipeline.integrations.exceptions import CollaboratorNotConfiguredError
from support_pipeline.integrations.mailbox import MailboxGateway
from support_pipeline.integrations.notifications import ShopNotifier
from support_pipeline.integrations.orders import OrderLookup
from support_pipeline.integrations.vault import CredentialResolver, CredentialVault
from support_pipeline.llm.http_client import LLMClient
from support_pipeline.locking.conversation_lock import RedisConversationLock
from support_pipeline.persistence.database import Database, get_database
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore
from support_pipeline.persistence.redis_client import RedisClient
from support_pipeline.retry.backoff import BackoffPolicy
from support_pipeline.workers.ingestion import IngestionWorker
from support_pipeline.workers.janitor import QueueJanitor
from support_pipeline.workers.pending_credits import PendingCreditsRecovery
from support_pipeline.workers.processor import MessageProcessor
from support_pipeline.workers.queue_worker import QueueWorker

logger = structlog.get_logger(__name__)


def load_collaborator(dotted_path: Optional[str], setting_name: str, required: bool = True) -> Any:
    """
    Instantiate a collaborator class from its dotted path.

    Raises:
        CollaboratorNotConfiguredError: required and the path is not set
    """
    if not dotted_path:
        if required:
            raise CollaboratorNotConfiguredError(
                f"{setting_name} is not configured",
                details={"setting": setting_name},
            )
        return None
    cls = symbol_by_name(dotted_path)
    logger.debug("Loaded collaborator", setting=setting_name, path=dotted_path)
    return cls()


class PipelineContainer:
    """
    Lazily built pipeline components for one run.

    Collaborators can be passed in directly (tests) instead of being loaded
    from settings.
    """

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        mailbox: Optional[MailboxGateway] = None,
        orders: Optional[OrderLookup] = None,
        vault: Optional[CredentialVault] = None,
        biller: Optional[ExtraPackageBiller] = None,
        llm: Optional[LLMClient] = None,
        image_cache: Optional[ImageCache] = None,
    ):
        self.settings = settings
        self._database = database
        self._mailbox = mailbox
        self._orders = orders
        self._vault = vault
        self._biller = biller
        self._llm = llm
        self._image_cache = image_cache
        self._store: Optional[MessageStore] = None
        self._queue: Optional[JobQueue] = None
        self._admission: Optional[AdmissionController] = None
        self._orders_loaded = orders is not None
        self._biller_loaded = biller is not None

    # --- Infrastructure ---

    @property
    def database(self) -> Database:
        if self._database is None:
            self._database = get_database(self.settings)
        return self._database

    @property
    def store(self) -> MessageStore:
        if self._store is None:
            self._store = MessageStore(self.database)
        return self._store

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            self._queue = JobQueue(
                self.database,
                backoff=BackoffPolicy(
                    base_seconds=self.settings.JOB_RETRY_BASE_SECONDS,
                    max_seconds=self.settings.JOB_RETRY_MAX_SECONDS,
                ),
            )
        return self._queue

    @property
    def image_cache(self) -> ImageCache:
        if self._image_cache is None:
            self._image_cache = get_image_cache(
                max_entries=self.settings.IMAGE_CACHE_MAX_ENTRIES,
                ttl_seconds=self.settings.IMAGE_CACHE_TTL_SECONDS,
                max_bytes=self.settings.IMAGE_MAX_BYTES,
            )
        return self._image_cache

    # --- Collaborators ---

    @property
    def mailbox(self) -> MailboxGateway:
        if self._mailbox is None:
            self._mailbox = load_collaborator(self.settings.MAILBOX_GATEWAY_CLASS, "MAILBOX_GATEWAY_CLASS")
        return self._mailbox

    @property
    def orders(self) -> Optional[OrderLookup]:
        if not self._orders_loaded:
            self._orders = load_collaborator(self.settings.ORDER_LOOKUP_CLASS, "ORDER_LOOKUP_CLASS", required=False)
            self._orders_loaded = True
        return self._orders

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = load_collaborator(self.settings.CREDENTIAL_VAULT_CLASS, "CREDENTIAL_VAULT_CLASS")
        return self._vault

    @property
    def biller(self) -> Optional[ExtraPackageBiller]:
        if not self._biller_loaded:
            self._biller = load_collaborator(
                self.settings.EXTRA_PACKAGE_BILLER_CLASS, "EXTRA_PACKAGE_BILLER_CLASS", required=False
            )
            self._biller_loaded = True
        return self._biller

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = LLMClient(
                base_url=self.settings.LLM_API_URL,
                api_key=self.settings.LLM_API_KEY,
                model=self.settings.LLM_MODEL,
                api_version=self.settings.LLM_API_VERSION,
                timeout=self.settings.LLM_TIMEOUT,
                max_tokens=self.settings.LLM_MAX_TOKENS,
                temperature=self.settings.LLM_TEMPERATURE,
                max_retries=self.settings.LLM_MAX_RETRIES,
                body_limit=self.settings.BODY_TRUNCATION_LIMIT,
            )
        return self._llm

    @property
    def credentials(self) -> CredentialResolver:
        return CredentialResolver(self.vault, self.settings.ENCRYPTION_MASTER_KEY)

    @property
    def notifier(self) -> ShopNotifier:
        return ShopNotifier(self.mailbox, forward_prefix=self.settings.FORWARD_SUBJECT_PREFIX)

    @property
    def admission(self) -> AdmissionController:
        if self._admission is None:
            self._admission = AdmissionController(
                self.database,
                notifier=self.notifier,
                biller=self.biller,
                warning_interval_minutes=self.settings.CREDITS_WARNING_INTERVAL_MINUTES,
                extra_package_size=self.settings.EXTRA_PACKAGE_SIZE,
            )
        return self._admission

    # --- Workers ---

    def ingestion_worker(self) -> IngestionWorker:
        return IngestionWorker(
            self.store,
            self.queue,
            self.mailbox,
            self.credentials,
            image_cache=self.image_cache,
            max_concurrent_shops=self.settings.INGESTION_MAX_CONCURRENT_SHOPS,
            max_emails_per_shop=self.settings.INGESTION_MAX_EMAILS_PER_SHOP,
            default_lookback_days=self.settings.INGESTION_DEFAULT_LOOKBACK_DAYS,
            time_budget_seconds=self.settings.INGESTION_TIME_BUDGET_SECONDS,
            job_max_attempts=self.settings.INGESTION_JOB_MAX_ATTEMPTS,
        )

    def processor(self) -> MessageProcessor:
        return MessageProcessor(
            self.store,
            self.admission,
            classifier=self.llm,
            responder=self.llm,
            mailbox=self.mailbox,
            credentials=self.credentials,
            notifier=self.notifier,
            orders=self.orders,
            lock=RedisConversationLock(
                RedisClient.get_async_client(self.settings),
                ttl_seconds=self.settings.CONVERSATION_LOCK_TTL_SECONDS,
            ),
            image_cache=self.image_cache,
            max_data_requests=self.settings.MAX_DATA_REQUESTS,
            loop_max_replies=self.settings.LOOP_MAX_REPLIES,
            loop_window_hours=self.settings.LOOP_WINDOW_HOURS,
            history_limit=self.settings.HISTORY_LIMIT,
            forward_prefix=self.settings.FORWARD_SUBJECT_PREFIX,
        )

    def queue_worker(self) -> QueueWorker:
        return QueueWorker(
            self.queue,
            self.store,
            self.processor(),
            batch_size=self.settings.QUEUE_BATCH_SIZE,
            time_budget_seconds=self.settings.QUEUE_TIME_BUDGET_SECONDS,
            delay_between_jobs=self.settings.QUEUE_DELAY_BETWEEN_JOBS_SECONDS,
            busy_retry_delay_seconds=self.settings.JOB_BUSY_RETRY_DELAY_SECONDS,
        )

    def janitor(self) -> QueueJanitor:
        return QueueJanitor(
            self.store,
            self.queue,
            stuck_timeout_minutes=self.settings.JANITOR_STUCK_TIMEOUT_MINUTES,
            dlq_retry_window_hours=self.settings.JANITOR_DLQ_RETRY_WINDOW_HOURS,
            dlq_retention_days=self.settings.JANITOR_DLQ_RETENTION_DAYS,
            orphan_max_attempts=self.settings.JANITOR_ORPHAN_MAX_ATTEMPTS,
            transient_patterns=self.settings.TRANSIENT_ERROR_PATTERNS,
        )

    def pending_credits(self) -> PendingCreditsRecovery:
        return PendingCreditsRecovery(
            self.store,
            self.queue,
            job_max_attempts=self.settings.INGESTION_JOB_MAX_ATTEMPTS,
        )

    async def aclose(self) -> None:
        """Release loop-bound resources at the end of a run."""
        if self._admission is not None:
            await self._admission.wait_background()
        if self._llm is not None:
            await self._llm.close()
        await RedisClient.close_async_pool()
        if self._database is not None:
            await self._database.dispose()
