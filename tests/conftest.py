"""Shared test fixtures and configuration for all tests.

This conftest.py provides the settings, a file-backed SQLite store, row
factories and collaborator fakes used across the unit tests.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

from fixtures.fakes import (
    FakeBiller,
    FakeClassifier,
    FakeMailbox,
    FakeOrders,
    FakeResponder,
    FakeVault,
)
from support_pipeline.admission.controller import AdmissionController
from support_pipeline.config import Settings
from support_pipeline.integrations.notifications import ShopNotifier
from support_pipeline.integrations.vault import CredentialResolver
from support_pipeline.models.mail_models import Attachment, InboundEmail
from support_pipeline.persistence.database import Database
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore
from support_pipeline.persistence.tables import MessageRow, ShopRow, UserRow, utc_now
from support_pipeline.retry.backoff import BackoffPolicy
from support_pipeline.workers.processor import MessageProcessor


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with safe defaults for local testing.

    Override specific settings in individual tests as needed:
        def test_something(test_settings):
            test_settings.QUEUE_BATCH_SIZE = 3
    """
    return Settings(
        # === Application ===
        APP_NAME="Support Pipeline (Test)",
        APP_VERSION="0.1.0",
        DEBUG=True,
        LOG_LEVEL="DEBUG",
        ENVIRONMENT="development",

        # === Storage ===
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        REDIS_URL="redis://localhost:6379/0",
        REDIS_MAX_CONNECTIONS=10,

        # === Pipeline ===
        QUEUE_DELAY_BETWEEN_JOBS_SECONDS=0.0,
        ENCRYPTION_MASTER_KEY="test-master-key",
        LLM_API_KEY="test-api-key",

        # === Monitoring ===
        PROMETHEUS_ENABLED=False,  # Disable metrics in tests unless explicitly needed
    )


# === Store ===

@pytest_asyncio.fixture
async def database(tmp_path) -> Database:
    """File-backed SQLite database (concurrent sessions need a real file)."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'support.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def store(database: Database) -> MessageStore:
    return MessageStore(database)


@pytest.fixture
def queue(database: Database) -> JobQueue:
    return JobQueue(database, backoff=BackoffPolicy(base_seconds=30.0, max_seconds=3600.0))


@pytest.fixture
def make_user(database: Database):
    """Factory fixture to create a user row.

    Usage:
        user = await make_user(emails_limit=10, emails_used=10)
    """
    async def _create(**overrides: Any) -> UserRow:
        values = {
            "email": "dono@loja.com",
            "name": "Dono da Loja",
            "plan": "starter",
            "emails_limit": 500,
            "emails_used": 0,
        }
        values.update(overrides)
        async with database.session() as session:
            user = UserRow(**values)
            session.add(user)
        return user

    return _create


@pytest.fixture
def make_shop(database: Database, make_user):
    """Factory fixture to create a shop with mailbox and commerce credentials.

    Secrets use the FakeVault convention "enc:<plaintext>".
    """
    async def _create(user: Optional[UserRow] = None, **overrides: Any) -> ShopRow:
        if user is None:
            user = await make_user()
        slug = overrides.pop("slug", "loja")
        values = {
            "user_id": user.id,
            "name": "Loja Exemplo",
            "imap_host": f"imap.{slug}.com",
            "imap_user": f"contato@{slug}.com",
            "imap_password_encrypted": "enc:imap-secret",
            "smtp_host": f"smtp.{slug}.com",
            "smtp_user": f"contato@{slug}.com",
            "smtp_password_encrypted": "enc:smtp-secret",
            "support_email": f"suporte@{slug}.com",
            "attendant_name": "Ana",
            "shopify_domain": f"{slug}.myshopify.com",
            "shopify_client_id": "client-id",
            "shopify_client_secret_encrypted": "enc:shopify-secret",
        }
        values.update(overrides)
        async with database.session() as session:
            shop = ShopRow(**values)
            session.add(shop)
        return shop

    return _create


@pytest.fixture
def make_email():
    """Factory fixture to create an InboundEmail as returned by the gateway."""
    def _create(
        body: str = "Olá, meu pedido #1234 ainda não chegou. Podem verificar?",
        subject: str = "Pedido atrasado",
        from_email: str = "maria@cliente.com",
        from_name: Optional[str] = "Maria Silva",
        message_id: Optional[str] = None,
        received_at: Optional[datetime] = None,
        headers: Optional[dict[str, str]] = None,
        attachments: Optional[list[Attachment]] = None,
        **overrides: Any,
    ) -> InboundEmail:
        return InboundEmail(
            message_id=message_id or f"<{uuid4().hex}@cliente.com>",
            from_email=from_email,
            from_name=from_name,
            to_email="contato@loja.com",
            subject=subject,
            text_body=body,
            received_at=received_at or utc_now(),
            headers=headers or {},
            attachments=attachments or [],
            **overrides,
        )

    return _create


@pytest.fixture
def make_inbound(store: MessageStore, make_email):
    """Factory fixture to store an inbound message (conversation resolved as ingestion does)."""
    async def _create(shop: ShopRow, **email_overrides: Any) -> MessageRow:
        email = make_email(**email_overrides)
        conversation = await store.resolve_conversation(
            shop_id=shop.id,
            customer_email=email.from_email,
            customer_name=email.from_name,
            subject=email.subject,
            in_reply_to=email.in_reply_to,
            references=email.references,
            message_at=email.received_at,
        )
        message = await store.insert_inbound(conversation, email, email.from_email.lower(), email.from_name)
        assert message is not None
        return message

    return _create


# === Collaborator fakes ===

@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest.fixture
def fake_orders() -> FakeOrders:
    return FakeOrders()


@pytest.fixture
def fake_biller() -> FakeBiller:
    return FakeBiller()


@pytest.fixture
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def fake_responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def credentials(fake_vault: FakeVault) -> CredentialResolver:
    return CredentialResolver(fake_vault, "test-master-key")


@pytest.fixture
def notifier(fake_mailbox: FakeMailbox) -> ShopNotifier:
    return ShopNotifier(fake_mailbox, forward_prefix="[ENCAMINHADO]")


@pytest.fixture
def admission(database: Database, notifier: ShopNotifier, fake_biller: FakeBiller) -> AdmissionController:
    return AdmissionController(database, notifier=notifier, biller=fake_biller, extra_package_size=2)


@pytest.fixture
def processor(
    store: MessageStore,
    admission: AdmissionController,
    fake_classifier: FakeClassifier,
    fake_responder: FakeResponder,
    fake_mailbox: FakeMailbox,
    credentials: CredentialResolver,
    notifier: ShopNotifier,
    fake_orders: FakeOrders,
) -> MessageProcessor:
    """MessageProcessor wired to fakes, without a conversation lock."""
    return MessageProcessor(
        store,
        admission,
        classifier=fake_classifier,
        responder=fake_responder,
        mailbox=fake_mailbox,
        credentials=credentials,
        notifier=notifier,
        orders=fake_orders,
    )
