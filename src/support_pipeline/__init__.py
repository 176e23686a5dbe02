"""
Support Pipeline for e-commerce customer-support mailboxes.

Ingests inbound shop email, classifies intent, enriches with order data
and sends AI-drafted replies, escalating to a human when policy requires:
- Durable job queue with retry, backoff and dead-letter semantics
- Per-conversation advisory locking
- Atomic credit admission before any paid step
- Multi-stage message state machine (classify -> gather data -> respond/escalate)

Architecture: Celery beat schedule + asyncio workers + SQLAlchemy store + Redis locks
"""

__version__ = "0.1.0"
