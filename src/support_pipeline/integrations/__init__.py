"""
Interfaces to the external collaborators.

Implementations of the mailbox transport, order lookup, credential
decryption and extra-package billing live outside this package and are
wired in by dotted path from settings.
"""

from support_pipeline.integrations.billing import ExtraPackageBiller
from support_pipeline.integrations.mailbox import MailboxGateway
from support_pipeline.integrations.notifications import ShopNotifier
from support_pipeline.integrations.orders import OrderLookup
from support_pipeline.integrations.vault import CredentialResolver, CredentialVault

__all__ = [
    "ExtraPackageBiller",
    "MailboxGateway",
    "ShopNotifier",
    "OrderLookup",
    "CredentialResolver",
    "CredentialVault",
]
