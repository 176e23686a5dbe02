"""
Credential Vault interface and per-shop credential resolution.

Secrets are stored encrypted on the shop row and decrypted on demand,
once per processing attempt; plaintext is never persisted or logged.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from support_pipeline.integrations.exceptions import MissingKeyError
from support_pipeline.models.mail_models import CommerceCredentials, MailboxCredentials
from support_pipeline.persistence.tables import ShopRow

logger = structlog.get_logger(__name__)


class CredentialVault(ABC):
    """Stateless decryption of stored secrets."""

    @abstractmethod
    def decrypt(self, ciphertext: str, master_key: str) -> str:
        """
        Raises:
            VaultError: Ciphertext cannot be decrypted with this key
        """


class CredentialResolver:
    """
    Builds decrypted credential models for a shop.

    Raises MissingKeyError before touching the vault when no master key is
    configured, so a misconfigured deployment fails loudly and permanently.
    """

    def __init__(self, vault: CredentialVault, master_key: Optional[str]):
        self.vault = vault
        self.master_key = master_key

    def _decrypt(self, ciphertext: str) -> str:
        if not self.master_key:
            raise MissingKeyError("Encryption master key is not configured")
        return self.vault.decrypt(ciphertext, self.master_key)

    def mailbox_credentials(self, shop: ShopRow) -> Optional[MailboxCredentials]:
        """Decrypted IMAP/SMTP credentials, or None if the shop has no mailbox."""
        if not shop.has_mailbox:
            return None
        return MailboxCredentials(
            imap_host=shop.imap_host,
            imap_port=shop.imap_port,
            imap_user=shop.imap_user,
            imap_password=self._decrypt(shop.imap_password_encrypted),
            smtp_host=shop.smtp_host,
            smtp_port=shop.smtp_port,
            smtp_user=shop.smtp_user,
            smtp_password=self._decrypt(shop.smtp_password_encrypted),
        )

    def commerce_credentials(self, shop: ShopRow) -> Optional[CommerceCredentials]:
        """Decrypted commerce credentials, or None if the shop has no store link."""
        if not shop.has_commerce:
            return None
        return CommerceCredentials(
            shop_domain=shop.shopify_domain,
            client_id=shop.shopify_client_id,
            client_secret=self._decrypt(shop.shopify_client_secret_encrypted),
        )
