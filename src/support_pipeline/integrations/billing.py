"""Extra package billing hook (payment provider integration lives elsewhere)."""

from abc import ABC, abstractmethod


class ExtraPackageBiller(ABC):
    """
    Charges a user for an extra package of email credits.

    Called fire-and-forget by the admission controller once enough
    over-quota messages have accumulated. A successful charge is expected
    to raise the user's quota through the billing webhook, after which
    the pending-credits sweep re-enqueues the parked messages.
    """

    @abstractmethod
    async def charge(self, user_id: str, package_size: int) -> None:
        """
        Raises:
            BillingError: The charge could not be created
        """
