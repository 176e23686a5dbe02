"""Order Lookup interface (commerce platform client lives elsewhere)."""

from abc import ABC, abstractmethod
from typing import Optional

from support_pipeline.models.mail_models import CommerceCredentials
from support_pipeline.models.pipeline_models import OrderSummary


class OrderLookup(ABC):
    """
    Resolves an order summary for a customer.

    Not-found is a normal answer (None), not an error. Implementations
    should try the order number first when one is given and fall back to
    the customer's most recent order by email.
    """

    @abstractmethod
    async def find_order(
        self,
        credentials: CommerceCredentials,
        customer_email: str,
        order_number_hint: Optional[str] = None,
    ) -> Optional[OrderSummary]:
        """
        Raises:
            OrderLookupError: The commerce platform could not be queried
        """
