# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .services import BillingProvider, ProviderSubscription

__all__ = [
    "BillingProvider",
    "ProviderSubscription",
]
