"""Models package."""

from .user import User
from .credit_balance import CreditBalance
from .credit_ledger import CreditTransaction
from .generation_request import GenerationRequest
from .rate_limit_guard import RateLimitGuard
from .payment_event import PaymentEvent
