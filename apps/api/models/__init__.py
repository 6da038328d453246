"""Models package."""

from .user import User
from .credit_wallet import CreditWallet
from .credit_ledger import CreditLedger
from .pricing_rule import PricingRule
from .allowance_usage import AllowanceUsage
from .credit_usage_event import CreditUsageEvent
from .subscription import Subscription
from .topup_purchase import TopupPurchase
