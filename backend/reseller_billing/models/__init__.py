from reseller_billing.models.app_setting import AppSetting  # noqa: F401
from reseller_billing.models.config_event import ResellerConfigEvent  # noqa: F401
from reseller_billing.models.ledger import BillingLedgerEntry, LedgerAction  # noqa: F401
from reseller_billing.models.panel import Panel, PanelType  # noqa: F401
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType  # noqa: F401
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig  # noqa: F401
from reseller_billing.models.transaction import Transaction, TransactionStatus, TransactionType  # noqa: F401
from reseller_billing.models.usage_snapshot import ResellerUsageSnapshot  # noqa: F401
