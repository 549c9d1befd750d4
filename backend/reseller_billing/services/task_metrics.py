from __future__ import annotations
from dataclasses import dataclass

@dataclass
class TaskRunStats:
    scanned_resellers: int = 0
    scanned_configs: int = 0
    charged_resellers: int = 0
    charged_amount: int = 0
    suspended_resellers: int = 0
    disabled_configs: int = 0
    reenabled_configs: int = 0
    reenable_failures: int = 0
    remote_success: int = 0
    remote_skipped: int = 0
    remote_failures: int = 0
    errors: int = 0
