# Core utilities: cron evaluation and logging setup

from ispbill_core.core.cron import CronExpression
from ispbill_core.core.logging import LogFormat, configure_logging

__all__ = [
    "CronExpression",
    "LogFormat",
    "configure_logging",
]
