from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    ledger: Any
    notifications: Any

T = Tables(
    ledger=ddb.Table(S.ledger_table_name),
    notifications=ddb.Table(S.notifications_table_name),
)
