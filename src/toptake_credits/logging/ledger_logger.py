from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.credits import CreditType
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured ledger logger that writes to the database and a file.

    DB logging uses the `LedgerEntry` model and joins the caller's open
    transaction, so a rolled-back mutation leaves no ledger line behind.
    File logging is append-only, line-delimited JSON for log aggregators;
    a failed file write is reported through the module logger and does not
    fail the credit operation.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        credit_type: Optional[CreditType] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.TRANSACTION,
            user_id=user_id,
            credit_type=credit_type,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_rejected(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        credit_type: Optional[CreditType] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.REJECTED,
            user_id=user_id,
            credit_type=credit_type,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        logger.error("%s: %s", message, details)
        await self._log(
            LedgerEventType.ERROR,
            user_id=user_id,
            credit_type=None,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> None:
        await self._log(
            LedgerEventType.SYSTEM,
            user_id=None,
            credit_type=None,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        credit_type: Optional[CreditType],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            credit_type=credit_type,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_ledger_entry(entry)

        if self._file_path is None:
            return
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Could not append to ledger file %s", self._file_path, exc_info=True)
