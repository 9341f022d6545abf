"""
Lightning-style wallet with mock invoice issuance and settlement.

Real implementation would create BOLT11 invoices on the node and look up the
payment hash on each status check. We simulate both sides of the ledger:
invoices settle after a random delay (the payer's wallet already shows them
paid earlier, which is what optimistic processing bets on), expire after a
fixed window, and status lookups fail at ``MOCK_FAILURE_RATE``.
"""
from __future__ import annotations

import hashlib
import random
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from paygate.config import MOCK_FAILURE_RATE
from paygate.integrations.base import CheckError, Invoice, InvoiceError, PaymentCheck
from paygate.models.db.enums import PaymentStatus
from paygate.utils import get_logger
from paygate.utils.time import Clock, utc_now

logger = get_logger(__name__)


@dataclass
class MockInvoiceRecord:
    payment_hash: str
    encoded: str
    amount_units: int
    memo: str
    issued_at: datetime
    settles_at: Optional[datetime]
    expires_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    # When the invoice left PENDING; drives pruning
    resolved_at: Optional[datetime] = None

    def resolve(self, status: PaymentStatus, now: datetime) -> None:
        self.status = status
        self.resolved_at = now


class MockLightningWallet:
    """Invoice issuer and payment status checker backed by process memory."""

    def __init__(
        self,
        *,
        failure_rate: float | None = None,
        settle_after_seconds: tuple[float, float] | None = (10.0, 40.0),
        expiry_seconds: float = 3600.0,
        retention_seconds: float = 600.0,
        clock: Clock = utc_now,
    ) -> None:
        self.failure_rate = MOCK_FAILURE_RATE if failure_rate is None else failure_rate
        self.settle_after_seconds = settle_after_seconds
        self.expiry_seconds = expiry_seconds
        self.retention = timedelta(seconds=retention_seconds)
        self._clock = clock
        self._invoices: Dict[str, MockInvoiceRecord] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("integration.mock_wallet")

    def issue_invoice(self, amount_units: int, memo: str) -> Invoice:
        if amount_units <= 0:
            raise InvoiceError("Invoice amount must be positive", context={"amount_units": amount_units})
        if random.random() < self.failure_rate:
            self.logger.warning("Simulated invoice creation failure", amount_units=amount_units)
            raise InvoiceError("Simulated wallet failure while creating invoice")

        preimage = secrets.token_bytes(32)
        payment_hash = hashlib.sha256(preimage).hexdigest()
        now = self._clock()
        settles_at = None
        if self.settle_after_seconds is not None:
            low, high = self.settle_after_seconds
            settles_at = now + timedelta(seconds=random.uniform(low, high))
        record = MockInvoiceRecord(
            payment_hash=payment_hash,
            encoded=f"lnbcrt{amount_units}n1p{payment_hash[:40]}",
            amount_units=amount_units,
            memo=memo,
            issued_at=now,
            settles_at=settles_at,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
        )
        with self._lock:
            self._prune(now)
            self._invoices[payment_hash] = record
        self.logger.info("Invoice issued (mock)", payment_hash=payment_hash[:12], amount_units=amount_units)
        return Invoice(payment_reference=payment_hash, renderable_invoice=record.encoded, amount_units=amount_units)

    def check_status(self, payment_reference: str) -> PaymentCheck:
        if random.random() < self.failure_rate:
            raise CheckError("Simulated wallet failure while checking invoice", context={"payment_reference": payment_reference[:12]})
        now = self._clock()
        with self._lock:
            record = self._invoices.get(payment_reference)
            if record is None:
                raise CheckError("Unknown payment reference", context={"payment_reference": payment_reference[:12]})
            if record.status == PaymentStatus.PENDING:
                if record.settles_at is not None and now >= record.settles_at:
                    record.resolve(PaymentStatus.PAID, now)
                elif now >= record.expires_at:
                    record.resolve(PaymentStatus.EXPIRED, now)
            status = record.status
            amount = record.amount_units if status == PaymentStatus.PAID else None
        return PaymentCheck(status=status, amount_paid=amount)

    def _prune(self, now: datetime) -> None:
        """Drop invoices resolved longer than ``retention`` ago. Caller holds the lock."""
        stale = [
            ref for ref, rec in self._invoices.items()
            if rec.resolved_at is not None and now - rec.resolved_at >= self.retention
        ]
        for ref in stale:
            del self._invoices[ref]
        if stale:
            self.logger.debug("Pruned resolved invoices", count=len(stale))

    # ----------------------------- simulation hooks ----------------------------- #
    def mark_paid(self, payment_reference: str) -> None:
        with self._lock:
            self._invoices[payment_reference].resolve(PaymentStatus.PAID, self._clock())

    def mark_expired(self, payment_reference: str) -> None:
        with self._lock:
            self._invoices[payment_reference].resolve(PaymentStatus.EXPIRED, self._clock())

    def invoice_count(self) -> int:
        with self._lock:
            return len(self._invoices)


__all__ = ["MockLightningWallet", "MockInvoiceRecord"]
