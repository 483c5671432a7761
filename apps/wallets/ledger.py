"""Usage ledger: the only writer of wallet balances.

Every balance mutation happens inside ``transaction.atomic()`` with the wallet
row held by ``select_for_update()``, and the debit itself is a conditional
``UPDATE ... WHERE balance >= amount AND NOT is_locked`` so two racing charges
can never both spend the same funds. The transaction row is inserted in the same
database transaction as the balance change, so the log and the cached balance
cannot drift apart on failure.

The row lock is taken with NOWAIT and retried until ``lock_timeout``; a wallet
that stays contended past it raises ``WalletBusy`` instead of blocking the
caller indefinitely.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.db import OperationalError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from apps.events.bus import Binding, Delivery
from apps.events.messages import (
    NotificationEvent,
    Topic,
    UsageChargeEvent,
    UsageRollbackEvent,
)
from apps.llm.schemas import TokenUsage
from apps.wallets.models import (
    CHARGE_CATEGORIES,
    TransactionCategory,
    UsageOperation,
    Wallet,
    WalletTransaction,
)
from apps.wallets.rates import TOKENS_PER_RATE_UNIT, RateProvider

logger = logging.getLogger(__name__)

AMOUNT_QUANT = Decimal("0.0001")


class LedgerError(RuntimeError):
    """Base class for ledger failures."""


class InsufficientFunds(LedgerError):
    def __init__(self, tenant_id: int, required: Decimal, available: Decimal) -> None:
        super().__init__(f"Tenant {tenant_id} needs {required}, has {available}")
        self.tenant_id = tenant_id
        self.required = required
        self.available = available


class WalletLocked(LedgerError):
    def __init__(self, tenant_id: int) -> None:
        super().__init__(f"Wallet for tenant {tenant_id} is locked")
        self.tenant_id = tenant_id


class WalletBusy(LedgerError):
    """The wallet row stayed locked by another writer past the lock timeout."""

    def __init__(self, tenant_id: int) -> None:
        super().__init__(f"Wallet for tenant {tenant_id} is busy")
        self.tenant_id = tenant_id


class IdempotencyConflict(LedgerError):
    """The idempotency key is already recorded against another wallet."""


class ChargeNotFound(LedgerError):
    pass


class AlreadyRolledBack(LedgerError):
    pass


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    balance: Decimal
    amount: Decimal
    transaction_id: int
    idempotency_key: str
    replayed: bool = False


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    tenant_id: int
    balance: Decimal
    ledger_total: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


class UsageLedger:
    """Atomic charge, rollback and credit operations over tenant wallets."""

    def __init__(
        self,
        rates: RateProvider | None = None,
        publisher=None,
        lock_timeout: float | None = None,
    ) -> None:
        self.rates = rates or RateProvider()
        self.publisher = publisher
        if lock_timeout is None:
            lock_timeout = float(getattr(settings, "BILLING_WALLET_LOCK_TIMEOUT_SECONDS", 5))
        self.lock_timeout = lock_timeout
        self.lock_retry_interval = 0.05

    def subscriptions(self) -> tuple[Binding, ...]:
        return (
            Binding(Topic.USAGE_CHARGE, self.handle_charge, Delivery.SYNC),
            Binding(Topic.USAGE_ROLLBACK, self.handle_rollback, Delivery.SYNC),
        )

    def handle_charge(self, event: UsageChargeEvent) -> LedgerReceipt:
        return self.charge(
            event.tenant_id,
            event.operation,
            event.quantity,
            event.idempotency_key,
            conversation_ref=event.conversation_ref,
            usage=event.usage,
        )

    def handle_rollback(self, event: UsageRollbackEvent) -> LedgerReceipt:
        return self.rollback(event.tenant_id, event.idempotency_key, reason=event.reason)

    # Wallet state -------------------------------------------------------

    def get_or_create_wallet(self, tenant_id: int) -> Wallet:
        wallet, _ = Wallet.objects.get_or_create(tenant_id=tenant_id)
        return wallet

    def balance(self, tenant_id: int) -> Decimal:
        return self.get_or_create_wallet(tenant_id).balance

    def can_deduct(self, tenant_id: int, amount: Decimal) -> bool:
        wallet = self.get_or_create_wallet(tenant_id)
        return not wallet.is_locked and wallet.balance >= Decimal(amount)

    def lock_wallet(self, tenant_id: int, reason: str = "") -> None:
        self._set_locked(tenant_id, True, reason)

    def unlock_wallet(self, tenant_id: int, reason: str = "") -> None:
        self._set_locked(tenant_id, False, reason)

    def _set_locked(self, tenant_id: int, locked: bool, reason: str) -> None:
        with transaction.atomic():
            wallet = self._locked_wallet(tenant_id)
            Wallet.objects.filter(pk=wallet.pk).update(is_locked=locked, updated_at=timezone.now())
        logger.warning(
            "ledger.wallet_locked" if locked else "ledger.wallet_unlocked",
            extra={"tenant_id": tenant_id, "reason": reason},
        )

    # Debits -------------------------------------------------------------

    def charge(
        self,
        tenant_id: int,
        operation: str,
        quantity: Decimal | int,
        idempotency_key: str,
        *,
        conversation_ref: str = "",
        metadata: dict | None = None,
        usage: TokenUsage | None = None,
    ) -> LedgerReceipt:
        """Debit ``quantity`` units of ``operation``; all or nothing.

        A chat completion with reported ``usage`` is billed per token instead:
        the entry's quantity is the token count and its unit rate the
        effective cost per 1,000 tokens.

        Replaying an idempotency key returns the first receipt with
        ``replayed=True`` and leaves the wallet untouched.
        """
        operation = UsageOperation(operation)
        quantity = Decimal(quantity)
        if quantity <= 0:
            raise ValueError("Charge quantity must be positive")
        metadata = dict(metadata or {})
        if operation == UsageOperation.CHAT_COMPLETION and usage is not None and usage.reported:
            amount = self.rates.token_cost(tenant_id, usage)
            quantity = Decimal(usage.prompt_tokens + usage.completion_tokens)
            unit_rate = (amount * TOKENS_PER_RATE_UNIT / quantity).quantize(AMOUNT_QUANT)
            metadata["tokens"] = usage.as_dict()
            description = f"{operation.label} x {quantity} tokens"
        else:
            unit_rate = self.rates.unit_rate(tenant_id, operation)
            amount = (quantity * unit_rate).quantize(AMOUNT_QUANT)
            description = f"{operation.label} x {quantity}"

        with transaction.atomic():
            wallet = self._locked_wallet(tenant_id)
            existing = self._existing_entry(wallet, idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger.charge_replayed",
                    extra={"tenant_id": tenant_id, "idempotency_key": idempotency_key},
                )
                return LedgerReceipt(
                    balance=wallet.balance,
                    amount=-existing.amount,
                    transaction_id=existing.pk,
                    idempotency_key=idempotency_key,
                    replayed=True,
                )
            if wallet.is_locked:
                logger.warning(
                    "ledger.charge_rejected",
                    extra={"tenant_id": tenant_id, "reason": "wallet_locked", "operation": operation.value},
                )
                raise WalletLocked(tenant_id)
            if wallet.balance < amount:
                logger.warning(
                    "ledger.charge_rejected",
                    extra={
                        "tenant_id": tenant_id,
                        "reason": "insufficient_funds",
                        "operation": operation.value,
                        "amount": str(amount),
                        "balance": str(wallet.balance),
                    },
                )
                raise InsufficientFunds(tenant_id, amount, wallet.balance)

            entry = WalletTransaction.objects.create(
                wallet=wallet,
                category=operation.value,
                amount=-amount,
                quantity=quantity,
                unit_rate=unit_rate,
                description=description,
                idempotency_key=idempotency_key,
                conversation_ref=conversation_ref,
                metadata=metadata,
            )
            updated = Wallet.objects.filter(
                pk=wallet.pk, is_locked=False, balance__gte=amount
            ).update(balance=F("balance") - amount, updated_at=timezone.now())
            if not updated:
                # Raising inside atomic() discards the transaction row as well.
                raise InsufficientFunds(tenant_id, amount, wallet.balance)
            wallet.refresh_from_db(fields=["balance"])

        logger.info(
            "ledger.charged",
            extra={
                "tenant_id": tenant_id,
                "operation": operation.value,
                "amount": str(amount),
                "balance": str(wallet.balance),
                "idempotency_key": idempotency_key,
            },
        )
        receipt = LedgerReceipt(
            balance=wallet.balance,
            amount=amount,
            transaction_id=entry.pk,
            idempotency_key=idempotency_key,
        )
        self._warn_if_low(tenant_id, receipt)
        return receipt

    # Credits ------------------------------------------------------------

    def rollback(self, tenant_id: int, original_key: str, *, reason: str = "") -> LedgerReceipt:
        """Credit back exactly what the charge under ``original_key`` took."""
        return self._reverse(tenant_id, original_key, TransactionCategory.TOKEN_ROLLBACK, reason)

    def manual_rollback(self, tenant_id: int, original_key: str, *, reason: str = "") -> LedgerReceipt:
        """Operator-initiated reversal of a charge, logged as a manual rollback."""
        return self._reverse(tenant_id, original_key, TransactionCategory.MANUAL_ROLLBACK, reason)

    def top_up(self, tenant_id: int, amount: Decimal, idempotency_key: str, *, description: str = "") -> LedgerReceipt:
        return self._credit(
            tenant_id,
            TransactionCategory.TOKEN_TOPUP,
            amount,
            idempotency_key,
            description=description or "Balance top-up",
        )

    def dispute_resolution(
        self,
        tenant_id: int,
        amount: Decimal,
        idempotency_key: str,
        *,
        description: str = "",
    ) -> LedgerReceipt:
        return self._credit(
            tenant_id,
            TransactionCategory.DISPUTE_RESOLUTION,
            amount,
            idempotency_key,
            description=description or "Dispute resolution credit",
        )

    def _reverse(self, tenant_id: int, original_key: str, category: str, reason: str) -> LedgerReceipt:
        with transaction.atomic():
            wallet = self._locked_wallet(tenant_id)
            charge = (
                WalletTransaction.objects.filter(
                    wallet=wallet,
                    idempotency_key=original_key,
                    category__in=CHARGE_CATEGORIES,
                )
                .select_related("reversal")
                .first()
            )
            if charge is None:
                raise ChargeNotFound(f"No charge {original_key!r} for tenant {tenant_id}")
            if hasattr(charge, "reversal"):
                logger.info(
                    "ledger.rollback_ignored",
                    extra={"tenant_id": tenant_id, "idempotency_key": original_key},
                )
                raise AlreadyRolledBack(f"Charge {original_key!r} is already reversed")
            credit = -charge.amount
            entry = WalletTransaction.objects.create(
                wallet=wallet,
                category=category,
                amount=credit,
                quantity=charge.quantity,
                unit_rate=charge.unit_rate,
                description=reason or f"Reversal of {charge.get_category_display()}",
                idempotency_key=f"{category}:{original_key}",
                rollback_of=charge,
                conversation_ref=charge.conversation_ref,
            )
            Wallet.objects.filter(pk=wallet.pk).update(
                balance=F("balance") + credit, updated_at=timezone.now()
            )
            wallet.refresh_from_db(fields=["balance"])
        logger.info(
            "ledger.rolled_back",
            extra={
                "tenant_id": tenant_id,
                "category": category,
                "amount": str(credit),
                "idempotency_key": original_key,
                "reason": reason,
            },
        )
        return LedgerReceipt(
            balance=wallet.balance,
            amount=credit,
            transaction_id=entry.pk,
            idempotency_key=entry.idempotency_key,
        )

    def _credit(
        self,
        tenant_id: int,
        category: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        description: str,
    ) -> LedgerReceipt:
        amount = Decimal(amount).quantize(AMOUNT_QUANT)
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        with transaction.atomic():
            wallet = self._locked_wallet(tenant_id)
            existing = self._existing_entry(wallet, idempotency_key)
            if existing is not None:
                return LedgerReceipt(
                    balance=wallet.balance,
                    amount=existing.amount,
                    transaction_id=existing.pk,
                    idempotency_key=idempotency_key,
                    replayed=True,
                )
            entry = WalletTransaction.objects.create(
                wallet=wallet,
                category=category,
                amount=amount,
                description=description,
                idempotency_key=idempotency_key,
            )
            Wallet.objects.filter(pk=wallet.pk).update(
                balance=F("balance") + amount, updated_at=timezone.now()
            )
            wallet.refresh_from_db(fields=["balance"])
        logger.info(
            "ledger.credited",
            extra={"tenant_id": tenant_id, "category": category, "amount": str(amount)},
        )
        return LedgerReceipt(
            balance=wallet.balance,
            amount=amount,
            transaction_id=entry.pk,
            idempotency_key=idempotency_key,
        )

    # Consistency --------------------------------------------------------

    def reconcile(self, tenant_id: int) -> ReconciliationReport:
        with transaction.atomic():
            wallet = self._locked_wallet(tenant_id)
            total = wallet.transactions.aggregate(total=Sum("amount"))["total"] or Decimal("0")
        report = ReconciliationReport(tenant_id=tenant_id, balance=wallet.balance, ledger_total=total)
        if not report.consistent:
            logger.error(
                "ledger.reconcile_mismatch",
                extra={"tenant_id": tenant_id, "balance": str(wallet.balance), "ledger_total": str(total)},
            )
        return report

    def _existing_entry(self, wallet: Wallet, idempotency_key: str) -> WalletTransaction | None:
        # Keys are unique across all wallets; only a match on this wallet is a replay.
        existing = WalletTransaction.objects.filter(idempotency_key=idempotency_key).first()
        if existing is not None and existing.wallet_id != wallet.pk:
            logger.error(
                "ledger.idempotency_conflict",
                extra={"tenant_id": wallet.tenant_id, "idempotency_key": idempotency_key},
            )
            raise IdempotencyConflict(
                f"Idempotency key {idempotency_key!r} belongs to another wallet"
            )
        return existing

    def _locked_wallet(self, tenant_id: int) -> Wallet:
        """Row-lock the tenant wallet, waiting at most ``lock_timeout`` seconds."""
        Wallet.objects.get_or_create(tenant_id=tenant_id)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                # A savepoint keeps a failed NOWAIT from aborting the caller's transaction.
                with transaction.atomic():
                    return Wallet.objects.select_for_update(nowait=True).get(tenant_id=tenant_id)
            except OperationalError:
                if time.monotonic() >= deadline:
                    logger.warning(
                        "ledger.wallet_busy",
                        extra={"tenant_id": tenant_id, "timeout": self.lock_timeout},
                    )
                    raise WalletBusy(tenant_id)
                time.sleep(self.lock_retry_interval)

    def _warn_if_low(self, tenant_id: int, receipt: LedgerReceipt) -> None:
        if self.publisher is None:
            return
        threshold = Decimal(str(getattr(settings, "BILLING_LOW_BALANCE_THRESHOLD", "0")))
        # Only notify on the charge that crosses the threshold.
        if receipt.balance < threshold <= receipt.balance + receipt.amount:
            self.publisher.publish(
                Topic.NOTIFICATION,
                NotificationEvent(
                    tenant_id=tenant_id,
                    kind="wallet.low_balance",
                    title="Wallet balance is running low",
                    body=f"Remaining balance: {receipt.balance}",
                    payload={"balance": str(receipt.balance), "threshold": str(threshold)},
                ),
            )
