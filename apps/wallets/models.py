"""Domain models for the wallets module."""

from decimal import Decimal

from django.db import models
from django.db.models import Q

from apps.common.models import AppendOnlyModel, TimeStampedModel
from apps.tenants.models import Tenant


class UsageOperation(models.TextChoices):
    """Units of paid work metered against a tenant wallet."""

    CHAT_COMPLETION = "chat-completion", "Chat completion"
    SPEECH_TO_TEXT = "speech-to-text", "Speech to text"
    KB_READ = "knowledge-base-read", "Knowledge base read"
    KB_WRITE = "knowledge-base-write", "Knowledge base write"


class TransactionCategory(models.TextChoices):
    """Ledger entry categories; charges are debits, everything else credits."""

    CHAT_COMPLETION = "chat-completion", "Chat completion"
    SPEECH_TO_TEXT = "speech-to-text", "Speech to text"
    KNOWLEDGE_BASE_READ = "knowledge-base-read", "Knowledge base read"
    KNOWLEDGE_BASE_WRITE = "knowledge-base-write", "Knowledge base write"
    TOKEN_ROLLBACK = "token-rollback", "Token rollback"
    TOKEN_TOPUP = "token-topup", "Token top-up"
    MANUAL_ROLLBACK = "manual-rollback", "Manual rollback"
    DISPUTE_RESOLUTION = "dispute-resolution", "Dispute resolution"


CHARGE_CATEGORIES = frozenset(
    {
        TransactionCategory.CHAT_COMPLETION,
        TransactionCategory.SPEECH_TO_TEXT,
        TransactionCategory.KNOWLEDGE_BASE_READ,
        TransactionCategory.KNOWLEDGE_BASE_WRITE,
    }
)


class Wallet(TimeStampedModel):
    """Prepaid balance for a tenant. Only the usage ledger writes ``balance``."""

    tenant = models.OneToOneField(Tenant, on_delete=models.CASCADE, related_name="wallet")
    balance = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("0"))
    is_locked = models.BooleanField(default=False)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(balance__gte=0), name="wallet_balance_non_negative"
            ),
        ]

    def __str__(self) -> str:
        return f"Wallet<{self.tenant_id}> {self.balance}"


class WalletTransaction(AppendOnlyModel):
    """Immutable ledger entry; the signed amounts sum to the wallet balance."""

    wallet = models.ForeignKey(Wallet, on_delete=models.PROTECT, related_name="transactions")
    category = models.CharField(max_length=32, choices=TransactionCategory.choices)
    amount = models.DecimalField(max_digits=14, decimal_places=4)
    quantity = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("0"))
    unit_rate = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("0"))
    description = models.CharField(max_length=255, blank=True)
    idempotency_key = models.CharField(max_length=255, unique=True)
    rollback_of = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversal",
    )
    conversation_ref = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [models.Index(fields=["wallet", "category"])]

    @property
    def is_charge(self) -> bool:
        return self.category in CHARGE_CATEGORIES


class PricingRule(TimeStampedModel):
    """Unit cost and markup per operation; a tenant row overrides the global one."""

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="pricing_rules",
    )
    operation = models.CharField(max_length=32, choices=UsageOperation.choices)
    unit_cost = models.DecimalField(max_digits=14, decimal_places=4)
    markup_percent = models.DecimalField(max_digits=6, decimal_places=2, default=Decimal("0"))
    # Per 1,000 tokens; only chat-completion rules use them.
    prompt_token_cost = models.DecimalField(max_digits=14, decimal_places=4, null=True, blank=True)
    cached_token_cost = models.DecimalField(max_digits=14, decimal_places=4, null=True, blank=True)
    completion_token_cost = models.DecimalField(max_digits=14, decimal_places=4, null=True, blank=True)

    @property
    def has_token_costs(self) -> bool:
        return self.prompt_token_cost is not None and self.completion_token_cost is not None

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "operation"], name="unique_pricing_rule"),
        ]
