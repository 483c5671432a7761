"""Unit rate lookup for metered operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.core.cache import cache
from django.db.models import F, Q

from apps.llm.schemas import TokenUsage
from apps.wallets.models import PricingRule, UsageOperation

logger = logging.getLogger(__name__)

RATE_QUANT = Decimal("0.0001")
TOKENS_PER_RATE_UNIT = Decimal("1000")


def _cache_key(tenant_id: int, operation: str) -> str:
    return f"billing-rate:{tenant_id}:{operation}"


def _token_cache_key(tenant_id: int) -> str:
    return f"billing-token-rates:{tenant_id}"


def _with_markup(cost: Decimal, markup: Decimal) -> Decimal:
    return (cost * (Decimal("1") + markup / Decimal("100"))).quantize(RATE_QUANT)


@dataclass(frozen=True, slots=True)
class TokenRates:
    """Marked-up cost per 1,000 tokens of each kind."""

    prompt: Decimal
    cached: Decimal
    completion: Decimal

    def cost(self, usage: TokenUsage) -> Decimal:
        cached = min(usage.cached_tokens, usage.prompt_tokens)
        total = (
            (usage.prompt_tokens - cached) * self.prompt
            + cached * self.cached
            + usage.completion_tokens * self.completion
        )
        return (total / TOKENS_PER_RATE_UNIT).quantize(RATE_QUANT)


class RateProvider:
    """Resolve the effective unit rate for an operation.

    Lookup order is tenant ``PricingRule`` -> global ``PricingRule`` ->
    ``BILLING_DEFAULT_UNIT_COSTS``. The effective rate is the unit cost with the
    markup percentage applied. Results are cached so the ledger never has to hit
    the pricing table inside its wallet lock.

    Chat completions with reported token usage are priced from the token costs
    instead (``token_rates``), resolved the same way with
    ``BILLING_DEFAULT_TOKEN_COSTS`` as the fallback.
    """

    def __init__(self, cache_seconds: int | None = None) -> None:
        if cache_seconds is None:
            cache_seconds = getattr(settings, "BILLING_RATE_CACHE_SECONDS", 300)
        self.cache_seconds = cache_seconds

    def unit_rate(self, tenant_id: int, operation: str) -> Decimal:
        operation = UsageOperation(operation)
        key = _cache_key(tenant_id, operation.value)
        cached = cache.get(key)
        if cached is not None:
            return Decimal(cached)
        rate = self._resolve(tenant_id, operation)
        cache.set(key, str(rate), self.cache_seconds)
        return rate

    def token_rates(self, tenant_id: int) -> TokenRates:
        key = _token_cache_key(tenant_id)
        cached = cache.get(key)
        if cached is not None:
            return TokenRates(*(Decimal(value) for value in cached))
        rates = self._resolve_tokens(tenant_id)
        cache.set(key, [str(rates.prompt), str(rates.cached), str(rates.completion)], self.cache_seconds)
        return rates

    def token_cost(self, tenant_id: int, usage: TokenUsage) -> Decimal:
        return self.token_rates(tenant_id).cost(usage)

    def invalidate(self, tenant_id: int, operation: str | None = None) -> None:
        operations = [UsageOperation(operation)] if operation else list(UsageOperation)
        keys = [_cache_key(tenant_id, op.value) for op in operations]
        if UsageOperation.CHAT_COMPLETION in operations:
            keys.append(_token_cache_key(tenant_id))
        cache.delete_many(keys)

    def _rules(self, tenant_id: int, operation: UsageOperation):
        return (
            PricingRule.objects.filter(operation=operation)
            .filter(Q(tenant_id=tenant_id) | Q(tenant__isnull=True))
            .order_by(F("tenant_id").desc(nulls_last=True))
        )

    def _resolve(self, tenant_id: int, operation: UsageOperation) -> Decimal:
        rule = self._rules(tenant_id, operation).first()
        if rule is not None:
            unit_cost, markup = rule.unit_cost, rule.markup_percent
            source = "tenant" if rule.tenant_id else "global"
        else:
            defaults = getattr(settings, "BILLING_DEFAULT_UNIT_COSTS", {})
            unit_cost = Decimal(str(defaults.get(operation.value, "0")))
            markup = self._default_markup()
            source = "default"
        rate = _with_markup(unit_cost, markup)
        logger.debug(
            "billing.rate_resolved",
            extra={"tenant_id": tenant_id, "operation": operation.value, "rate": str(rate), "source": source},
        )
        return rate

    def _resolve_tokens(self, tenant_id: int) -> TokenRates:
        rule = next(
            (r for r in self._rules(tenant_id, UsageOperation.CHAT_COMPLETION) if r.has_token_costs),
            None,
        )
        if rule is not None:
            prompt, completion = rule.prompt_token_cost, rule.completion_token_cost
            cached = rule.cached_token_cost if rule.cached_token_cost is not None else prompt
            markup = rule.markup_percent
            source = "tenant" if rule.tenant_id else "global"
        else:
            defaults = getattr(settings, "BILLING_DEFAULT_TOKEN_COSTS", {})
            prompt = Decimal(str(defaults.get("prompt", "0")))
            cached = Decimal(str(defaults.get("cached", prompt)))
            completion = Decimal(str(defaults.get("completion", "0")))
            markup = self._default_markup()
            source = "default"
        rates = TokenRates(
            prompt=_with_markup(prompt, markup),
            cached=_with_markup(cached, markup),
            completion=_with_markup(completion, markup),
        )
        logger.debug(
            "billing.token_rates_resolved",
            extra={"tenant_id": tenant_id, "source": source, "completion": str(rates.completion)},
        )
        return rates

    @staticmethod
    def _default_markup() -> Decimal:
        return Decimal(str(getattr(settings, "BILLING_DEFAULT_MARKUP_PERCENT", "0")))
