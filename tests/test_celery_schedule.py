from datetime import timedelta
from decimal import Decimal

import pytest
from django.conf import settings

from apps.wallets.models import Wallet
from apps.workers.tasks import reconcile_wallet_ledgers


def test_reconcile_schedule_registered():
    schedule = settings.CELERY_BEAT_SCHEDULE
    assert "reconcile-wallet-ledgers" in schedule
    entry = schedule["reconcile-wallet-ledgers"]
    assert entry["task"] == "apps.workers.tasks.reconcile_wallet_ledgers"
    assert isinstance(entry["schedule"], timedelta)
    assert entry["schedule"].total_seconds() == settings.CELERY_RECONCILE_WALLETS_SECONDS


@pytest.mark.django_db
def test_reconcile_locks_drifted_wallets(tenant, ledger, funded_wallet):
    assert reconcile_wallet_ledgers.run() == 0

    Wallet.objects.filter(pk=funded_wallet.pk).update(balance=Decimal("250"))

    assert reconcile_wallet_ledgers.run() == 1
    funded_wallet.refresh_from_db()
    assert funded_wallet.is_locked
    # locked wallets are skipped on the next sweep
    assert reconcile_wallet_ledgers.run() == 0
