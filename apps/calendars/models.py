"""Domain models for the calendars module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.common.security import is_sealed, open_secret, seal_secret
from apps.tenants.models import Tenant


class CalendarCredential(TimeStampedModel):
    """Access token for the tenant's booking calendar, sealed at rest."""

    tenant = models.OneToOneField(
        Tenant, on_delete=models.CASCADE, related_name="calendar_credential"
    )
    provider = models.CharField(max_length=50, default="google")
    access_token = models.TextField()
    calendar_id = models.CharField(max_length=255, default="primary")
    last_error = models.TextField(blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)

    def __str__(self) -> str:
        return f"{self.provider}:{self.calendar_id} ({self.tenant_id})"

    def save(self, *args, **kwargs):
        if self.access_token and not is_sealed(self.access_token):
            self.access_token = seal_secret(self.access_token)
        super().save(*args, **kwargs)

    def get_access_token(self) -> str:
        return open_secret(self.access_token)
