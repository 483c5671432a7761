"""Domain models for the appointments module."""

from datetime import timedelta

from django.db import models

from apps.common.models import TimeStampedModel
from apps.tenants.models import Tenant


class AppointmentStatus(models.TextChoices):
    """Possible lifecycle states for an appointment."""

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLED = "cancelled", "Cancelled"
    COMPLETED = "completed", "Completed"


class AppointmentSyncState(models.TextChoices):
    """Synchronisation state for external calendar integration."""

    OK = "ok", "OK"
    TENTATIVE = "tentative", "Tentative"
    FAILED = "failed", "Failed"


class Appointment(TimeStampedModel):
    """Booking produced by a completed slot-filling dialog. Never deleted."""

    tenant = models.ForeignKey(
        Tenant, on_delete=models.PROTECT, related_name="appointments"
    )
    conversation_ref = models.CharField(max_length=255, db_index=True)
    customer_email = models.EmailField()
    customer_name = models.CharField(max_length=255)
    customer_phone = models.CharField(max_length=32)
    scheduled_for = models.DateTimeField()
    duration_minutes = models.PositiveIntegerField(default=30)
    status = models.CharField(
        max_length=16,
        choices=AppointmentStatus.choices,
        default=AppointmentStatus.PENDING,
    )
    sync_state = models.CharField(
        max_length=16,
        choices=AppointmentSyncState.choices,
        default=AppointmentSyncState.TENTATIVE,
    )
    provider_appointment_id = models.CharField(max_length=255, blank=True)
    last_error = models.TextField(blank=True)

    class Meta:
        ordering = ["scheduled_for"]

    @property
    def ends_at(self):
        return self.scheduled_for + timedelta(minutes=self.duration_minutes)

    def __str__(self) -> str:
        return f"Appointment<{self.pk}> {self.customer_name} @ {self.scheduled_for:%Y-%m-%d %H:%M}"
