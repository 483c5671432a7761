"""Domain models for the tickets module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.tenants.models import Tenant


class TicketStatus(models.TextChoices):
    OPEN = "open", "Open"
    IN_PROGRESS = "in_progress", "In progress"
    CLOSED = "closed", "Closed"


class TicketPriority(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"


class Ticket(TimeStampedModel):
    """Escalation handed over to a human agent."""

    tenant = models.ForeignKey(Tenant, on_delete=models.PROTECT, related_name="tickets")
    conversation_ref = models.CharField(max_length=255, db_index=True)
    customer_email = models.EmailField(blank=True)
    customer_name = models.CharField(max_length=255, blank=True)
    summary = models.TextField()
    reason = models.CharField(max_length=50, default="escalation")
    transcript = models.TextField(blank=True)
    status = models.CharField(
        max_length=16, choices=TicketStatus.choices, default=TicketStatus.OPEN
    )
    priority = models.CharField(
        max_length=8, choices=TicketPriority.choices, default=TicketPriority.MEDIUM
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Ticket<{self.pk}> {self.status}"
