"""Domain models for the llm module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.tenants.models import Tenant


class LLMRequestLog(TimeStampedModel):
    """Persists outbound interpreter calls for audit and usage accounting."""

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="llm_requests",
    )
    conversation_ref = models.CharField(max_length=255, blank=True)
    model = models.CharField(max_length=100)
    schema_name = models.CharField(max_length=50)
    prompt = models.TextField()
    response = models.TextField(blank=True)
    response_metadata = models.JSONField(default=dict, blank=True)
    success = models.BooleanField(default=True)
    error_code = models.CharField(max_length=50, blank=True)
    latency_ms = models.PositiveIntegerField(default=0)
    prompt_tokens = models.PositiveIntegerField(default=0)
    completion_tokens = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
