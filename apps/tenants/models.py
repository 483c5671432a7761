"""Domain models for the tenants module."""

from django.db import models

from apps.common.models import SoftDeletableModel


class Tenant(SoftDeletableModel):
    """A business account whose agents and wallet are isolated from others."""

    name = models.CharField(max_length=255)
    slug = models.SlugField(unique=True)
    timezone = models.CharField(max_length=64, default="UTC")
    kb_tag = models.CharField(max_length=100, blank=True)
    welcome_message = models.TextField(blank=True)
    notification_webhook_url = models.URLField(blank=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name
