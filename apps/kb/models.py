"""Domain models for the kb module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.tenants.models import Tenant


class KnowledgeChunk(TimeStampedModel):
    """Piece of tenant knowledge retrievable by tag."""

    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, related_name="knowledge_chunks"
    )
    tag = models.CharField(max_length=100, db_index=True)
    chunk_index = models.PositiveIntegerField()
    content = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["tenant_id", "tag", "chunk_index"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "tag", "chunk_index"], name="unique_chunk_per_tag"
            ),
        ]
