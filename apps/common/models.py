from django.db import models


class TimeStampedModel(models.Model):
    """Abstract base model with created/updated tracking."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class SoftDeletableModel(TimeStampedModel):
    """Provide soft delete semantics while keeping history."""

    is_active = models.BooleanField(default=True)

    class Meta:
        abstract = True


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to rewrite or delete an append-only record."""


class AppendOnlyModel(models.Model):
    """Rows are written once; updates and deletes are refused."""

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if self.pk is not None and not kwargs.get("force_insert"):
            raise ImmutableRecordError(f"{type(self).__name__} rows are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(f"{type(self).__name__} rows are append-only")
