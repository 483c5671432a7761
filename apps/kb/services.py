"""Knowledge-base store and its metered service facade."""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Iterable, List, Sequence

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Max

from apps.events.messages import UsageChargeEvent
from apps.kb.models import KnowledgeChunk
from apps.tenants.models import Tenant
from apps.wallets.metering import metered
from apps.wallets.models import UsageOperation

logger = logging.getLogger(__name__)

WORD_RE = re.compile(r"\w+")


class KnowledgeBaseUnavailable(RuntimeError):
    """The store could not serve a read or write."""


class KnowledgeBaseStore:
    """Tag-scoped chunk storage with naive keyword ranking."""

    def read(self, tenant: Tenant, tag: str, query: str, limit: int = 4) -> List[KnowledgeChunk]:
        terms = {word.lower() for word in WORD_RE.findall(query or "")}
        chunks = list(KnowledgeChunk.objects.filter(tenant=tenant, tag=tag))
        scored = []
        for chunk in chunks:
            words = {word.lower() for word in WORD_RE.findall(chunk.content)}
            overlap = len(terms & words)
            if overlap:
                scored.append((overlap, chunk))
        scored.sort(key=lambda item: (-item[0], item[1].chunk_index))
        return [chunk for _, chunk in scored[:limit]]

    def write(self, tenant: Tenant, tag: str, contents: Sequence[str]) -> List[KnowledgeChunk]:
        with transaction.atomic():
            start = (
                KnowledgeChunk.objects.filter(tenant=tenant, tag=tag)
                .aggregate(last=Max("chunk_index"))
                .get("last")
            )
            offset = 0 if start is None else start + 1
            return KnowledgeChunk.objects.bulk_create(
                KnowledgeChunk(tenant=tenant, tag=tag, chunk_index=offset + i, content=text)
                for i, text in enumerate(contents)
            )


def build_context(chunks: Iterable[KnowledgeChunk], char_budget: int | None = None) -> str:
    """Join chunk contents into a bullet list that fits ``char_budget``."""
    if char_budget is None:
        char_budget = getattr(settings, "KB_CONTEXT_CHAR_BUDGET", 1200)
    parts: List[str] = []
    running = 0
    for chunk in chunks:
        snippet = chunk.content.strip()
        if not snippet:
            continue
        if parts and running + len(snippet) > char_budget:
            break
        parts.append(f"- {snippet}")
        running += len(snippet)
    return "\n".join(parts)


class KnowledgeBaseService:
    """Every store call is paired with exactly one kb charge."""

    def __init__(self, bus, store: KnowledgeBaseStore | None = None) -> None:
        self.bus = bus
        self.store = store or KnowledgeBaseStore()

    def lookup(self, tenant: Tenant, query: str, charge: UsageChargeEvent, limit: int = 4) -> List[KnowledgeChunk]:
        """Charge ``kb-read`` and read; the charge is reversed if the read fails."""
        return metered(
            self.bus,
            charge,
            lambda: self._guarded(self.store.read, tenant, tenant.kb_tag, query, limit),
            reason="knowledge base read failed",
        )

    def ingest(
        self,
        tenant: Tenant,
        tag: str,
        contents: Sequence[str],
        idempotency_key: str,
    ) -> List[KnowledgeChunk]:
        contents = [text for text in contents if text and text.strip()]
        if not contents:
            return []
        charge = UsageChargeEvent(
            tenant_id=tenant.pk,
            operation=UsageOperation.KB_WRITE.value,
            quantity=Decimal(len(contents)),
            idempotency_key=idempotency_key,
        )
        written = metered(
            self.bus,
            charge,
            lambda: self._guarded(self.store.write, tenant, tag, contents),
            reason="knowledge base write failed",
        )
        logger.info(
            "kb.ingested",
            extra={"tenant_id": tenant.pk, "tag": tag, "chunks": len(written)},
        )
        return written

    @staticmethod
    def _guarded(operation, *args):
        try:
            return operation(*args)
        except DatabaseError as exc:
            raise KnowledgeBaseUnavailable(str(exc)) from exc
