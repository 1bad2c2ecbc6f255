"""LLM summaries of the directions contributed for each address."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Callable

from address_registry.models import CanonicalAddress, SummaryReport, utcnow
from address_registry.store import AddressStore

logger = logging.getLogger(__name__)


def build_prompt(address: CanonicalAddress) -> str:
    descriptions = "\n\n".join(d.content for d in address.descriptions)
    return f"Summarize the following descriptions of {address.formatted_address}:\n\n{descriptions}"


class SummaryGenerator:
    """Regenerates summaries for addresses with new contributions."""

    def __init__(
        self,
        store: AddressStore,
        llm_client,
        freshness_window: timedelta = timedelta(hours=24),
        clock: Callable = utcnow,
    ):
        self.store = store
        self.llm_client = llm_client
        self.freshness_window = freshness_window
        self.clock = clock

    def needs_summary(self, address: CanonicalAddress) -> bool:
        if not address.descriptions:
            return False
        if not address.summary:
            return True
        cutoff = self.clock() - self.freshness_window
        return any(d.created_at >= cutoff for d in address.descriptions)

    async def generate_summaries(self) -> SummaryReport:
        addresses = await self.store.list_all()
        report = SummaryReport(total=len(addresses))

        for address in addresses:
            if not self.needs_summary(address):
                report.skipped.append(address.id)
                continue
            try:
                summary = await asyncio.to_thread(self.llm_client.summarize, build_prompt(address))
                if not summary:
                    raise ValueError("LLM returned an empty summary")
                updated = await self.store.set_summary(address.id, summary, self.clock())
                if updated is None:
                    # Merged away since the snapshot
                    report.skipped.append(address.id)
                    continue
                report.updated.append(address.id)
            except Exception as e:
                logger.warning("Summary generation failed for %s: %s", address.id, e)
                report.errors.append(address.id)

        logger.info("Summaries: %d updated, %d skipped, %d errors",
                    len(report.updated), len(report.skipped), len(report.errors))
        return report
