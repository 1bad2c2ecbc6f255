"""Batch job that merges near-duplicate canonical addresses.

A pass snapshots the whole collection, groups records that sit close together
and read alike, folds each group into its most complete member and deletes the
rest. Clusters are merged independently: one failing merge is reported and the
pass moves on. Re-running a pass over already merged data changes nothing.

Pairwise comparison is O(n^2); fine for the current collection size, a larger
one would bucket by geohash prefix before comparing.
"""
import logging
from typing import Callable, Sequence

from address_registry.geo import DEFAULT_GEOHASH_PRECISION, distance_meters, encode_geohash
from address_registry.models import (
    Alias,
    CanonicalAddress,
    Description,
    MergeError,
    MergeLogEntry,
    OptimizationReport,
    utcnow,
)
from address_registry.scoring import completeness, confidence, merged_confidence
from address_registry.similarity import jaccard_word_similarity
from address_registry.store import AddressStore

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_DISTANCE_METERS = 50.0
DEFAULT_SIMILARITY_THRESHOLD = 0.85

WEIGHT_PROXIMITY = 0.7
WEIGHT_TEXT = 0.3
PROXIMITY_FALLOFF_METERS = 1000.0


class AddressOptimizer:
    """Finds and merges duplicate clusters across the address collection."""

    def __init__(
        self,
        store: AddressStore,
        cluster_distance_m: float = DEFAULT_CLUSTER_DISTANCE_METERS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        geohash_precision: int = DEFAULT_GEOHASH_PRECISION,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.cluster_distance_m = cluster_distance_m
        self.similarity_threshold = similarity_threshold
        self.geohash_precision = geohash_precision
        self.clock = clock

    def pair_similarity(self, a: CanonicalAddress, b: CanonicalAddress) -> float:
        """Blend of closeness and wording. 0.0 for pairs beyond the cluster distance."""
        distance = distance_meters(a.location, b.location)
        if distance > self.cluster_distance_m:
            return 0.0
        proximity = max(0.0, 1 - distance / PROXIMITY_FALLOFF_METERS)
        text = jaccard_word_similarity(a.formatted_address, b.formatted_address)
        return WEIGHT_PROXIMITY * proximity + WEIGHT_TEXT * text

    def find_clusters(self, addresses: Sequence[CanonicalAddress]) -> list[list[CanonicalAddress]]:
        """Group duplicates; each unassigned record seeds a cluster of its matches.

        Only clusters with more than one member are returned.
        """
        clusters = []
        assigned: set[str] = set()

        for i, seed in enumerate(addresses):
            if seed.id in assigned:
                continue
            cluster = [seed]
            assigned.add(seed.id)

            for other in addresses[i + 1:]:
                if other.id in assigned:
                    continue
                if self.pair_similarity(seed, other) >= self.similarity_threshold:
                    cluster.append(other)
                    assigned.add(other.id)

            if len(cluster) > 1:
                clusters.append(cluster)

        return clusters

    @staticmethod
    def select_primary(cluster: Sequence[CanonicalAddress]) -> CanonicalAddress:
        """Most complete record; the earliest in the cluster wins ties."""
        best = cluster[0]
        best_score = completeness(best)
        for candidate in cluster[1:]:
            score = completeness(candidate)
            if score > best_score:
                best, best_score = candidate, score
        return best

    def merge_cluster(self, cluster: Sequence[CanonicalAddress]) -> CanonicalAddress:
        """Build the surviving record for a cluster without touching the store."""
        primary = self.select_primary(cluster)
        ordered = [primary] + [a for a in cluster if a.id != primary.id]

        aliases: dict[str, Alias] = {}
        for address in ordered:
            for alias in address.aliases:
                current = aliases.get(alias.raw_text)
                if current is None or alias.matched_at < current.matched_at:
                    aliases[alias.raw_text] = Alias(alias.raw_text, alias.matched_at)

        descriptions: dict[str, Description] = {}
        for address in ordered:
            for description in address.descriptions:
                if description.content not in descriptions:
                    descriptions[description.content] = description

        summary = primary.summary or next((a.summary for a in ordered if a.summary), "")

        merged = CanonicalAddress(
            id=primary.id,
            formatted_address=primary.formatted_address,
            location=primary.location,
            geohash=encode_geohash(primary.location, self.geohash_precision),
            aliases=sorted(aliases.values(), key=lambda a: a.matched_at),
            descriptions=sorted(descriptions.values(), key=lambda d: d.created_at),
            summary=summary,
            created_at=min(a.created_at for a in cluster),
            updated_at=self.clock(),
        )
        # Never below what the refresh rule gives the merged record
        merged.confidence = max(merged_confidence(cluster), confidence(merged))
        return merged

    async def run_optimization_pass(self) -> OptimizationReport:
        report = OptimizationReport(started_at=self.clock())
        addresses = await self.store.list_all()
        report.total_records = len(addresses)

        clusters = self.find_clusters(addresses)
        report.clusters_found = len(clusters)
        logger.info("Optimization pass: %d records, %d duplicate clusters",
                    len(addresses), len(clusters))

        clustered_ids = set()
        for cluster in clusters:
            clustered_ids.update(a.id for a in cluster)
            try:
                deleted = await self._apply_merge(cluster)
            except Exception as e:
                ids = [a.id for a in cluster]
                logger.exception("Merging cluster %s failed", ids)
                report.errors.append(MergeError(cluster_ids=ids, message=str(e) or type(e).__name__))
                continue
            report.clusters_merged += 1
            report.records_deleted += deleted

        for address in addresses:
            if address.id in clustered_ids:
                continue
            try:
                if await self._refresh_derived_fields(address):
                    report.records_refreshed += 1
            except Exception as e:
                logger.exception("Refreshing address %s failed", address.id)
                report.errors.append(MergeError(cluster_ids=[address.id], message=str(e) or type(e).__name__))

        report.finished_at = self.clock()
        logger.info(
            "Optimization pass done: merged %d/%d clusters, deleted %d, refreshed %d, %d errors",
            report.clusters_merged, report.clusters_found, report.records_deleted,
            report.records_refreshed, len(report.errors),
        )
        return report

    async def _apply_merge(self, cluster: Sequence[CanonicalAddress]) -> int:
        merged = self.merge_cluster(cluster)
        losers = [a for a in cluster if a.id != merged.id]

        await self.store.put(merged)
        await self.store.append_merge_log(MergeLogEntry(
            primary_id=merged.id,
            merged_ids=[a.id for a in losers],
            merged_addresses=[a.formatted_address for a in losers],
            merged_at=merged.updated_at,
        ))

        deleted = 0
        for loser in losers:
            # Already gone means a concurrent pass got there first
            if await self.store.delete(loser.id):
                deleted += 1
        logger.info("Merged %s into %s", [a.id for a in losers], merged.id)
        return deleted

    async def _refresh_derived_fields(self, address: CanonicalAddress) -> bool:
        """Rewrite confidence and geohash of an unmerged record if they are stale.

        Stored confidence only moves up here, so a bonus earned in an earlier
        merge is kept.
        """
        expected_confidence = max(address.confidence, confidence(address))
        expected_geohash = encode_geohash(address.location, self.geohash_precision)
        if address.confidence == expected_confidence and address.geohash == expected_geohash:
            return False
        updated = await self.store.set_derived_fields(
            address.id, expected_confidence, expected_geohash, self.clock()
        )
        return updated is not None
