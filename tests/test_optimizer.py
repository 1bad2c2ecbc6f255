from datetime import timedelta

import pytest
from address_registry.errors import StoreError
from address_registry.models import Alias, Description
from address_registry.optimizer import AddressOptimizer
from address_registry.store import InMemoryAddressStore

from conftest import BASE_LOCATION, FIXED_NOW, north_of

EARLY = FIXED_NOW - timedelta(days=10)


@pytest.fixture
def optimizer(store, clock):
    return AddressOptimizer(store, clock=clock)


@pytest.fixture
def smithfield_trio(make_address):
    """Three records of the same building within 50m of each other."""
    return [
        make_address(
            "a", formatted="35 West Smithfield, London EC1A 9HX, UK", location=BASE_LOCATION,
            aliases=["35 W Smithfield"], descriptions=["Blue door"],
        ),
        make_address(
            "b", formatted="35 West Smithfield, London EC1A 9HX, UK", location=north_of(BASE_LOCATION, 5),
            aliases=[Alias("35 W Smithfield", EARLY), "Flat 3, 35 West Smithfield"],
            descriptions=["Blue door", "Ring bell 3", "Lift is broken"],
            summary="Blue door, ring bell 3.",
        ),
        make_address(
            "c", formatted="35 West Smithfield, London EC1A 9HX", location=north_of(BASE_LOCATION, 12),
            aliases=["35 west smithfield ec1a"], descriptions=["Next to the meat market"],
        ),
    ]


# ═══════════════════════════════════════════════════════════════════
# Clustering
# ═══════════════════════════════════════════════════════════════════

def test_pair_similarity_zero_beyond_cluster_distance(optimizer, make_address):
    a = make_address("a")
    b = make_address("b", location=north_of(BASE_LOCATION, 60))
    assert optimizer.pair_similarity(a, b) == 0.0


def test_pair_similarity_formula(optimizer, make_address):
    a = make_address("a", formatted="35 West Smithfield")
    b = make_address("b", formatted="35 West Smithfield London", location=north_of(BASE_LOCATION, 20))
    # 0.7 * (1 - 20/1000) + 0.3 * 3/4
    assert optimizer.pair_similarity(a, b) == pytest.approx(0.7 * 0.98 + 0.3 * 0.75)


def test_find_clusters_groups_trio(optimizer, smithfield_trio):
    clusters = optimizer.find_clusters(smithfield_trio)
    assert [[a.id for a in c] for c in clusters] == [["a", "b", "c"]]


def test_find_clusters_ignores_near_but_different_building(optimizer, make_address):
    records = [
        make_address("a"),
        make_address("barbican", formatted="Barbican Centre, Silk Street, London EC2Y 8DS, UK",
                     location=north_of(BASE_LOCATION, 40)),
    ]
    assert optimizer.find_clusters(records) == []


def test_find_clusters_ignores_same_text_far_apart(optimizer, make_address):
    records = [make_address("a"), make_address("b", location=north_of(BASE_LOCATION, 60))]
    assert optimizer.find_clusters(records) == []


def test_select_primary_prefers_most_complete(optimizer, smithfield_trio):
    assert optimizer.select_primary(smithfield_trio).id == "b"


def test_select_primary_tie_keeps_first(optimizer, make_address):
    cluster = [make_address("first"), make_address("second")]
    assert optimizer.select_primary(cluster).id == "first"


# ═══════════════════════════════════════════════════════════════════
# Merging
# ═══════════════════════════════════════════════════════════════════

def test_merge_unions_aliases_keeping_earliest(optimizer, smithfield_trio):
    merged = optimizer.merge_cluster(smithfield_trio)

    raw = {a.raw_text: a.matched_at for a in merged.aliases}
    assert set(raw) == {"35 W Smithfield", "Flat 3, 35 West Smithfield", "35 west smithfield ec1a"}
    assert raw["35 W Smithfield"] == EARLY


def test_merge_unions_descriptions_by_content(optimizer, smithfield_trio):
    merged = optimizer.merge_cluster(smithfield_trio)

    contents = [d.content for d in merged.descriptions]
    assert sorted(contents) == ["Blue door", "Lift is broken", "Next to the meat market", "Ring bell 3"]


def test_merge_keeps_primary_identity_and_summary(optimizer, smithfield_trio):
    merged = optimizer.merge_cluster(smithfield_trio)

    assert merged.id == "b"
    assert merged.summary == "Blue door, ring bell 3."
    assert merged.location == smithfield_trio[1].location
    assert merged.geohash


def test_merge_borrows_summary_when_primary_has_none(optimizer, make_address):
    cluster = [
        make_address("a", aliases=["x", "y"]),
        make_address("b", summary="Green gate"),
    ]
    assert optimizer.merge_cluster(cluster).summary == "Green gate"


def test_merge_confidence_bonus(optimizer, smithfield_trio):
    merged = optimizer.merge_cluster(smithfield_trio)
    # best member "b": 0.2 + 0.3 + 0.2 + 0.2 = 0.9, plus 2 * 0.1, capped
    assert merged.confidence == 1.0


# ═══════════════════════════════════════════════════════════════════
# Full pass
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_pass_merges_trio_into_one_record(store, optimizer, smithfield_trio):
    for address in smithfield_trio:
        await store.put(address)

    report = await optimizer.run_optimization_pass()

    assert report.clusters_found == 1
    assert report.clusters_merged == 1
    assert report.records_deleted == 2
    assert report.errors == []

    remaining = await store.list_all()
    assert [a.id for a in remaining] == ["b"]
    assert len(remaining[0].aliases) == 3
    assert len(remaining[0].descriptions) == 4
    assert await store.get("a") is None
    assert await store.get("c") is None


@pytest.mark.asyncio
async def test_pass_writes_merge_log(store, optimizer, smithfield_trio):
    for address in smithfield_trio:
        await store.put(address)

    await optimizer.run_optimization_pass()

    logs = await store.list_merge_logs()
    assert len(logs) == 1
    assert logs[0].primary_id == "b"
    assert sorted(logs[0].merged_ids) == ["a", "c"]


@pytest.mark.asyncio
async def test_second_pass_is_noop(store, optimizer, smithfield_trio):
    for address in smithfield_trio:
        await store.put(address)

    await optimizer.run_optimization_pass()
    survivor = await store.get("b")
    report = await optimizer.run_optimization_pass()

    assert report.clusters_found == 0
    assert report.clusters_merged == 0
    assert report.records_deleted == 0
    assert (await store.get("b")).to_dict() == survivor.to_dict()


@pytest.mark.asyncio
async def test_pass_refreshes_stale_singletons_once(store, optimizer, make_address):
    await store.put(make_address("solo", aliases=["x"]))

    first = await optimizer.run_optimization_pass()
    second = await optimizer.run_optimization_pass()

    refreshed = await store.get("solo")
    assert first.records_refreshed == 1
    assert second.records_refreshed == 0
    assert refreshed.geohash
    assert refreshed.confidence == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_second_pass_is_noop_for_uncapped_merge(store, optimizer, make_address):
    await store.put(make_address("a", formatted="Somewhere", aliases=["x", "y", "z"]))
    await store.put(make_address("b", formatted="Somewhere", location=north_of(BASE_LOCATION, 1),
                                 descriptions=["Blue door", "Ring bell 3", "Lift is broken"]))

    first = await optimizer.run_optimization_pass()
    survivor = await store.get("b")
    second = await optimizer.run_optimization_pass()

    assert first.clusters_merged == 1
    # 3 aliases and 3 descriptions outweigh the 0.3 + 0.1 merge rule
    assert survivor.confidence == pytest.approx(0.6)
    assert second.clusters_merged == 0
    assert second.records_refreshed == 0
    assert (await store.get("b")).to_dict() == survivor.to_dict()


@pytest.mark.asyncio
async def test_refresh_keeps_description_added_during_pass(clock, make_address):
    class ContributionDuringPassStore(InMemoryAddressStore):
        async def list_all(self):
            snapshot = await super().list_all()
            await self.append_description("solo", Description("Ring bell 3", FIXED_NOW))
            return snapshot

    store = ContributionDuringPassStore()
    await store.put(make_address("solo", aliases=["x"]))

    report = await AddressOptimizer(store, clock=clock).run_optimization_pass()

    refreshed = await store.get("solo")
    assert report.records_refreshed == 1
    assert [d.content for d in refreshed.descriptions] == ["Ring bell 3"]
    assert refreshed.geohash


@pytest.mark.asyncio
async def test_failed_cluster_does_not_abort_pass(clock, make_address):
    class FlakyStore(InMemoryAddressStore):
        def __init__(self):
            super().__init__()
            self.fail_ids = set()

        async def put(self, address):
            if address.id in self.fail_ids:
                raise StoreError("write rejected")
            await super().put(address)

    store = FlakyStore()
    await store.put(make_address("broken-1", aliases=["x"]))
    await store.put(make_address("broken-2", location=north_of(BASE_LOCATION, 3), aliases=["y"]))
    far = north_of(BASE_LOCATION, 5000)
    await store.put(make_address("ok-1", formatted="1 Bank Street, London E14 5JP, UK", location=far, aliases=["z"]))
    await store.put(make_address("ok-2", formatted="1 Bank Street, London E14 5JP, UK",
                                 location=north_of(far, 2)))
    store.fail_ids = {"broken-1"}

    report = await AddressOptimizer(store, clock=clock).run_optimization_pass()

    assert report.clusters_found == 2
    assert report.clusters_merged == 1
    assert len(report.errors) == 1
    assert report.errors[0].cluster_ids == ["broken-1", "broken-2"]
    assert "write rejected" in report.errors[0].message
    # Failed cluster left untouched for the next pass
    assert await store.get("broken-2") is not None
    assert await store.get("ok-2") is None


@pytest.mark.asyncio
async def test_already_deleted_loser_is_not_an_error(clock, make_address):
    phantom = make_address("phantom", location=north_of(BASE_LOCATION, 2))

    class StaleSnapshotStore(InMemoryAddressStore):
        async def list_all(self):
            return await super().list_all() + [phantom]

    store = StaleSnapshotStore()
    await store.put(make_address("real", aliases=["x"], descriptions=["Blue door"]))

    report = await AddressOptimizer(store, clock=clock).run_optimization_pass()

    assert report.clusters_merged == 1
    assert report.records_deleted == 0
    assert report.errors == []


@pytest.mark.asyncio
async def test_merged_descriptions_survive_in_order(store, optimizer, make_address):
    later = FIXED_NOW + timedelta(hours=2)
    await store.put(make_address("a", aliases=["x", "y"], descriptions=[Description("second", later)]))
    await store.put(make_address("b", location=north_of(BASE_LOCATION, 1), descriptions=["first"]))

    await optimizer.run_optimization_pass()

    survivor = (await store.list_all())[0]
    assert [d.content for d in survivor.descriptions] == ["first", "second"]
