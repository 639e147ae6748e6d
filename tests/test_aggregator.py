"""
Tests for aggregation over stored snapshots and per-template statistics.
"""

import pytest

from acs_sync.aggregator import (
    AMULET_SUFFIX,
    LOCKED_AMULET_SUFFIX,
    Aggregator,
    pick_amount,
    pick_locked_amount,
    template_aggregate_for,
)
from acs_sync.artifact_codec import ArtifactCodec
from acs_sync.blob_store import InMemoryBlobStore
from acs_sync.metadata_store import InMemoryMetadataStore
from acs_sync.models import SupplyTotals, TemplateAggregate, TemplateStats, matches_template_suffix

from conftest import AMULET_TID, LOCKED_TID, amulet_args, locked_args

LEGACY_AMULET_TID = 'pkg0:Splice.Amulet.Amulet'


def record(cid, template_id, args):
    return {'contract_id': cid, 'template_id': template_id, 'create_arguments': args}


@pytest.fixture
def aggregator():
    store = InMemoryBlobStore()
    metadata = InMemoryMetadataStore()
    codec = ArtifactCodec(store, chunk_size=2)
    datasets = {
        AMULET_TID: [
            record('a1', AMULET_TID, amulet_args('400.0')),
            record('a2', AMULET_TID, amulet_args('500.0')),
            record('a3', AMULET_TID, amulet_args('50.0')),
        ],
        LEGACY_AMULET_TID: [record('a4', LEGACY_AMULET_TID, amulet_args('50.0'))],
        LOCKED_TID: [record('l1', LOCKED_TID, locked_args('150.0'))],
    }
    for template_id, path in codec.encode(datasets, 'snap').items():
        metadata.upsert_template_stats(TemplateStats('snap', template_id, path))
    return Aggregator(codec, metadata)


class TestSuffixMatching:
    """Tests for template suffix matching."""

    @pytest.mark.parametrize('template_id, suffix, expected', [
        (AMULET_TID, 'Splice.Amulet:Amulet', True),
        (AMULET_TID, 'Splice.Amulet.Amulet', True),
        (LEGACY_AMULET_TID, 'Splice.Amulet:Amulet', True),
        (LOCKED_TID, 'Splice.Amulet:Amulet', False),
        (AMULET_TID, 'Amulet', True),
        ('pkg:Other.Amulet:Amulet', 'Splice.Amulet:Amulet', False),
    ])
    def test_matches(self, template_id, suffix, expected):
        assert matches_template_suffix(template_id, suffix) is expected


class TestPickAmount:
    """Tests for amount extraction."""

    def test_amount_locations(self):
        assert pick_amount({'amount': {'initialAmount': '1.5'}}) == 1.5
        assert pick_amount({'create_arguments': {'amount': {'initialAmount': 2}}}) == 2.0
        assert pick_amount({'balance': {'initialAmount': '3'}}) == 3.0
        assert pick_amount({'amount': 'not a number'}) == 0.0
        assert pick_amount({}) == 0.0

    def test_locked_prefers_wrapped_amulet(self):
        assert pick_locked_amount(locked_args('7.25')) == 7.25


class TestAggregator:
    """Tests for sums over stored artifacts."""

    def test_circulating_supply(self, aggregator):
        """1000 in Amulets minus 150 locked is 850 circulating."""
        assert aggregator.circulating_supply('snap') == pytest.approx(850.0)

    def test_sum_spans_chunks_and_templates(self, aggregator):
        result = aggregator.sum('snap', AMULET_SUFFIX)
        assert result.sum == pytest.approx(1000.0)
        assert result.count == 4
        assert result.template_count == 2
        assert result.to_dict()['templateCount'] == 2

    def test_supply_summary_and_totals(self, aggregator):
        summary = aggregator.supply_summary('snap')
        assert summary['locked']['sum'] == pytest.approx(150.0)

        totals = aggregator.supply_totals('snap')
        assert totals.circulating_supply == pytest.approx(850.0)
        assert totals.canonical_package() == 'pkg1'

    def test_template_aggregate_recomputed(self, aggregator):
        aggregate = aggregator.template_aggregate('snap', AMULET_TID)
        assert aggregate.contract_count == 3
        assert aggregate.field_sums['initialAmount'] == pytest.approx(950.0)

    def test_unknown_snapshot_sums_to_zero(self, aggregator):
        assert aggregator.sum('missing', LOCKED_AMULET_SUFFIX).sum == 0.0


class TestTemplateAggregate:
    """Tests for per-template statistics."""

    def test_add_record_sums_decimal_fields(self):
        aggregate = TemplateAggregate()
        aggregate.add_record({
            'amount': {'initialAmount': '10.0', 'ratePerRound': {'rate': '0.5'}},
            'fee': '1.25',
            'round': '42',
            'contractId': '12.34',
            'status': 'active',
            'nested': [{'state': 'open'}],
        })

        assert aggregate.contract_count == 1
        assert aggregate.field_sums == {'initialAmount': 10.0, 'rate': 0.5, 'fee': 1.25}
        assert aggregate.status_tallies == {'active': 1, 'open': 1}

    def test_initial_amount_counted_once(self):
        aggregate = TemplateAggregate()
        aggregate.add_record(amulet_args('5.0'))
        assert aggregate.field_sums['initialAmount'] == 5.0

    def test_partitions_combine_to_whole(self):
        """Aggregating parts and adding them equals aggregating everything."""
        payloads = [amulet_args(f"{i}.5") for i in range(7)] + [{'status': 'x'}, None]
        records = [{'create_arguments': p} for p in payloads]

        whole = template_aggregate_for(records)
        parts = template_aggregate_for(records[:3]) + template_aggregate_for(records[3:5]) + \
            template_aggregate_for(records[5:])

        assert parts.contract_count == whole.contract_count == 9
        assert parts.status_tallies == whole.status_tallies
        assert parts.field_sums == pytest.approx(whole.field_sums)
        assert TemplateAggregate.empty() + whole == whole

    def test_round_trip_through_dict(self):
        aggregate = template_aggregate_for([{'create_arguments': amulet_args('3.5')}])
        assert TemplateAggregate.from_dict(aggregate.to_dict()) == aggregate


class TestSupplyTotals:
    def test_per_package_and_canonical(self):
        totals = SupplyTotals()
        totals.add('old:Splice.Amulet:Amulet', amulet_args('10.0'))
        totals.add('new:Splice.Amulet:Amulet', amulet_args('90.0'))
        totals.add('new:Splice.Amulet:LockedAmulet', locked_args('40.0'))
        totals.add('new:Splice.Round:OpenMiningRound', {'amount': {'initialAmount': '999'}})

        assert totals.amulet_total == 100.0
        assert totals.locked_total == 40.0
        assert totals.canonical_package() == 'new'
