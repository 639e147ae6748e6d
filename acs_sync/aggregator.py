"""
Streaming aggregation over snapshot artifacts.

Records are folded chunk by chunk; no template dataset is ever held in
memory as a whole.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .artifact_codec import ArtifactCodec
from .metadata_store import MetadataStore
from .models import (
    SumResult,
    SupplyTotals,
    TemplateAggregate,
    TemplateStats,
    dig,
    matches_template_suffix,
)

logger = logging.getLogger(__name__)

AMULET_SUFFIX = 'Splice.Amulet:Amulet'
LOCKED_AMULET_SUFFIX = 'Splice.Amulet:LockedAmulet'

PickFn = Callable[[Dict[str, Any]], float]
AmountExtractor = Callable[[Dict[str, Any]], Any]


def _numeric(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _payload(record: Dict[str, Any]) -> Dict[str, Any]:
    """Create-arguments of a stored contract record, or the record itself for legacy artifacts."""
    if isinstance(record, dict) and isinstance(record.get('create_arguments'), dict):
        return record['create_arguments']
    return record if isinstance(record, dict) else {}


AMOUNT_EXTRACTORS: List[AmountExtractor] = [
    lambda p: dig(p, 'amount', 'initialAmount'),
    lambda p: dig(p, 'amulet', 'amount', 'initialAmount'),
    lambda p: dig(p, 'state', 'amount', 'initialAmount'),
    lambda p: dig(p, 'create_arguments', 'amount', 'initialAmount'),
    lambda p: dig(p, 'balance', 'initialAmount'),
    lambda p: p.get('amount'),
]

LOCKED_AMOUNT_EXTRACTORS: List[AmountExtractor] = [
    lambda p: dig(p, 'amulet', 'amount', 'initialAmount'),
] + AMOUNT_EXTRACTORS


def first_numeric(payload: Dict[str, Any], extractors: Iterable[AmountExtractor]) -> float:
    for extract in extractors:
        value = _numeric(extract(payload))
        if value is not None:
            return value
    return 0.0


def pick_amount(record: Dict[str, Any]) -> float:
    """Amount of a holding-like contract; 0.0 when none of the known locations hold a number."""
    return first_numeric(_payload(record), AMOUNT_EXTRACTORS)


def pick_locked_amount(record: Dict[str, Any]) -> float:
    """Like pick_amount, but prefers the wrapped amulet of a LockedAmulet."""
    return first_numeric(_payload(record), LOCKED_AMOUNT_EXTRACTORS)


def template_aggregate_for(records: Iterable[Dict[str, Any]]) -> TemplateAggregate:
    aggregate = TemplateAggregate()
    for record in records:
        aggregate.add_record(_payload(record))
    return aggregate


class Aggregator:
    """Sums and statistics over the artifacts of a stored snapshot."""

    def __init__(self, codec: ArtifactCodec, metadata_store: MetadataStore):
        self.codec = codec
        self.metadata_store = metadata_store

    def matching_templates(self, snapshot_id: str, template_suffix: str) -> List[TemplateStats]:
        return [
            stats for stats in self.metadata_store.list_template_stats(snapshot_id)
            if matches_template_suffix(stats.template_id, template_suffix) and stats.storage_path
        ]

    def sum_artifact(self, storage_path: str, pick_fn: PickFn) -> SumResult:
        result = SumResult(template_count=1)
        for chunk in self.codec.iter_chunks(storage_path):
            result.sum += sum(pick_fn(record) for record in chunk)
            result.count += len(chunk)
        return result

    def sum(self, snapshot_id: str, template_suffix: str, pick_fn: PickFn = pick_amount) -> SumResult:
        """
        Fold ``pick_fn`` over every record of every template matching the suffix.

        Suffixes may use the current colon notation ("Splice.Amulet:Amulet")
        or the legacy dotted one ("Splice.Amulet.Amulet").
        """
        templates = self.matching_templates(snapshot_id, template_suffix)
        total = SumResult()
        for stats in templates:
            total = total + self.sum_artifact(stats.storage_path, pick_fn)
        logger.info(
            f"Sum of {template_suffix} in {snapshot_id}: {total.sum} "
            f"over {total.count} contracts in {total.template_count} templates"
        )
        return total

    def circulating_supply(self, snapshot_id: str) -> float:
        amulet = self.sum(snapshot_id, AMULET_SUFFIX, pick_amount)
        locked = self.sum(snapshot_id, LOCKED_AMULET_SUFFIX, pick_locked_amount)
        return amulet.sum - locked.sum

    def supply_summary(self, snapshot_id: str) -> Dict[str, Any]:
        amulet = self.sum(snapshot_id, AMULET_SUFFIX, pick_amount)
        locked = self.sum(snapshot_id, LOCKED_AMULET_SUFFIX, pick_locked_amount)
        return {
            'snapshot_id': snapshot_id,
            'amulet': amulet.to_dict(),
            'locked': locked.to_dict(),
            'circulating_supply': amulet.sum - locked.sum,
        }

    def supply_totals(self, snapshot_id: str) -> SupplyTotals:
        """Amulet/LockedAmulet totals per package, rebuilt from artifacts."""
        totals = SupplyTotals()
        for suffix in (AMULET_SUFFIX, LOCKED_AMULET_SUFFIX):
            for stats in self.matching_templates(snapshot_id, suffix):
                for chunk in self.codec.iter_chunks(stats.storage_path):
                    for record in chunk:
                        totals.add(stats.template_id, _payload(record))
        return totals

    def template_aggregate(self, snapshot_id: str, template_id: str) -> TemplateAggregate:
        """Recompute one template's statistics chunk by chunk."""
        aggregate = TemplateAggregate()
        for stats in self.metadata_store.list_template_stats(snapshot_id):
            if stats.template_id != template_id:
                continue
            for chunk in self.codec.iter_chunks(stats.storage_path):
                aggregate = aggregate + template_aggregate_for(chunk)
        return aggregate
