"""
State reconciliation: baseline contracts plus incremental create/archive deltas.

Contract ids are compared in normalized form. Snapshot artifacts and the
update stream do not always agree on representation (a leading "#", a
":"-suffix, letter case).
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .models import ArchivedEvent, ContractEvent, LedgerUpdate, dig

logger = logging.getLogger(__name__)

ContractIdExtractor = Callable[[Any], Optional[str]]


def _path_extractor(*path: str) -> ContractIdExtractor:
    def extract(obj: Any) -> Optional[str]:
        value = dig(obj, *path)
        return value if isinstance(value, str) and value else None
    return extract


# tried in order; first non-empty string wins
CONTRACT_ID_EXTRACTORS: List[ContractIdExtractor] = [
    _path_extractor('contractId'),
    _path_extractor('contract_id'),
    _path_extractor('contract_id', 'coid'),
    _path_extractor('contract', 'contractId'),
    _path_extractor('contract', 'contract_id'),
    _path_extractor('payload', 'contractId'),
    _path_extractor('payload', 'contract_id'),
    _path_extractor('created_event', 'contract_id'),
    _path_extractor('created_event', 'contractId'),
    _path_extractor('archived_event', 'contract_id'),
    _path_extractor('archived_event', 'contractId'),
]


def extract_raw_contract_id(obj: Any) -> Optional[str]:
    if isinstance(obj, (ContractEvent, ArchivedEvent)):
        return obj.contract_id or None
    if not isinstance(obj, dict):
        return None
    for extractor in CONTRACT_ID_EXTRACTORS:
        value = extractor(obj)
        if value:
            return value
    return None


def normalize_contract_id(raw: Optional[str]) -> Optional[str]:
    """
    Canonical contract id: trimmed, no leading "#", first ":"-segment, lower case.

    >>> normalize_contract_id('#00ABC:Splice.Amulet:Amulet')
    '00abc'
    """
    if not raw:
        return None
    cid = raw.strip()
    if cid.startswith('#'):
        cid = cid[1:]
    cid = cid.split(':', 1)[0]
    return cid.lower() or None


def _as_record(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, ContractEvent):
        return obj.to_record()
    if isinstance(obj, dict) and isinstance(obj.get('created_event'), dict):
        return obj['created_event']
    return obj


class ContractMap:
    """
    Normalized contract id -> stored contract record.

    The only mutable shared structure of a run; last write per id wins.
    """

    def __init__(self, contracts: Optional[Dict[str, Dict[str, Any]]] = None):
        self._contracts: Dict[str, Dict[str, Any]] = dict(contracts or {})

    def __len__(self) -> int:
        return len(self._contracts)

    def __contains__(self, raw_id: str) -> bool:
        return normalize_contract_id(raw_id) in self._contracts

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, ContractMap) and self._contracts == other._contracts

    def get(self, raw_id: str) -> Optional[Dict[str, Any]]:
        return self._contracts.get(normalize_contract_id(raw_id))

    def put(self, obj: Any) -> Optional[str]:
        cid = normalize_contract_id(extract_raw_contract_id(obj))
        if cid is None:
            return None
        self._contracts[cid] = _as_record(obj)
        return cid

    def remove(self, obj: Any) -> bool:
        cid = normalize_contract_id(extract_raw_contract_id(obj))
        if cid is None:
            return False
        return self._contracts.pop(cid, None) is not None

    def ids(self) -> List[str]:
        return list(self._contracts)

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        return iter(self._contracts.items())

    def values(self) -> Iterator[Dict[str, Any]]:
        return iter(self._contracts.values())

    def copy(self) -> 'ContractMap':
        return ContractMap(self._contracts)

    def by_template(self) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for record in self._contracts.values():
            template_id = record.get('template_id') or 'unknown'
            grouped.setdefault(template_id, []).append(record)
        return grouped


def build_baseline(contracts: Iterable[Any]) -> ContractMap:
    """Index baseline contracts by normalized id; records without an id are skipped."""
    state = ContractMap()
    skipped = 0
    for contract in contracts:
        if state.put(contract) is None:
            skipped += 1
    if skipped:
        logger.warning(f"Baseline: skipped {skipped} records without an extractable contract id")
    logger.info(f"Baseline built with {len(state)} contracts")
    return state


@dataclass
class DeltaResult:
    created: int = 0
    archived: int = 0
    ignored: int = 0


def _delta_events(update: Union[LedgerUpdate, Mapping[str, Any]]) -> List[Tuple[str, Any]]:
    """(kind, event) pairs in arrival order."""
    if isinstance(update, LedgerUpdate):
        if update.event_order:
            return [
                (kind, update.created[i] if kind == 'created' else update.archived[i])
                for kind, i in update.event_order
            ]
        return [('created', e) for e in update.created] + [('archived', e) for e in update.archived]
    created = update.get('created') if isinstance(update.get('created'), list) else []
    archived = update.get('archived') if isinstance(update.get('archived'), list) else []
    return [('created', e) for e in created] + [('archived', e) for e in archived]


def apply_delta(state: ContractMap, update: Union[LedgerUpdate, Mapping[str, Any]]) -> DeltaResult:
    """
    Apply one update to the contract map in place.

    Events apply in arrival order, except that a contract both created and
    archived within the same update always ends up absent. Re-applying an
    update leaves the map unchanged.
    """
    result = DeltaResult()
    events = _delta_events(update)

    archived_here = set()
    created_here = set()
    for kind, event in events:
        cid = normalize_contract_id(extract_raw_contract_id(event))
        if cid is None:
            continue
        (created_here if kind == 'created' else archived_here).add(cid)

    for kind, event in events:
        if kind == 'created':
            cid = state.put(event)
            if cid is None:
                result.ignored += 1
            else:
                result.created += 1
        else:
            if extract_raw_contract_id(event) is None:
                result.ignored += 1
                continue
            state.remove(event)
            result.archived += 1

    for cid in created_here & archived_here:
        state.remove({'contract_id': cid})
    return result


def apply_deltas(state: ContractMap, updates: Iterable[Union[LedgerUpdate, Mapping[str, Any]]]) -> DeltaResult:
    total = DeltaResult()
    for update in updates:
        result = apply_delta(state, update)
        total.created += result.created
        total.archived += result.archived
        total.ignored += result.ignored
    return total
