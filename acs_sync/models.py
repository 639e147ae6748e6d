"""
Domain model for the ACS synchronization engine.

Contracts, ledger updates, cursors, per-template aggregates and snapshot
metadata records. Ledger payloads stay as plain dicts except where the engine
needs typed access (Amulet and LockedAmulet amounts).
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

DECIMAL_RE = re.compile(r'^[+-]?\d+(\.\d+)?$')
STATUS_KEYS = ('status', 'state', 'phase', 'result')
# identifiers that merely look numeric
_NON_METRIC_KEY_RE = re.compile(r'id|hash|cid|guid|index', re.IGNORECASE)


def dig(data: Any, *path: str) -> Any:
    """Follow a key path through nested dicts; None if any step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp as written by the Scan API or this package."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    # fromisoformat only accepts up to microseconds
    if '.' in text:
        head, _, tail = text.partition('.')
        digits = ''
        rest = ''
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SnapshotStatus:
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMEOUT = 'timeout'


class ProcessingMode:
    FULL = 'full'
    DELTA = 'delta'


# ========== Template ids ==========

def split_template_id(template_id: str) -> Tuple[str, str, str]:
    """
    Split a template id into (package, module, entity).

    Current ids are colon-delimited ("pkg:Splice.Amulet:Amulet"); legacy ids
    use a dot between module and entity ("pkg:Splice.Amulet.Amulet").
    """
    if not template_id:
        return '', '', ''
    parts = template_id.split(':')
    if len(parts) >= 3:
        return parts[0], parts[-2], parts[-1]
    if len(parts) == 2:
        package, rest = parts
        module, _, entity = rest.rpartition('.')
        return package, module, entity
    module, _, entity = template_id.rpartition('.')
    return '', module, entity


def template_package(template_id: str) -> str:
    return (template_id or 'unknown').split(':')[0] or 'unknown'


def template_matches(template_id: Optional[str], module: str, entity: str) -> bool:
    """True if the last two segments of the template id are module:entity."""
    if not template_id:
        return False
    _, t_module, t_entity = split_template_id(template_id)
    return t_module == module and t_entity == entity


def matches_template_suffix(template_id: str, suffix: str) -> bool:
    """
    Match a template id against a suffix in either notation.

    "Splice.Amulet:Amulet" and "Splice.Amulet.Amulet" both select
    "pkg:Splice.Amulet:Amulet" but never "pkg:Splice.Amulet:LockedAmulet".
    """
    if not template_id or not suffix:
        return False
    if ':' in suffix:
        s_module, _, s_entity = suffix.rpartition(':')
    else:
        s_module, _, s_entity = suffix.rpartition('.')
    _, t_module, t_entity = split_template_id(template_id)
    if t_entity != s_entity:
        return False
    if not s_module:
        return True
    return t_module == s_module or t_module.endswith('.' + s_module)


# ========== Epoch and cursors ==========

@dataclass(frozen=True)
class Epoch:
    """A migration id together with a verified snapshot record time."""
    migration_id: int
    record_time: str


@dataclass(frozen=True)
class AcsCursor:
    """Offset cursor for full ACS pagination."""
    after: int = 0

    def advance(self, page_count: int, range_to: Optional[int] = None) -> 'AcsCursor':
        """Next cursor: the page's declared range end, else offset plus page size."""
        if range_to is not None:
            return AcsCursor(int(range_to))
        return AcsCursor(self.after + page_count)


@dataclass(frozen=True)
class UpdateCursor:
    """Watermark for the incremental update stream."""
    migration_id: Optional[int]
    record_time: Optional[str]
    update_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ========== Contracts and updates ==========

def _unwrap_created(event: Dict[str, Any]) -> Dict[str, Any]:
    """Accept flat created events as well as {'created': ...} / {'created_event': ...} wrappers."""
    for key in ('created_event', 'created'):
        inner = event.get(key)
        if isinstance(inner, dict):
            return inner
    return event


@dataclass
class ContractEvent:
    """A live contract as reported by a create event."""
    contract_id: str
    template_id: str
    create_arguments: Dict[str, Any] = field(default_factory=dict)
    package_name: Optional[str] = None
    created_at: Optional[str] = None
    event_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, event: Dict[str, Any]) -> 'ContractEvent':
        created = _unwrap_created(event)
        return cls(
            contract_id=created.get('contract_id') or created.get('contractId') or '',
            template_id=created.get('template_id') or 'unknown',
            create_arguments=created.get('create_arguments') or created.get('payload') or {},
            package_name=created.get('package_name'),
            created_at=created.get('created_at'),
            event_id=created.get('event_id') or event.get('event_id'),
            raw=event,
        )

    def to_record(self) -> Dict[str, Any]:
        """Storage representation written into artifacts."""
        return {
            'contract_id': self.contract_id,
            'template_id': self.template_id,
            'package_name': self.package_name,
            'created_at': self.created_at,
            'create_arguments': self.create_arguments,
        }


@dataclass
class ArchivedEvent:
    """A contract leaving the active set (explicit archive or consuming exercise)."""
    contract_id: str
    template_id: str
    event_id: Optional[str] = None
    choice: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)


class UpdateKind:
    TRANSACTION = 'transaction'
    REASSIGNMENT = 'reassignment'


@dataclass
class LedgerUpdate:
    """One entry of the update stream, already classified into created/archived events."""
    kind: str
    update_id: Optional[str]
    migration_id: Optional[int]
    record_time: Optional[str]
    created: List[ContractEvent] = field(default_factory=list)
    archived: List[ArchivedEvent] = field(default_factory=list)
    # every exercised event (consuming or not), kept for burn computation
    exercised: List[Dict[str, Any]] = field(default_factory=list)
    events_by_id: Dict[str, Any] = field(default_factory=dict)
    # ('created' | 'archived', index into created/archived) in arrival order
    event_order: List[Tuple[str, int]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def cursor(self) -> UpdateCursor:
        return UpdateCursor(self.migration_id, self.record_time, self.update_id)


# ========== Aggregates ==========

@dataclass
class TemplateAggregate:
    """
    Per-template running statistics.

    Aggregates combine by plain addition, so chunk-wise, page-wise and resumed
    computation all produce the same totals.
    """
    contract_count: int = 0
    field_sums: Dict[str, float] = field(default_factory=dict)
    status_tallies: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> 'TemplateAggregate':
        return cls()

    def add_field(self, name: str, value: float):
        self.field_sums[name] = self.field_sums.get(name, 0.0) + value

    def add_status(self, value: str):
        self.status_tallies[value] = self.status_tallies.get(value, 0) + 1

    def add_record(self, payload: Optional[Dict[str, Any]]):
        """
        Count one contract and fold its create-arguments into the statistics.

        ``initialAmount`` is taken from the known amount locations only; every
        other decimal string containing a fraction is summed under its key,
        and status-like keys are tallied by value.
        """
        self.contract_count += 1
        if not isinstance(payload, dict):
            return

        candidates = [
            dig(payload, 'amount', 'initialAmount'),
            dig(payload, 'amulet', 'amount', 'initialAmount'),
            dig(payload, 'stake', 'initialAmount'),
        ]
        for candidate in candidates:
            if isinstance(candidate, str) and DECIMAL_RE.match(candidate):
                self.add_field('initialAmount', float(candidate))
            elif isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
                self.add_field('initialAmount', float(candidate))

        stack: List[Any] = [payload]
        while stack:
            current = stack.pop()
            items = current.items() if isinstance(current, dict) else enumerate(current)
            for key, value in items:
                key = str(key)
                if key in STATUS_KEYS and isinstance(value, str) and value:
                    self.add_status(value)
                elif (isinstance(value, str) and '.' in value and DECIMAL_RE.match(value)
                        and key != 'initialAmount' and not _NON_METRIC_KEY_RE.search(key)):
                    self.add_field(key, float(value))
                if isinstance(value, (dict, list)):
                    stack.append(value)

    def __add__(self, other: 'TemplateAggregate') -> 'TemplateAggregate':
        if not isinstance(other, TemplateAggregate):
            return NotImplemented
        result = TemplateAggregate(
            contract_count=self.contract_count + other.contract_count,
            field_sums=dict(self.field_sums),
            status_tallies=dict(self.status_tallies),
        )
        for name, value in other.field_sums.items():
            result.add_field(name, value)
        for status, count in other.status_tallies.items():
            result.status_tallies[status] = result.status_tallies.get(status, 0) + count
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'contract_count': self.contract_count,
            'field_sums': dict(self.field_sums),
            'status_tallies': dict(self.status_tallies),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TemplateAggregate':
        data = data or {}
        return cls(
            contract_count=int(data.get('contract_count') or 0),
            field_sums={k: float(v) for k, v in (data.get('field_sums') or {}).items()},
            status_tallies={k: int(v) for k, v in (data.get('status_tallies') or {}).items()},
        )


@dataclass
class SumResult:
    """Result of a streaming sum over one or more templates."""
    sum: float = 0.0
    count: int = 0
    template_count: int = 0

    def __add__(self, other: 'SumResult') -> 'SumResult':
        return SumResult(
            sum=self.sum + other.sum,
            count=self.count + other.count,
            template_count=self.template_count + other.template_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'sum': self.sum, 'count': self.count, 'templateCount': self.template_count}


# ========== Typed payloads ==========

def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


@dataclass
class AmuletPayload:
    owner: Optional[str]
    initial_amount: float
    created_at_round: Optional[int] = None
    rate_per_round: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'AmuletPayload':
        amount = payload.get('amount') if isinstance(payload.get('amount'), dict) else {}
        created_at = amount.get('createdAt') or {}
        rate = amount.get('ratePerRound') or {}
        round_number = _to_float(created_at.get('number')) if isinstance(created_at, dict) else None
        return cls(
            owner=payload.get('owner'),
            initial_amount=_to_float(amount.get('initialAmount')) or 0.0,
            created_at_round=int(round_number) if round_number is not None else None,
            rate_per_round=_to_float(rate.get('rate')) if isinstance(rate, dict) else None,
            raw=payload,
        )


@dataclass
class LockedAmuletPayload:
    amulet: AmuletPayload
    holders: List[str] = field(default_factory=list)
    expires_at: Optional[Any] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def initial_amount(self) -> float:
        return self.amulet.initial_amount

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'LockedAmuletPayload':
        lock = payload.get('lock') or {}
        return cls(
            amulet=AmuletPayload.from_payload(payload.get('amulet') or {}),
            holders=list(lock.get('holders') or []),
            expires_at=lock.get('expiresAt'),
            raw=payload,
        )


@dataclass
class GenericPayload:
    raw: Dict[str, Any] = field(default_factory=dict)


TypedPayload = Union[AmuletPayload, LockedAmuletPayload, GenericPayload]


def typed_payload(template_id: str, payload: Optional[Dict[str, Any]]) -> TypedPayload:
    payload = payload or {}
    if template_matches(template_id, 'Splice.Amulet', 'Amulet'):
        return AmuletPayload.from_payload(payload)
    if template_matches(template_id, 'Splice.Amulet', 'LockedAmulet'):
        return LockedAmuletPayload.from_payload(payload)
    return GenericPayload(raw=payload)


# ========== Snapshot metadata ==========

@dataclass
class SnapshotRecord:
    """One synchronization run as stored in the metadata store."""
    id: str
    migration_id: Optional[int] = None
    record_time: Optional[str] = None
    status: str = SnapshotStatus.PROCESSING
    is_delta: bool = False
    processing_mode: str = ProcessingMode.FULL
    previous_snapshot_id: Optional[str] = None
    last_update_id: Optional[str] = None
    cursor_after: Optional[int] = None
    processed_pages: int = 0
    processed_events: int = 0
    amulet_total: float = 0.0
    locked_total: float = 0.0
    circulating_supply: float = 0.0
    entry_count: int = 0
    canonical_package: Optional[str] = None
    sv_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotRecord':
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def update_cursor(self) -> UpdateCursor:
        return UpdateCursor(self.migration_id, self.record_time, self.last_update_id)


@dataclass
class TemplateStats:
    """Per (snapshot, template) metadata row."""
    snapshot_id: str
    template_id: str
    storage_path: str
    aggregate: TemplateAggregate = field(default_factory=TemplateAggregate)

    @property
    def contract_count(self) -> int:
        return self.aggregate.contract_count

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'snapshot_id': self.snapshot_id,
            'template_id': self.template_id,
            'storage_path': self.storage_path,
        }
        data.update(self.aggregate.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateStats':
        return cls(
            snapshot_id=data['snapshot_id'],
            template_id=data['template_id'],
            storage_path=data.get('storage_path') or '',
            aggregate=TemplateAggregate.from_dict(data),
        )


@dataclass
class SupplyTotals:
    amulet_total: float = 0.0
    locked_total: float = 0.0
    per_package: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def circulating_supply(self) -> float:
        return self.amulet_total - self.locked_total

    def add(self, template_id: str, payload: Dict[str, Any]):
        typed = typed_payload(template_id, payload)
        if isinstance(typed, GenericPayload):
            return
        package = template_package(template_id)
        bucket = self.per_package.setdefault(package, {'amulet': 0.0, 'locked': 0.0})
        if isinstance(typed, AmuletPayload):
            self.amulet_total += typed.initial_amount
            bucket['amulet'] += typed.initial_amount
        else:
            self.locked_total += typed.initial_amount
            bucket['locked'] += typed.initial_amount

    def canonical_package(self) -> Optional[str]:
        """Package holding the largest Amulet total."""
        if not self.per_package:
            return None
        return max(self.per_package.items(), key=lambda item: item[1]['amulet'])[0]


@dataclass
class SyncRunState:
    """
    Context owned by one synchronization run.

    Threaded explicitly through discovery, fetch and reconciliation instead of
    module-level cursor variables.
    """
    snapshot_id: str
    mode: str
    epoch: Optional[Epoch] = None
    acs_cursor: int = 0
    update_cursor: Optional[UpdateCursor] = None
    pages_done: int = 0
    events_done: int = 0
    updates_applied: int = 0
    previous_snapshot_id: Optional[str] = None
    totals: SupplyTotals = field(default_factory=SupplyTotals)
    aggregates: Dict[str, TemplateAggregate] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now_iso)

    def aggregate_for(self, template_id: str) -> TemplateAggregate:
        return self.aggregates.setdefault(template_id, TemplateAggregate())
