"""
Burn computation over exercised choices.

Burn per choice:
- AmuletRules_BuyMemberTraffic: holding fees + sender change fee + amulet paid
- AmuletRules_Transfer: holding fees + sender change fee + output fees
- SubscriptionInitialPayment_Collect / AnsEntryContext_CollectRenewalEntryPayment:
  the temporary amulet's initial amount + fees of child transfers
- AmuletRules_CreateTransferPreapproval / AmuletRules_CreateExternalPartySetupProposal /
  TransferPreapproval_Renew: the same fee sum over exercise_result.transferResult.summary

Each result is cross-checked against (inputs - outputs) from the transfer
summary. The fee semantics are heuristic; a mismatch is only logged and
recorded, never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .models import LedgerUpdate, dig, split_template_id
from .update_fetcher import classify_event

logger = logging.getLogger(__name__)

INPUT_AMOUNT_FIELDS = (
    'inputAmuletAmount',
    'inputAppRewardAmount',
    'inputValidatorRewardAmount',
    'inputSvRewardAmount',
    'inputValidatorFaucetAmount',
)

OUTPUT_AMOUNT_FIELDS = (
    'senderChangeAmount',
    'receiverChangeAmount',
)

FLOAT_TOLERANCE = 1e-6

TRAFFIC_CHOICE = 'AmuletRules_BuyMemberTraffic'
TRANSFER_CHOICE = 'AmuletRules_Transfer'
CNS_CHOICES = ('SubscriptionInitialPayment_Collect', 'AnsEntryContext_CollectRenewalEntryPayment')
PREAPPROVAL_CHOICES = (
    'AmuletRules_CreateTransferPreapproval',
    'AmuletRules_CreateExternalPartySetupProposal',
    'TransferPreapproval_Renew',
)
_AMULET_PAID_CHOICES = (TRAFFIC_CHOICE,) + PREAPPROVAL_CHOICES

# entity names of contracts that can be transfer inputs
_INPUT_ENTITY_MARKERS = ('Amulet', 'RewardCoupon', 'FaucetCoupon')


def parse_amount(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def sum_amounts(values: Iterable[Any]) -> float:
    return sum(parse_amount(v) for v in values)


@dataclass
class BurnBreakdown:
    traffic: float = 0.0
    transfer: float = 0.0
    cns: float = 0.0
    preapproval: float = 0.0
    # balance-check diagnostics
    mismatches: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> float:
        return self.traffic + self.transfer + self.cns + self.preapproval

    def __add__(self, other: 'BurnBreakdown') -> 'BurnBreakdown':
        return BurnBreakdown(
            traffic=self.traffic + other.traffic,
            transfer=self.transfer + other.transfer,
            cns=self.cns + other.cns,
            preapproval=self.preapproval + other.preapproval,
            mismatches=self.mismatches + other.mismatches,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_burn': self.total,
            'traffic_burn': self.traffic,
            'transfer_burn': self.transfer,
            'cns_burn': self.cns,
            'preapproval_burn': self.preapproval,
            'balance_mismatches': len(self.mismatches),
        }


def holding_fees(events_by_id: Dict[str, Any], summary: Optional[Dict[str, Any]]) -> float:
    """
    Holding fees paid by a transfer.

    Uses the summary's own ``holdingFees`` when present. Otherwise the initial
    amounts of archived amulet inputs are compared with the effective amulet
    input reported in the summary; reward coupons carry no holding fee.
    Only ``inputAmuletAmount`` is netted here, intentionally not the other
    ``input*Amount`` summary fields.
    """
    summary = summary or {}
    if 'holdingFees' in summary:
        return max(0.0, parse_amount(summary.get('holdingFees')))

    initial_input = 0.0
    for event in events_by_id.values():
        kind, body = classify_event(event)
        if kind != 'archived':
            continue
        _, _, entity = split_template_id(body.get('template_id') or '')
        if not any(marker in entity for marker in _INPUT_ENTITY_MARKERS):
            continue
        initial_input += parse_amount(dig(body.get('create_arguments') or {}, 'amount', 'initialAmount'))
    if initial_input == 0:
        return 0.0
    return max(0.0, initial_input - parse_amount(summary.get('inputAmuletAmount')))


def transaction_fees(summary: Optional[Dict[str, Any]], choice: str, exercise_result: Optional[Dict[str, Any]]) -> float:
    """Fees excluding holding fees: sender change fee, output fees and amulet paid."""
    summary = summary or {}
    fees = parse_amount(summary.get('senderChangeFee'))
    if isinstance(summary.get('outputFees'), list):
        fees += sum_amounts(summary['outputFees'])
    if choice in _AMULET_PAID_CHOICES:
        fees += parse_amount((exercise_result or {}).get('amuletPaid'))
    return fees


class BurnCalculator:
    """Computes burn per transaction from its events_by_id map."""

    def __init__(self, tolerance: float = FLOAT_TOLERANCE):
        self.tolerance = tolerance

    def check_balance(
        self,
        breakdown: BurnBreakdown,
        event_id: Optional[str],
        choice: str,
        summary: Optional[Dict[str, Any]],
        burn_amount: float,
        extra_outputs: Iterable[Any] = ()
    ) -> bool:
        """
        Compare a computed burn against inputs minus outputs of the summary.

        Returns False (and records the mismatch) when they differ beyond the
        tolerance. Skipped when the summary carries no amounts at all.
        """
        if not summary:
            return True
        input_total = sum_amounts(summary.get(name) for name in INPUT_AMOUNT_FIELDS)
        output_total = sum_amounts(summary.get(name) for name in OUTPUT_AMOUNT_FIELDS) + sum_amounts(extra_outputs)
        if input_total == 0 and output_total == 0:
            return True

        expected = input_total - output_total
        if abs(expected - burn_amount) <= self.tolerance:
            return True

        mismatch = {
            'event_id': event_id,
            'choice': choice,
            'input_total': input_total,
            'output_total': output_total,
            'expected_burn': expected,
            'burn_amount': burn_amount,
        }
        logger.warning(f"Burn mismatch detected: {mismatch}")
        breakdown.mismatches.append(mismatch)
        return False

    def _created_amount(self, events_by_id: Dict[str, Any], contract_id: Optional[str]) -> float:
        """Initial amount of the amulet created with ``contract_id`` in this transaction."""
        if not contract_id:
            return 0.0
        # older payloads key the map by the contract id itself
        if contract_id in events_by_id:
            kind, body = classify_event(events_by_id[contract_id])
            if kind == 'created':
                return parse_amount(dig(body, 'create_arguments', 'amount', 'initialAmount'))
        for event in events_by_id.values():
            kind, body = classify_event(event)
            if kind == 'created' and body.get('contract_id') == contract_id:
                return parse_amount(dig(body, 'create_arguments', 'amount', 'initialAmount'))
        return 0.0

    def _transfer_burn(self, body: Dict[str, Any], events_by_id: Dict[str, Any], breakdown: BurnBreakdown) -> float:
        summary = dig(body, 'exercise_result', 'summary')
        if not summary:
            return 0.0
        burn = holding_fees(events_by_id, summary) + transaction_fees(summary, TRANSFER_CHOICE, body.get('exercise_result'))
        outputs = dig(body, 'choice_argument', 'transfer', 'outputs')
        extra_outputs = [o.get('amount') for o in outputs if isinstance(o, dict)] if isinstance(outputs, list) else []
        self.check_balance(breakdown, body.get('event_id'), TRANSFER_CHOICE, summary, burn, extra_outputs)
        return burn

    def calculate(self, events_by_id: Dict[str, Any]) -> BurnBreakdown:
        breakdown = BurnBreakdown()
        nested_transfers: Set[str] = set()

        # CNS collections first: their child transfers are counted as CNS burn
        for event_id, event in events_by_id.items():
            kind, body = classify_event(event)
            if kind != 'exercised' or body.get('choice') not in CNS_CHOICES:
                continue
            exercise_result = body.get('exercise_result')
            if not exercise_result:
                continue
            burn = self._created_amount(events_by_id, exercise_result.get('amulet'))
            for child_id in body.get('child_event_ids') or []:
                child = events_by_id.get(child_id)
                if child is None:
                    continue
                child_kind, child_body = classify_event(child)
                if child_kind == 'exercised' and child_body.get('choice') == TRANSFER_CHOICE:
                    nested_transfers.add(child_id)
                    burn += self._transfer_burn(child_body, events_by_id, breakdown)
            breakdown.cns += burn

        for event_id, event in events_by_id.items():
            kind, body = classify_event(event)
            if kind != 'exercised':
                continue
            choice = body.get('choice') or ''
            exercise_result = body.get('exercise_result') or {}

            if choice == TRAFFIC_CHOICE:
                summary = exercise_result.get('summary')
                if not summary:
                    continue
                burn = holding_fees(events_by_id, summary) + transaction_fees(summary, choice, exercise_result)
                breakdown.traffic += burn
                self.check_balance(breakdown, body.get('event_id') or event_id, choice, summary, burn)

            elif choice == TRANSFER_CHOICE and event_id not in nested_transfers:
                breakdown.transfer += self._transfer_burn(body, events_by_id, breakdown)

            elif choice in PREAPPROVAL_CHOICES:
                summary = dig(exercise_result, 'transferResult', 'summary')
                if not summary:
                    continue
                burn = holding_fees(events_by_id, summary) + transaction_fees(summary, choice, exercise_result)
                breakdown.preapproval += burn
                self.check_balance(breakdown, body.get('event_id') or event_id, choice, summary, burn)

        if breakdown.total > 0:
            logger.debug(
                f"Transaction burn {breakdown.total:.4f} (traffic {breakdown.traffic:.4f}, "
                f"transfer {breakdown.transfer:.4f}, cns {breakdown.cns:.4f}, "
                f"preapproval {breakdown.preapproval:.4f})"
            )
        return breakdown

    def calculate_update(self, update: Union[LedgerUpdate, Dict[str, Any]]) -> BurnBreakdown:
        if isinstance(update, LedgerUpdate):
            events_by_id = update.events_by_id
        else:
            events_by_id = update.get('events_by_id') or dig(update, 'update', 'events_by_id') or {}
        return self.calculate(events_by_id)

    def calculate_many(self, updates: Iterable[Union[LedgerUpdate, Dict[str, Any]]]) -> BurnBreakdown:
        total = BurnBreakdown()
        for update in updates:
            total = total + self.calculate_update(update)
        return total
