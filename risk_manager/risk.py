"""
Auto-Liquidation Settings Reconciler
====================================
Tradovate keeps auto-liq configuration in two parallel entities:

- ``userAccountAutoLiq`` (owner-scoped) - includes lock/unlock and trailing
  drawdown controls
- ``permissionedAccountAutoLiq`` (permission-scoped) - the subset a delegated
  user may edit

Neither entity is authoritative on its own. Reads fetch both and merge them
field by field through ``FIELD_SCHEMA``; writes filter the caller's fields
through the same schema and normalize whichever entity upstream returns.

Usage:
    settings = await get_settings(client, account_id)
    settings = await set_settings(client, account_id, {'dailyLossAutoLiq': 500}, PERMISSIONED)
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from .errors import (
    TokenExpired,
    UpstreamError,
    UpstreamInconsistent,
    UpstreamRejected,
    ValidationError,
)

logger = logging.getLogger(__name__)

OWNER_AUTOLIQ_PATH = "/userAccountAutoLiq/deps"
PERMISSIONED_AUTOLIQ_PATH = "/permissionedAccountAutoLiq/deps"
UPDATE_AUTOLIQ_PATH = "/userAccountAutoLiq/updateuserautoliq"

# Caller roles, also used as merge source names
OWNER = 'owner'
PERMISSIONED = 'permissioned'
ROLES = (OWNER, PERMISSIONED)

DRAWDOWN_MODES = ('EOD', 'RealTime')


# ============================================================================
# FIELD SCHEMA
# ============================================================================

@dataclass(frozen=True)
class FieldRule:
    """How one auto-liq field is merged, who may write it, and what it holds."""
    kind: str                          # amount | percent | flag | mode | timestamp
    sources: Tuple[str, ...]           # merge priority, first non-null wins
    writable_by: FrozenSet[str] = frozenset()


_ANY = frozenset(ROLES)
_OWNER_ONLY = frozenset({OWNER})
_DELEGATED_FIRST = (PERMISSIONED, OWNER)

FIELD_SCHEMA: Dict[str, FieldRule] = {
    # Loss/profit triggers: a permissioned manager's latest edit wins
    'dailyLossAutoLiq': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'dailyProfitAutoLiq': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'weeklyLossAutoLiq': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'weeklyProfitAutoLiq': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'dailyLossAlert': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'dailyLossLiqOnly': FieldRule('amount', _DELEGATED_FIRST, _ANY),
    'dailyLossPercentageAlert': FieldRule('percent', _DELEGATED_FIRST, _ANY),
    'marginPercentageAlert': FieldRule('percent', _DELEGATED_FIRST, _ANY),
    'dailyLossPercentageLiqOnly': FieldRule('percent', _DELEGATED_FIRST, _ANY),
    'marginPercentageLiqOnly': FieldRule('percent', _DELEGATED_FIRST, _ANY),
    'dailyLossPercentageAutoLiq': FieldRule('percent', _DELEGATED_FIRST, _ANY),
    'marginPercentageAutoLiq': FieldRule('percent', _DELEGATED_FIRST, _ANY),

    # Owner privileges: the owner's record wins even over a stale permissioned copy
    'trailingMaxDrawdown': FieldRule('amount', (OWNER, PERMISSIONED), _OWNER_ONLY),
    'trailingMaxDrawdownLimit': FieldRule('amount', (OWNER,), _OWNER_ONLY),
    'trailingMaxDrawdownMode': FieldRule('mode', (OWNER,), _OWNER_ONLY),
    'doNotUnlock': FieldRule('flag', (OWNER,), _OWNER_ONLY),

    # Read-only, reported by upstream
    'changesLocked': FieldRule('flag', (OWNER,)),
    'flattenTimestamp': FieldRule('timestamp', (OWNER,)),
}


def writable_fields(role: str) -> FrozenSet[str]:
    """Names of the fields ``role`` may transmit on a write."""
    return frozenset(name for name, rule in FIELD_SCHEMA.items() if role in rule.writable_by)


# ============================================================================
# LOGICAL SETTINGS VIEW
# ============================================================================

@dataclass
class AutoLiqSettings:
    """
    Reconciled auto-liq settings for one account.

    ``values`` is keyed by Tradovate field name. There is no single canonical
    id; the two source-scoped ids are kept side by side.
    """
    values: Dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[int] = None
    permissioned_id: Optional[int] = None

    def get(self, name: str, default=None):
        value = self.values.get(name)
        return default if value is None else value

    def __getitem__(self, name: str):
        return self.values[name]

    def to_dict(self) -> Dict[str, Any]:
        data = {name: self.values.get(name) for name in FIELD_SCHEMA}
        data['ownerAutoLiqId'] = self.owner_id
        data['permissionedAutoLiqId'] = self.permissioned_id
        return data


def merge_settings(owner: Optional[dict], permissioned: Optional[dict]) -> Optional[AutoLiqSettings]:
    """Merge owner and permissioned records; None when both are absent."""
    if owner is None and permissioned is None:
        return None

    records = {OWNER: owner or {}, PERMISSIONED: permissioned or {}}
    values = {}
    for name, rule in FIELD_SCHEMA.items():
        values[name] = next(
            (records[source][name] for source in rule.sources if records[source].get(name) is not None),
            None,
        )

    return AutoLiqSettings(
        values=values,
        owner_id=owner.get('id') if owner else None,
        permissioned_id=permissioned.get('id') if permissioned else None,
    )


# ============================================================================
# READ PATH
# ============================================================================

async def _fetch_first(client, path: str, account_id: int) -> Optional[dict]:
    """First record of an auto-liq query, or None when empty or not accessible."""
    try:
        records = await client.get(path, {'masterid': account_id})
    except TokenExpired:
        # The caller's role may simply not grant access to this entity
        logger.info(f"Access denied for {path} (account {account_id}) - treating as absent")
        return None

    if records is None:
        return None
    if not isinstance(records, list):
        raise UpstreamError(200, repr(records), f"{path} returned {type(records).__name__}, expected a list")
    return records[0] if records else None


async def get_settings(client, account_id: int) -> Optional[AutoLiqSettings]:
    """
    Current reconciled auto-liq settings for ``account_id``.

    Both entities are read concurrently. A branch the caller is not allowed to
    see counts as absent; any other failure aborts the whole read.

    Returns:
        AutoLiqSettings, or None when neither entity is configured
    """
    owner, permissioned = await asyncio.gather(
        _fetch_first(client, OWNER_AUTOLIQ_PATH, account_id),
        _fetch_first(client, PERMISSIONED_AUTOLIQ_PATH, account_id),
    )

    logger.info(
        f"[risk] account {account_id}: owner={'yes' if owner else 'no'}, "
        f"permissioned={'yes' if permissioned else 'no'}"
    )
    return merge_settings(owner, permissioned)


# ============================================================================
# WRITE PATH
# ============================================================================

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate(name: str, value) -> None:
    kind = FIELD_SCHEMA[name].kind
    if kind in ('amount', 'percent'):
        if not _is_number(value) or not math.isfinite(value) or value <= 0:
            raise ValidationError(name, "must be a finite positive number")
    elif kind == 'flag':
        if not isinstance(value, bool):
            raise ValidationError(name, "must be true or false")
    elif kind == 'mode':
        if value not in DRAWDOWN_MODES:
            raise ValidationError(name, f"must be one of {', '.join(DRAWDOWN_MODES)}")


def filter_fields(requested: Dict[str, Any], caller_role: str) -> Dict[str, Any]:
    """
    Keep the non-null fields ``caller_role`` may write.

    Anything else is dropped without error; a UI may submit owner-only fields
    regardless of who is connected.
    """
    if caller_role not in ROLES:
        raise ValueError(f"Unknown caller role: {caller_role}")

    allowed = writable_fields(caller_role)
    kept = {name: value for name, value in requested.items() if name in allowed and value is not None}

    dropped = sorted(name for name in requested if name not in kept)
    if dropped:
        logger.info(f"Dropping fields not writable by {caller_role}: {', '.join(dropped)}")
    return kept


def validate_fields(fields: Dict[str, Any]) -> None:
    if not fields:
        raise ValidationError(None, "No valid risk parameters provided")
    for name, value in fields.items():
        _validate(name, value)


@dataclass(frozen=True)
class OwnerResult:
    entity: dict


@dataclass(frozen=True)
class PermissionedResult:
    entity: dict


@dataclass(frozen=True)
class Rejected:
    text: str


@dataclass(frozen=True)
class Inconsistent:
    payload: Any = None


UpdateOutcome = Union[OwnerResult, PermissionedResult, Rejected, Inconsistent]


def classify_update_response(payload: Any) -> UpdateOutcome:
    """Tag an ``updateuserautoliq`` response by which shape upstream returned."""
    if not isinstance(payload, dict):
        return Inconsistent(payload)
    if payload.get('errorText'):
        return Rejected(payload['errorText'])
    if payload.get('userAccountAutoLiq'):
        return OwnerResult(payload['userAccountAutoLiq'])
    if payload.get('permissionedAccountAutoLiq'):
        return PermissionedResult(payload['permissionedAccountAutoLiq'])
    return Inconsistent(payload)


def normalize_outcome(outcome: UpdateOutcome) -> AutoLiqSettings:
    if isinstance(outcome, OwnerResult):
        return merge_settings(outcome.entity, None)
    if isinstance(outcome, PermissionedResult):
        return merge_settings(None, outcome.entity)
    if isinstance(outcome, Rejected):
        raise UpstreamRejected(outcome.text)
    raise UpstreamInconsistent()


async def set_settings(client, account_id: int, requested_fields: Dict[str, Any],
                       caller_role: str) -> AutoLiqSettings:
    """
    Create or update auto-liq settings for ``account_id``.

    Upstream decides whether the owner or the permissioned entity receives
    the write; either way the result comes back as the logical settings view.

    Raises:
        ValidationError: nothing writable left, or a value out of range
        UpstreamRejected: upstream answered with an error text
        UpstreamInconsistent: upstream answered with no entity
    """
    fields = filter_fields(requested_fields, caller_role)
    validate_fields(fields)

    body = {'accountId': account_id, **fields}
    logger.info(f"Updating auto-liq for account {account_id} as {caller_role}: {fields}")

    payload = await client.post(UPDATE_AUTOLIQ_PATH, body)
    outcome = classify_update_response(payload)

    if isinstance(outcome, Rejected):
        logger.error(f"❌ Auto-liq update rejected for account {account_id}: {outcome.text}")
    elif isinstance(outcome, Inconsistent):
        logger.error(f"❌ Auto-liq update for account {account_id} returned no entity: {payload}")

    return normalize_outcome(outcome)


async def set_daily_limits(client, account_id: int, daily_loss: float, daily_profit: float,
                           keep_closed: bool = True, caller_role: str = PERMISSIONED) -> AutoLiqSettings:
    """Set the daily loss limit and profit target; owners can also keep the account closed."""
    logger.info(
        f"Setting account {account_id}: dailyLoss=${daily_loss}, "
        f"dailyProfit=${daily_profit}, doNotUnlock={keep_closed}"
    )
    return await set_settings(client, account_id, {
        'dailyLossAutoLiq': daily_loss,
        'dailyProfitAutoLiq': daily_profit,
        'doNotUnlock': keep_closed,
    }, caller_role)


# ============================================================================
# DISPLAY
# ============================================================================

def _money(value) -> str:
    return "not set" if value is None else f"${value}"


def format_settings(settings: Optional[AutoLiqSettings]) -> str:
    if settings is None:
        return "  No auto-liq settings configured."

    lines = [
        f"  Owner Auto-Liq ID:        {settings.owner_id if settings.owner_id is not None else '-'}",
        f"  Permissioned Auto-Liq ID: {settings.permissioned_id if settings.permissioned_id is not None else '-'}",
        f"  Daily Loss Auto-Liq:      {_money(settings.get('dailyLossAutoLiq'))}",
        f"  Daily Profit Auto-Liq:    {_money(settings.get('dailyProfitAutoLiq'))}",
        f"  Weekly Loss Auto-Liq:     {_money(settings.get('weeklyLossAutoLiq'))}",
        f"  Weekly Profit Auto-Liq:   {_money(settings.get('weeklyProfitAutoLiq'))}",
        f"  Trailing Max Drawdown:    {_money(settings.get('trailingMaxDrawdown'))}",
        f"  Drawdown Mode:            {settings.get('trailingMaxDrawdownMode', 'not set')}",
        f"  Flatten Timestamp:        {settings.get('flattenTimestamp', 'not set')}",
        f"  Do Not Unlock:            {settings.get('doNotUnlock', False)}",
        f"  Changes Locked:           {settings.get('changesLocked', False)}",
    ]
    return "\n".join(lines)
