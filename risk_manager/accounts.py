"""Tradovate account lookups and caller-role resolution."""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from .errors import TokenExpired, UpstreamError
from .risk import OWNER, PERMISSIONED

logger = logging.getLogger(__name__)


@dataclass
class Account:
    id: int
    name: str
    user_id: Optional[int] = None
    account_type: Optional[str] = None
    active: bool = False
    clearing_house_id: Optional[int] = None
    risk_category_id: Optional[int] = None
    auto_liq_profile_id: Optional[int] = None
    margin_account_type: Optional[str] = None
    legal_status: Optional[str] = None
    timestamp: Optional[str] = None
    readonly: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            user_id=data.get('userId'),
            account_type=data.get('accountType'),
            active=bool(data.get('active', False)),
            clearing_house_id=data.get('clearingHouseId'),
            risk_category_id=data.get('riskCategoryId'),
            auto_liq_profile_id=data.get('autoLiqProfileId'),
            margin_account_type=data.get('marginAccountType'),
            legal_status=data.get('legalStatus'),
            timestamp=data.get('timestamp'),
            readonly=data.get('readonly'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Tradovate-style camelCase representation."""
        raw = asdict(self)
        return {
            'id': raw['id'],
            'name': raw['name'],
            'userId': raw['user_id'],
            'accountType': raw['account_type'],
            'active': raw['active'],
            'clearingHouseId': raw['clearing_house_id'],
            'riskCategoryId': raw['risk_category_id'],
            'autoLiqProfileId': raw['auto_liq_profile_id'],
            'marginAccountType': raw['margin_account_type'],
            'legalStatus': raw['legal_status'],
            'timestamp': raw['timestamp'],
            'readonly': raw['readonly'],
        }


async def list_accounts(client) -> List[Account]:
    """All accounts visible to the authenticated user."""
    data = await client.get("/account/list") or []
    logger.info(f"Retrieved {len(data)} accounts from Tradovate")
    return [Account.from_dict(item) for item in data]


async def get_account(client, account_id: int) -> Account:
    data = await client.get("/account/item", {'id': account_id})
    return Account.from_dict(data)


async def resolve_caller_role(client, account_id: int) -> str:
    """
    Decide whether the connected user owns ``account_id``.

    Owner when the token's user id matches the account's user id. Anything
    that stops the check (a refusal, an upstream error, an unexpected body)
    means the caller is treated as permissioned, so owner-only fields are
    dropped rather than failing the write.
    """
    try:
        me, account = await asyncio.gather(
            client.get("/auth/me"),
            client.get("/account/item", {'id': account_id}),
        )
    except (TokenExpired, UpstreamError) as e:
        logger.info(f"Account {account_id} ownership check failed ({e}) - treating caller as permissioned")
        return PERMISSIONED

    if not isinstance(me, dict) or not isinstance(account, dict):
        logger.info(f"Account {account_id} ownership check returned no user - treating caller as permissioned")
        return PERMISSIONED

    user_id = me.get('userId')
    role = OWNER if user_id is not None and user_id == account.get('userId') else PERMISSIONED
    logger.debug(f"Caller role for account {account_id}: {role}")
    return role
