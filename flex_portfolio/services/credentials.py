"""Account holder lookup and encrypted Flex credential storage."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import FlexPortfolioSettings, get_settings
from ..core.crypto import CredentialCipher
from ..errors import CredentialsMissing, HolderNotFound
from ..models import AccountHolder, utcnow


@dataclass(frozen=True)
class FlexCredentials:
    token: str
    query_id: str


async def get_holder(session: AsyncSession, holder_id: str) -> AccountHolder:
    holder = await session.get(AccountHolder, holder_id)
    if holder is None:
        raise HolderNotFound(f"Unknown account holder {holder_id!r}")
    return holder


def holder_base_currency(holder: AccountHolder | None, settings: FlexPortfolioSettings | None = None) -> str:
    settings = settings or get_settings()
    if holder is not None and holder.base_ccy:
        return holder.base_ccy.upper()
    return settings.base_currency.upper()


def resolve_credentials(
    holder: AccountHolder | None,
    cipher_factory,
    *,
    settings: FlexPortfolioSettings | None = None,
    allow_default: bool = False,
) -> FlexCredentials:
    """Decrypt the holder's stored token and query id.

    With ``allow_default`` the configured ``IBKR_FLEX_TOKEN``/``IBKR_QUERY_ID``
    are used when the holder has none stored.
    """

    settings = settings or get_settings()
    if holder is not None and holder.has_flex_credentials:
        cipher: CredentialCipher = cipher_factory()
        return FlexCredentials(
            token=cipher.decrypt(holder.flex_token_enc),
            query_id=cipher.decrypt(holder.flex_query_id_enc),
        )
    if allow_default and settings.ibkr_flex_token and settings.ibkr_query_id:
        return FlexCredentials(token=settings.ibkr_flex_token, query_id=settings.ibkr_query_id)
    raise CredentialsMissing("Missing Flex token or query id")


async def save_flex_credentials(
    session: AsyncSession,
    holder_id: str,
    cipher: CredentialCipher,
    *,
    flex_token: str,
    query_id: str,
    base_ccy: str | None = None,
    name: str | None = None,
) -> AccountHolder:
    """Store encrypted credentials, creating the holder row on first use."""

    token = flex_token.strip()
    query = query_id.strip()
    if not token or not query:
        raise ValueError("Flex token and query id must not be empty")

    holder = await session.get(AccountHolder, holder_id)
    if holder is None:
        holder = AccountHolder(id=holder_id)
        session.add(holder)
    holder.flex_token_enc = cipher.encrypt(token)
    holder.flex_query_id_enc = cipher.encrypt(query)
    if base_ccy:
        holder.base_ccy = base_ccy.strip().upper()
    if name:
        holder.name = name.strip()
    holder.updated_at = utcnow()
    await session.commit()
    await session.refresh(holder)
    return holder


__all__ = [
    "FlexCredentials",
    "get_holder",
    "holder_base_currency",
    "resolve_credentials",
    "save_flex_credentials",
]
