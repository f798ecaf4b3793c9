# consensus_engine/services/identity_service.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from consensus_engine.models.user import UserWallet


@dataclass(frozen=True)
class VoterIdentity:
    """Everything one person can vote with, resolved once per operation."""

    key: str
    user_id: Optional[int]
    wallets: frozenset[str] = field(default_factory=frozenset)


def normalize_address(address: str) -> str:
    return address.strip().lower()


def wallets_for_user(db: Session, user_id: int) -> set[str]:
    rows = db.query(UserWallet.address).filter(UserWallet.user_id == user_id).all()
    return {normalize_address(row[0]) for row in rows}


def link_wallet(db: Session, *, user_id: int, address: str) -> UserWallet:
    wallet = UserWallet(user_id=user_id, address=normalize_address(address))
    db.add(wallet)
    db.flush()
    return wallet


def resolve_identity(db: Session, wallet_address: str) -> VoterIdentity:
    address = normalize_address(wallet_address)
    owner = db.query(UserWallet).filter(UserWallet.address == address).first()
    if owner is None:
        return VoterIdentity(key=f"wallet:{address}", user_id=None, wallets=frozenset({address}))

    wallets = wallets_for_user(db, owner.user_id)
    wallets.add(address)
    return VoterIdentity(
        key=f"user:{owner.user_id}",
        user_id=owner.user_id,
        wallets=frozenset(wallets),
    )
