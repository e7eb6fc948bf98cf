"""
Reconciliation Matcher

Detects when a new connection covers the same real-world accounts as an
earlier connection of the same tenant (the user re-linked their bank), links
the new connection to the existing history and computes the smart resume date
so that history is not imported twice.

Signals, strongest first:
1. External account id (same provider)
2. Account number, compared on the last four digits (same provider)
3. IBAN (any provider of the tenant)
"""

import logging
import re
from collections import Counter
from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .connections import ConnectionRegistry
from .normalization import transaction_key
from syncengine.app.models import (
    Account,
    Connection,
    ConnectionEventType,
    ConnectionStatus,
    ProviderAccount,
    Transaction,
)

logger = logging.getLogger(__name__)

SIGNAL_EXTERNAL_ID = "external_id"
SIGNAL_ACCOUNT_NUMBER = "account_number"
SIGNAL_IBAN = "iban"

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

LINK_AND_RESUME = "link_and_resume"
TREAT_AS_NEW = "treat_as_new"


class AccountMatch(BaseModel):
    provider_account_id: int
    external_account_id: str
    historical_account_id: int
    previous_connection_id: Optional[int] = None
    signal: str


class ReconnectionMatch(BaseModel):
    previous_connection_id: Optional[int] = None
    confidence: Optional[str] = None
    recommendation: str = TREAT_AS_NEW
    matches: List[AccountMatch] = Field(default_factory=list)
    unmatched_external_ids: List[str] = Field(default_factory=list)
    resume_date: Optional[date] = None
    preserved_transactions: int = 0

    @property
    def should_link(self) -> bool:
        return self.recommendation == LINK_AND_RESUME

    def to_dict(self) -> Dict:
        return {
            "previous_connection_id": self.previous_connection_id,
            "confidence": self.confidence,
            "recommendation": self.recommendation,
            "matched_accounts": len(self.matches),
            "unmatched_accounts": len(self.unmatched_external_ids),
            "resume_date": self.resume_date.isoformat() if self.resume_date else None,
            "preserved_transactions": self.preserved_transactions,
        }


def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def _normalize_iban(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"\s", "", value).upper()


def account_numbers_match(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two possibly masked account numbers on their last four digits."""
    digits_a, digits_b = _digits(a), _digits(b)
    if len(digits_a) < 4 or len(digits_b) < 4:
        return False
    return digits_a[-4:] == digits_b[-4:]


class ReconciliationMatcher:

    def __init__(self, db: Session, registry: Optional[ConnectionRegistry] = None):
        self.db = db
        self.registry = registry or ConnectionRegistry(db)

    def find_match(
        self,
        connection: Connection,
        provider_accounts: List[ProviderAccount]
    ) -> ReconnectionMatch:
        """
        Decide whether the new connection's accounts are already known.

        The decision covers the whole connection: anything short of a full
        match is treated as new.
        """
        if not provider_accounts:
            return ReconnectionMatch()

        candidates = self._candidate_accounts(connection, provider_accounts)

        if not candidates:
            return ReconnectionMatch(unmatched_external_ids=[pa.external_account_id for pa in provider_accounts])

        claimed = set()
        matches: List[AccountMatch] = []
        unmatched: List[str] = []

        for pa in provider_accounts:
            found = self._match_account(pa, connection.provider_id, candidates, claimed)
            if found is None:
                unmatched.append(pa.external_account_id)
                continue

            historical, signal = found
            claimed.add(historical.id)
            matches.append(AccountMatch(
                provider_account_id=pa.id,
                external_account_id=pa.external_account_id,
                historical_account_id=historical.id,
                previous_connection_id=historical.connection_id,
                signal=signal
            ))

        if not matches:
            return ReconnectionMatch(unmatched_external_ids=unmatched)

        if unmatched:
            confidence = CONFIDENCE_LOW
        elif any(m.signal == SIGNAL_ACCOUNT_NUMBER for m in matches):
            confidence = CONFIDENCE_MEDIUM
        else:
            confidence = CONFIDENCE_HIGH

        previous_ids = Counter(m.previous_connection_id for m in matches if m.previous_connection_id)
        previous_connection_id = previous_ids.most_common(1)[0][0] if previous_ids else None

        historical_ids = [m.historical_account_id for m in matches]
        resume_date, preserved = self.db.query(
            func.max(Transaction.transaction_date),
            func.count(Transaction.id)
        ).filter(Transaction.account_id.in_(historical_ids)).one()

        match = ReconnectionMatch(
            previous_connection_id=previous_connection_id,
            confidence=confidence,
            recommendation=LINK_AND_RESUME if confidence in (CONFIDENCE_HIGH, CONFIDENCE_MEDIUM) else TREAT_AS_NEW,
            matches=matches,
            unmatched_external_ids=unmatched,
            resume_date=resume_date,
            preserved_transactions=preserved or 0
        )

        logger.info(f"Reconnection check for connection {connection.id}: confidence={confidence}, "
                    f"matched={len(matches)}, unmatched={len(unmatched)}, resume_date={resume_date}")
        return match

    def _candidate_accounts(
        self,
        connection: Connection,
        provider_accounts: List[ProviderAccount]
    ) -> List[Account]:
        """
        Accounts of the tenant held by other connections that are no longer live.

        Accounts of a second connection that is still active and syncing are
        not candidates; they belong to that connection.
        """
        new_account_ids = {pa.account_id for pa in provider_accounts if pa.account_id}

        query = self.db.query(Account).outerjoin(
            Connection, Account.connection_id == Connection.id
        ).filter(
            Account.tenant_id == connection.tenant_id,
            or_(Account.connection_id.is_(None), Account.connection_id != connection.id),
            or_(
                Connection.id.is_(None),
                Connection.deleted_at.isnot(None),
                Connection.status != ConnectionStatus.ACTIVE
            )
        )
        if new_account_ids:
            query = query.filter(~Account.id.in_(new_account_ids))

        return query.order_by(Account.id).all()

    def _match_account(
        self,
        provider_account: ProviderAccount,
        provider_id: str,
        candidates: List[Account],
        claimed: set
    ):
        available = [c for c in candidates if c.id not in claimed]

        for candidate in available:
            if candidate.provider_id == provider_id and candidate.external_account_id == provider_account.external_account_id:
                return candidate, SIGNAL_EXTERNAL_ID

        for candidate in available:
            if candidate.provider_id == provider_id and account_numbers_match(
                candidate.account_number, provider_account.account_number
            ):
                return candidate, SIGNAL_ACCOUNT_NUMBER

        iban = _normalize_iban(provider_account.iban)
        if iban:
            for candidate in available:
                if _normalize_iban(candidate.iban) == iban:
                    return candidate, SIGNAL_IBAN

        return None

    def link(
        self,
        connection: Connection,
        match: ReconnectionMatch
    ) -> ReconnectionMatch:
        """
        Move matched historical accounts and their transactions onto the new connection.

        The Account created for the new connection during the account upsert
        is merged into the historical one, which keeps its id.
        """
        for account_match in match.matches:
            provider_account = self.db.get(ProviderAccount, account_match.provider_account_id)
            historical = self.db.get(Account, account_match.historical_account_id)
            duplicate = provider_account.account

            if duplicate is not None and duplicate.id != historical.id:
                historical.name = duplicate.name
                historical.balance = duplicate.balance
                historical.currency = duplicate.currency
                historical.status = duplicate.status
                historical.closed_at = duplicate.closed_at
                historical.account_number = historical.account_number or duplicate.account_number
                historical.iban = historical.iban or duplicate.iban

                self.db.query(Transaction).filter(
                    Transaction.account_id == duplicate.id
                ).update({Transaction.account_id: historical.id}, synchronize_session=False)

                provider_account.account = historical
                self.db.flush()
                self.db.delete(duplicate)

            historical.connection_id = connection.id

            # Moved rows are re-keyed under the new connection
            moved = self.db.query(Transaction).filter(Transaction.account_id == historical.id).all()
            for tx in moved:
                tx.connection_id = connection.id
                tx.provider_id = connection.provider_id
                tx.transaction_key = transaction_key(
                    connection.provider_id, connection.id, tx.external_transaction_id
                )
            self.db.flush()

        self.db.commit()

        if match.previous_connection_id:
            self.registry.record_reconnection(connection, match.previous_connection_id, match.confidence)

        self.registry.record_event(
            connection,
            ConnectionEventType.RECONNECTION,
            previous_connection_id=match.previous_connection_id,
            data=match.to_dict()
        )

        logger.info(f"Connection {connection.id} linked to connection {match.previous_connection_id}: "
                    f"{len(match.matches)} accounts, {match.preserved_transactions} transactions preserved")
        return match
