"""
Generic OAuth2 Aggregator Provider

Covers aggregators that follow the standard authorization-code flow with
form-encoded token grants and a bearer-token REST API (Tink and similar).
Endpoint paths are configurable per provider through ProviderConfig.config_data.
"""

import httpx
import logging
from typing import Dict, Any, List, Optional
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

from .base import (
    BaseBankProvider,
    ConnectionCredentials,
    InstitutionInfo,
    OAuthTokens,
    ProviderAccountData,
    ProviderTransactionData,
    ProviderUserInfo,
    RawAccountsResponse,
)
from .http import provider_call, raise_for_provider_status
from ..errors import ProviderPermanentError
from syncengine.app.models import utcnow

logger = logging.getLogger(__name__)


class OAuth2AggregatorProvider(BaseBankProvider):
    """
    OAuth2 aggregator integration.

    config_data keys:
    - client_id, client_secret: OAuth client credentials
    - scope: Requested scopes (default "accounts:read,transactions:read")
    - market: Optional market hint passed to the authorization page
    - accounts_path, transactions_path, user_path, revoke_path: REST endpoints
    - lookback_days: Default history window for new accounts
    """

    display_name = "OAuth2 Aggregator"

    supports_transaction_sync = True
    supports_token_refresh = True

    def __init__(self, provider_config):
        super().__init__(provider_config)

        self.provider_id = provider_config.name
        self.display_name = provider_config.display_name or self.display_name

        self.client_id = self.get_config_value('client_id')
        self.client_secret = self.get_config_value('client_secret')
        self.scope = self.get_config_value('scope', 'accounts:read,transactions:read')
        self.market = self.get_config_value('market')

        self.accounts_path = self.get_config_value('accounts_path', '/api/v1/accounts/list')
        self.transactions_path = self.get_config_value('transactions_path', '/api/v1/transactions/{account_id}')
        self.user_path = self.get_config_value('user_path', '/api/v1/user')
        self.revoke_path = self.get_config_value('revoke_path')

        self.default_lookback_days = int(self.get_config_value('lookback_days', 90))

    async def get_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        bank_id: Optional[str] = None
    ) -> str:
        params = {
            'client_id': self.client_id,
            'redirect_uri': redirect_uri,
            'response_type': 'code',
            'scope': self.scope,
            'state': state,
        }
        if self.market:
            params['market'] = self.market
        if bank_id:
            params['input_provider'] = bank_id

        return f"{self.config.authorization_url}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str], operation: str) -> OAuthTokens:
        async with provider_call(self.provider_id, operation):
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    self.config.token_url,
                    data={
                        **form,
                        'client_id': self.client_id,
                        'client_secret': self.client_secret,
                    },
                    headers={'Content-Type': 'application/x-www-form-urlencoded'}
                )

        raise_for_provider_status(response, self.provider_id, operation)
        data = response.json()

        if not data.get('access_token'):
            raise ProviderPermanentError(
                f"No access_token in {self.provider_id} token response",
                context={"provider_id": self.provider_id, "operation": operation}
            )

        expires_at = None
        if data.get('expires_in'):
            expires_at = utcnow() + timedelta(seconds=int(data['expires_in']))

        scope = data.get('scope') or ''
        return OAuthTokens(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token'),
            expires_at=expires_at,
            token_type=data.get('token_type') or 'Bearer',
            scopes=[s for s in scope.replace(' ', ',').split(',') if s]
        )

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str
    ) -> OAuthTokens:
        return await self._token_request(
            {
                'grant_type': 'authorization_code',
                'code': code,
                'redirect_uri': redirect_uri,
            },
            "exchange_code"
        )

    async def refresh_access_token(
        self,
        refresh_token: str
    ) -> OAuthTokens:
        return await self._token_request(
            {
                'grant_type': 'refresh_token',
                'refresh_token': refresh_token,
            },
            "refresh_token"
        )

    async def _api_get(
        self,
        credentials: ConnectionCredentials,
        path: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        async with provider_call(self.provider_id, operation):
            async with httpx.AsyncClient(timeout=60.0) as client:
                response = await client.get(
                    f"{self.config.api_base_url}{path}",
                    params=params,
                    headers={
                        'Authorization': f'{credentials.tokens.token_type} {credentials.tokens.access_token}',
                        'Accept': 'application/json'
                    }
                )

        raise_for_provider_status(response, self.provider_id, operation)
        return response.json()

    async def fetch_user_info(
        self,
        credentials: ConnectionCredentials
    ) -> ProviderUserInfo:
        data = await self._api_get(credentials, self.user_path, "user_info")
        user = data.get('user', data)
        return ProviderUserInfo(
            user_id=str(user.get('userId') or user.get('id')),
            name=user.get('name') or user.get('username'),
            metadata={k: v for k, v in user.items() if k in ('market', 'locale', 'timeZone')}
        )

    async def fetch_raw_accounts(
        self,
        credentials: ConnectionCredentials
    ) -> RawAccountsResponse:
        data = await self._api_get(credentials, self.accounts_path, "accounts")
        raw_accounts = data.get('accounts', [])

        institution_ids = {a.get('financialInstitutionId') for a in raw_accounts if a.get('financialInstitutionId')}
        institution = InstitutionInfo(
            institution_id=institution_ids.pop() if len(institution_ids) == 1 else None,
            name=self.display_name
        )

        accounts = [self._normalize_account(account, institution) for account in raw_accounts]
        logger.info(f"Retrieved {len(accounts)} accounts from {self.provider_id}")

        return RawAccountsResponse(
            provider_id=self.provider_id,
            institution=institution,
            accounts=accounts,
            raw=data
        )

    async def fetch_transactions(
        self,
        credentials: ConnectionCredentials,
        external_account_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None
    ) -> List[ProviderTransactionData]:
        end_date = end_date or date.today()
        start_date = start_date or (end_date - timedelta(days=self.default_lookback_days))

        params = {
            'startDate': start_date.isoformat(),
            'endDate': end_date.isoformat(),
        }
        if limit:
            params['max'] = limit

        path = self.transactions_path.format(account_id=external_account_id)
        data = await self._api_get(credentials, path, "transactions", params=params)

        transactions = [self._normalize_transaction(tx) for tx in data.get('transactions', [])]
        if limit:
            transactions = transactions[:limit]

        logger.info(f"Fetched {len(transactions)} transactions for account {external_account_id}")
        return transactions

    async def revoke_token(
        self,
        access_token: str
    ) -> bool:
        if not self.revoke_path:
            # Nothing to call; the token expires on its own
            return True

        async with provider_call(self.provider_id, "revoke"):
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.config.api_base_url}{self.revoke_path}",
                    data={
                        'token': access_token,
                        'client_id': self.client_id,
                        'client_secret': self.client_secret,
                    }
                )

        raise_for_provider_status(response, self.provider_id, "revoke")
        return True

    def _normalize_account(self, account: Dict[str, Any], institution: InstitutionInfo) -> ProviderAccountData:
        identifiers = account.get('identifiers') or {}
        iban = identifiers.get('iban')
        bic = None
        if isinstance(iban, dict):
            bic = iban.get('bic')
            iban = iban.get('iban')

        balance, currency = Decimal('0'), None
        booked = ((account.get('balances') or {}).get('booked') or {}).get('amount')
        if booked:
            balance = self._parse_amount(booked.get('value')) or Decimal('0')
            currency = booked.get('currencyCode')
        elif isinstance(account.get('balance'), dict):
            balance = self._parse_amount(account['balance'].get('amount')) or Decimal('0')
            currency = account['balance'].get('currency')
        elif isinstance(account.get('currencyDenominatedBalance'), dict):
            denominated = account['currencyDenominatedBalance']
            balance = self._parse_amount(denominated.get('amount')) or Decimal('0')
            currency = denominated.get('currencyCode')

        return ProviderAccountData(
            external_account_id=str(account.get('id')),
            account_name=account.get('name') or 'Account',
            account_number=account.get('accountNumber') or identifiers.get('bban') or identifiers.get('accountNumber'),
            account_type=self.map_account_type(account.get('type')),
            currency=currency or 'EUR',
            balance=balance,
            iban=iban,
            bic=bic,
            status='closed' if account.get('closed') else 'active',
            institution_id=account.get('financialInstitutionId') or institution.institution_id,
            institution_name=institution.name,
            raw=account
        )

    def _normalize_transaction(self, tx: Dict[str, Any]) -> ProviderTransactionData:
        amount_obj = tx.get('amount') or {}
        if isinstance(amount_obj, dict):
            amount = self._parse_amount(amount_obj.get('value'))
            currency = amount_obj.get('currencyCode') or amount_obj.get('currency')
        else:
            amount = self._parse_amount(amount_obj)
            currency = tx.get('currency')

        dates = tx.get('dates') or {}
        descriptions = tx.get('descriptions') or {}
        pfm = (tx.get('categories') or {}).get('pfm') or {}

        # Aggregators report signed amounts; the sign only decides the type here
        tx_type = 'credit' if amount is not None and amount >= 0 else 'debit'

        return ProviderTransactionData(
            external_transaction_id=tx.get('id'),
            transaction_date=self._parse_date(dates.get('booked') or dates.get('value') or tx.get('date')),
            amount=abs(amount) if amount is not None else None,
            currency=currency or 'EUR',
            type=tx_type,
            description=descriptions.get('display') or descriptions.get('original') or tx.get('description') or '',
            category=pfm.get('name'),
            reference=tx.get('reference'),
            counterparty_name=tx.get('merchantName'),
            raw=tx
        )

    def _parse_amount(self, value: Any) -> Optional[Decimal]:
        """Parse a plain number or a {"unscaledValue", "scale"} pair."""
        if value is None:
            return None
        try:
            if isinstance(value, dict):
                return Decimal(str(value['unscaledValue'])).scaleb(-int(value.get('scale', 0)))
            return Decimal(str(value))
        except (InvalidOperation, KeyError, ValueError, TypeError):
            return None

    def _parse_date(self, value: Optional[str]) -> Optional[date]:
        if not value:
            return None
        try:
            return date.fromisoformat(value[:10])
        except (ValueError, TypeError):
            return None
