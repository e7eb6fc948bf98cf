"""
Enable Banking Provider Implementation

Enable Banking is a PSD2-compliant API that provides access to European banks.
Requires mTLS (mutual TLS) authentication with client certificates and
RS256-signed JWTs on every request.

Documentation: https://enablebanking.com/docs/api/reference/
"""

import httpx
import logging
from typing import Dict, Any, List, Optional
from datetime import date, datetime, timedelta, UTC
from decimal import Decimal, InvalidOperation
import jwt

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

logger = logging.getLogger(__name__)

# Safety limit to prevent infinite pagination loops
MAX_PAGES = 100


class EnableBankingProvider(BaseBankProvider):
    """
    Enable Banking API integration.

    Special requirements:
    - mTLS authentication (requires client certificate and private key)
    - ASPSP parameter for bank selection
    - Session based access: the "access token" is the session id and there is
      no refresh; an expired session needs a new authorization
    """

    provider_id = "enable_banking"
    display_name = "Enable Banking"

    supports_transaction_sync = True
    supports_token_refresh = False
    default_lookback_days = 90

    def __init__(self, provider_config):
        """
        Initialize Enable Banking provider.

        Extracts configuration:
        - app_id: Application ID from Enable Banking (JWT key id)
        - certificate_path: Path to client certificate (.crt)
        - private_key_path: Path to private key (.key)
        - access_valid_days: Requested consent validity (max 90)
        """
        super().__init__(provider_config)

        self.app_id = self.get_config_value('app_id')
        self.cert_path = self.get_config_value('certificate_path')
        self.private_key_path = self.get_config_value('private_key_path')
        self.access_valid_days = int(self.get_config_value('access_valid_days', 90))

        # mTLS certificate tuple for httpx
        if self.cert_path and self.private_key_path:
            self.client_cert = (self.cert_path, self.private_key_path)
        else:
            self.client_cert = None

    def _generate_jwt_token(self) -> str:
        """
        Generate JWT token signed with private RSA key for Enable Banking API authentication.

        Returns:
            JWT token string
        """
        if not self.private_key_path:
            raise ProviderPermanentError(
                "Enable Banking private key is not configured",
                context={"provider_id": self.provider_id}
            )

        with open(self.private_key_path, 'r') as f:
            private_key = f.read()

        headers = {
            'typ': 'JWT',
            'alg': 'RS256',
            'kid': self.app_id  # Application ID as key ID
        }

        now = datetime.now(UTC)
        # iat 60 seconds in the past to account for clock skew
        payload = {
            'iss': 'enablebanking.com',
            'aud': 'api.enablebanking.com',
            'iat': int((now - timedelta(seconds=60)).timestamp()),
            'exp': int((now + timedelta(hours=1)).timestamp())
        }

        return jwt.encode(payload, private_key, algorithm='RS256', headers=headers)

    def _headers(self, credentials: Optional[ConnectionCredentials] = None) -> Dict[str, str]:
        headers = {
            'Authorization': f'Bearer {self._generate_jwt_token()}',
            'Accept': 'application/json'
        }
        # PSU headers are required by some ASPSPs (e.g. Bank Norwegian)
        if credentials:
            psu_ip_address = credentials.metadata.get('psu_ip_address')
            psu_user_agent = credentials.metadata.get('psu_user_agent')
            if psu_ip_address:
                headers['PSU-IP-Address'] = psu_ip_address
            if psu_user_agent:
                headers['PSU-User-Agent'] = psu_user_agent
        return headers

    def _client(self, timeout: float = 60.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, cert=self.client_cert)

    async def get_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        bank_id: Optional[str] = None
    ) -> str:
        """
        Initiate Enable Banking OAuth flow by POSTing to /auth endpoint.

        Enable Banking uses a non-standard OAuth flow:
        1. POST to /auth with JWT authentication
        2. Receive a redirect URL
        3. Redirect user to that URL

        Args:
            state: One-time state token
            redirect_uri: Callback URL
            bank_id: ASPSP identifier, "COUNTRY_Bank Name" (e.g. 'NO_Bank Norwegian')

        Returns:
            URL to redirect user to (from Enable Banking response)
        """
        request_body = {
            "access": {
                "valid_until": (datetime.now(UTC) + timedelta(days=self.access_valid_days)).isoformat()
            },
            "state": state,
            "redirect_url": redirect_uri,
            "psu_type": "personal"
        }

        # Without an ASPSP Enable Banking shows its own bank selection screen
        if bank_id:
            # The name must match exactly what Enable Banking returns from /aspsps
            if '_' in bank_id:
                country, bank_name = bank_id.split('_', 1)
            else:
                country, bank_name = "NO", bank_id

            request_body["aspsp"] = {
                "name": bank_name,
                "country": country
            }

        logger.info(f"Starting Enable Banking authorization (aspsp={bank_id or 'selection screen'})")

        async with provider_call(self.provider_id, "authorize"):
            async with self._client(timeout=30.0) as client:
                response = await client.post(
                    self.config.authorization_url,
                    json=request_body,
                    headers={**self._headers(), 'Content-Type': 'application/json'}
                )

        raise_for_provider_status(response, self.provider_id, "authorize")
        return response.json()['url']

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str
    ) -> OAuthTokens:
        """
        Exchange authorization code for session ID.

        POST /sessions returns a session_id that's used for subsequent API calls.
        The expiry comes from the consent's valid_until.

        Args:
            code: Authorization code from callback
            redirect_uri: Not used by Enable Banking
        """
        async with provider_call(self.provider_id, "create_session"):
            async with self._client() as client:
                response = await client.post(
                    self.config.token_url,
                    json={'code': code},
                    headers={**self._headers(), 'Content-Type': 'application/json'}
                )

        raise_for_provider_status(response, self.provider_id, "create_session")
        data = response.json()

        session_id = data.get('session_id') if isinstance(data, dict) else None
        if not session_id:
            raise ProviderPermanentError(
                "No session_id in Enable Banking session response",
                context={"provider_id": self.provider_id}
            )

        access_info = data.get('access') or {}
        valid_until = access_info.get('valid_until') if isinstance(access_info, dict) else None
        expires_at = self._parse_datetime(valid_until)
        if expires_at is None:
            logger.warning("No usable valid_until in session response, using 90-day default")
            expires_at = datetime.now(UTC).replace(tzinfo=None) + timedelta(days=90)

        logger.info(f"Session created: session_id={session_id[:8]}..., valid_until={expires_at.isoformat()}")

        return OAuthTokens(
            access_token=session_id,
            refresh_token=None,  # Enable Banking doesn't use refresh tokens
            expires_at=expires_at,
            token_type='Bearer',
            scopes=['accounts', 'transactions']
        )

    async def refresh_access_token(
        self,
        refresh_token: str
    ) -> OAuthTokens:
        """
        Enable Banking does NOT support session refresh. Sessions are valid
        until the 'valid_until' timestamp set during authorization (up to 90 days).

        Raises:
            ProviderPermanentError: always; the user must re-authorize
        """
        raise ProviderPermanentError(
            "Enable Banking does not support session refresh",
            context={"provider_id": self.provider_id},
            user_message="Your bank session has expired. Please reconnect to continue syncing."
        )

    async def fetch_user_info(
        self,
        credentials: ConnectionCredentials
    ) -> ProviderUserInfo:
        """Enable Banking has no user endpoint; the session id identifies the PSU consent."""
        session = await self._get_session(credentials)
        aspsp = session.get('aspsp') or {}
        return ProviderUserInfo(
            user_id=credentials.tokens.access_token,
            name=aspsp.get('name') if isinstance(aspsp, dict) else None,
            metadata={'status': session.get('status')}
        )

    async def _get_session(self, credentials: ConnectionCredentials) -> Dict[str, Any]:
        async with provider_call(self.provider_id, "get_session"):
            async with self._client() as client:
                response = await client.get(
                    f"{self.config.api_base_url}/sessions/{credentials.tokens.access_token}",
                    headers=self._headers(credentials)
                )

        raise_for_provider_status(response, self.provider_id, "get_session")
        data = response.json()
        if not isinstance(data, dict):
            raise ProviderPermanentError(
                f"Expected object from Enable Banking session endpoint, got {type(data).__name__}",
                context={"provider_id": self.provider_id}
            )
        session_status = (data.get('status') or '').lower()
        if session_status in ('expired', 'closed', 'revoked', 'expr'):
            raise ProviderPermanentError(
                f"Enable Banking session is {session_status}",
                context={"provider_id": self.provider_id},
                user_message="Your bank session has expired. Please reconnect to continue syncing."
            )
        return data

    async def fetch_raw_accounts(
        self,
        credentials: ConnectionCredentials
    ) -> RawAccountsResponse:
        """
        Fetch accounts for the session.

        GET /sessions/{id} lists account UIDs only, so details and balances are
        fetched per account.
        """
        session = await self._get_session(credentials)

        account_details = []
        async with self._client() as client:
            for entry in session.get('accounts', []):
                if isinstance(entry, dict):
                    account_details.append(entry)
                    continue

                async with provider_call(self.provider_id, "account_details"):
                    response = await client.get(
                        f"{self.config.api_base_url}/accounts/{entry}/details",
                        headers=self._headers(credentials)
                    )
                raise_for_provider_status(response, self.provider_id, "account_details")
                details = response.json()
                details.setdefault('uid', entry)

                async with provider_call(self.provider_id, "account_balances"):
                    response = await client.get(
                        f"{self.config.api_base_url}/accounts/{entry}/balances",
                        headers=self._headers(credentials)
                    )
                raise_for_provider_status(response, self.provider_id, "account_balances")
                details['balances'] = response.json().get('balances', [])

                account_details.append(details)

        aspsp = session.get('aspsp') or {}
        institution = InstitutionInfo(
            institution_id=f"{aspsp.get('country')}_{aspsp.get('name')}" if aspsp.get('name') else None,
            name=aspsp.get('name')
        )

        accounts = self._normalize_accounts(account_details, institution)
        logger.info(f"Retrieved {len(accounts)} accounts from session")

        return RawAccountsResponse(
            provider_id=self.provider_id,
            institution=institution,
            accounts=accounts,
            raw={'session': session, 'accounts': account_details}
        )

    async def fetch_transactions(
        self,
        credentials: ConnectionCredentials,
        external_account_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None
    ) -> List[ProviderTransactionData]:
        """
        Fetch transactions for an account with pagination support.

        Enable Banking has important time-based access limitations:
        - Within ~1 hour after authorization: Can fetch full history (years)
        - After ~1 hour: Can only fetch last 90 days

        Only date_from is sent. Some ASPSPs (e.g. Bank Norwegian) return 400
        when date_to is included, so the end of the range is applied locally.

        Args:
            credentials: Session credentials
            external_account_id: Account UID from Enable Banking
            start_date: Start date (inclusive); defaults to the lookback window
            end_date: End date (inclusive); defaults to today
            limit: Maximum number of transactions to return

        Returns:
            Transactions from all pages combined
        """
        end_date = end_date or date.today()
        start_date = start_date or (end_date - timedelta(days=self.default_lookback_days))

        params = {'date_from': start_date.isoformat()}

        all_transactions: List[ProviderTransactionData] = []
        continuation_key = None
        page_num = 0

        async with self._client() as client:
            while True:
                page_num += 1

                current_params = params.copy()
                if continuation_key:
                    current_params['continuation_key'] = continuation_key

                async with provider_call(self.provider_id, "transactions"):
                    response = await client.get(
                        f"{self.config.api_base_url}/accounts/{external_account_id}/transactions",
                        params=current_params,
                        headers=self._headers(credentials)
                    )

                raise_for_provider_status(response, self.provider_id, "transactions")
                data = response.json()

                page_transactions = [
                    tx for tx in self._normalize_transactions(data)
                    if tx.transaction_date is None or tx.transaction_date <= end_date
                ]
                all_transactions.extend(page_transactions)

                logger.debug(f"Page {page_num}: Fetched {len(page_transactions)} transactions "
                             f"(total so far: {len(all_transactions)})")

                if limit and len(all_transactions) >= limit:
                    all_transactions = all_transactions[:limit]
                    break

                continuation_key = data.get('continuation_key') if isinstance(data, dict) else None
                if not continuation_key:
                    break

                if page_num >= MAX_PAGES:
                    logger.warning(f"Reached page limit of {MAX_PAGES}, stopping pagination")
                    break

        logger.info(f"Fetched {len(all_transactions)} transactions for account "
                    f"{external_account_id} in {page_num} page(s)")

        return all_transactions

    async def revoke_token(
        self,
        access_token: str
    ) -> bool:
        """
        Delete the session (DELETE /sessions/{id}).

        An already expired or unknown session counts as revoked.
        """
        async with provider_call(self.provider_id, "delete_session"):
            async with self._client(timeout=30.0) as client:
                response = await client.delete(
                    f"{self.config.api_base_url}/sessions/{access_token}",
                    headers=self._headers()
                )

        if response.status_code in (401, 404):
            return True
        raise_for_provider_status(response, self.provider_id, "delete_session")
        return True

    def _normalize_accounts(
        self,
        accounts_data: List[Dict[str, Any]],
        institution: InstitutionInfo
    ) -> List[ProviderAccountData]:
        """
        Convert Enable Banking account format to ProviderAccountData.

        Enable Banking format:
        {
            "uid": "92d3bfe0-5659-4e12-985c-c2c285c4ae63",
            "name": "Andreas Noteng",
            "details": "Felleskonto",
            "product": "SavingsAccount",
            "cash_account_type": "SVGS",
            "currency": "NOK",
            "account_id": {
                "iban": null,
                "other": {
                    "identification": "93551582505",
                    "scheme_name": "BBAN"
                }
            },
            "balances": [{"balance_amount": {"amount": "1000.00", "currency": "NOK"}}]
        }
        """
        accounts = []

        for account in accounts_data:
            account_id_obj = account.get('account_id') or {}
            iban = account_id_obj.get('iban')
            bban = None
            if isinstance(account_id_obj.get('other'), dict):
                bban = account_id_obj['other'].get('identification')

            details = account.get('details', '')
            product = account.get('product') or 'Account'
            account_name = f"{details} ({product})" if details else (account.get('name') or product)

            servicer = account.get('account_servicer')
            bic = servicer.get('bic_fi') if isinstance(servicer, dict) else servicer

            accounts.append(ProviderAccountData(
                external_account_id=account.get('uid'),
                account_name=account_name,
                account_number=bban or iban,
                account_type=self.map_account_type(account.get('cash_account_type') or product),
                currency=account.get('currency') or 'NOK',
                balance=self._extract_balance(account.get('balances', [])),
                iban=iban,
                bic=bic,
                institution_id=institution.institution_id,
                institution_name=institution.name,
                raw=account
            ))

        return accounts

    def map_account_type(self, provider_account_type: Optional[str]) -> str:
        # ISO 20022 cash account type codes
        iso_codes = {
            'CACC': 'checking',
            'CARD': 'credit_card',
            'SVGS': 'savings',
            'LOAN': 'loan',
        }
        if provider_account_type in iso_codes:
            return iso_codes[provider_account_type]
        return super().map_account_type(provider_account_type)

    def _extract_balance(self, balances: List[Dict[str, Any]]) -> Decimal:
        for balance in balances or []:
            amount = (balance.get('balance_amount') or {}).get('amount')
            if amount is not None:
                try:
                    return Decimal(str(amount))
                except InvalidOperation:
                    continue
        return Decimal('0')

    def _normalize_transactions(self, api_response: Any) -> List[ProviderTransactionData]:
        """
        Convert Enable Banking transaction format to ProviderTransactionData.

        Enable Banking format:
        {
            "transactions": [
                {
                    "entry_reference": "tx-123",
                    "booking_date": "2024-01-15",
                    "value_date": "2024-01-15",
                    "transaction_amount": {"amount": "123.45", "currency": "NOK"},
                    "credit_debit_indicator": "DBIT",
                    "remittance_information": ["COFFEE SHOP"],
                    "creditor": {"name": "Coffee Shop AS"},
                    "reference_number": "REF123"
                }
            ],
            "continuation_key": null
        }

        The amount is passed through as reported; credit_debit_indicator only
        sets the type. Sign is applied during normalization.
        """
        if isinstance(api_response, list):
            booked = api_response
        else:
            transactions_obj = api_response.get('transactions', {})
            if isinstance(transactions_obj, dict):
                # Older format: nested under 'booked'
                booked = transactions_obj.get('booked', [])
            else:
                booked = transactions_obj if isinstance(transactions_obj, list) else []

        transactions = []

        for tx in booked:
            tx_amount = tx.get('transaction_amount') or {}
            amount = None
            if tx_amount.get('amount') is not None:
                try:
                    amount = Decimal(str(tx_amount['amount']))
                except InvalidOperation:
                    amount = None

            # DBIT = money out, CRDT = money in
            tx_type = 'debit' if tx.get('credit_debit_indicator') == 'DBIT' else 'credit'

            creditor = tx.get('creditor')
            debtor = tx.get('debtor')
            counterparty = creditor if tx_type == 'debit' else debtor
            if not isinstance(counterparty, dict):
                counterparty = creditor if isinstance(creditor, dict) else debtor
            counterparty_name = counterparty.get('name') if isinstance(counterparty, dict) else None

            account_obj = tx.get('creditor_account') if tx_type == 'debit' else tx.get('debtor_account')
            counterparty_account = account_obj.get('iban') if isinstance(account_obj, dict) else None

            remittance_info = tx.get('remittance_information', [])
            if isinstance(remittance_info, list) and remittance_info:
                description = ' - '.join([str(r) for r in remittance_info if r])
            else:
                description = str(remittance_info) if remittance_info else ''

            if not description and counterparty_name:
                description = counterparty_name

            transactions.append(ProviderTransactionData(
                external_transaction_id=tx.get('entry_reference') or tx.get('transaction_id'),
                transaction_date=self._parse_date(tx.get('booking_date') or tx.get('value_date')),
                amount=amount,
                currency=tx_amount.get('currency') or 'NOK',
                type=tx_type,
                description=description.strip(),
                reference=tx.get('reference_number') or None,
                counterparty_name=counterparty_name.strip() if counterparty_name else None,
                counterparty_account=counterparty_account,
                raw=tx
            ))

        return transactions

    def _parse_date(self, date_str: Optional[str]) -> Optional[date]:
        """
        Parse Enable Banking date string to Python date.

        Args:
            date_str: Date in YYYY-MM-DD format

        Returns:
            date object or None if invalid
        """
        if not date_str:
            return None

        try:
            return date.fromisoformat(date_str)
        except (ValueError, TypeError):
            return None

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse an ISO timestamp into naive UTC."""
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except (ValueError, TypeError):
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(UTC).replace(tzinfo=None)
        return parsed
