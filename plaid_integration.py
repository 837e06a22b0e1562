"""Plaid client wrapper.

The client is built explicitly and handed to the sync pipeline and account
store, so tests can pass a fake with the same methods. Plaid errors are
translated here into transient (retryable) and permanent provider errors.
"""

from __future__ import annotations

import datetime
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import plaid
import structlog
from plaid.api import plaid_api
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions
from urllib3.exceptions import HTTPError as TransportError

import config
from errors import ProviderConfigurationError, ProviderPermanentError, ProviderTransientError

logger = structlog.get_logger(__name__)

PLAID_HOSTS = {
    "sandbox": plaid.Environment.Sandbox,
    "production": plaid.Environment.Production,
}

# Plaid error types/codes worth retrying; everything else is permanent.
TRANSIENT_ERROR_TYPES = {"RATE_LIMIT_EXCEEDED", "API_ERROR", "INSTITUTION_ERROR"}
TRANSIENT_ERROR_CODES = {"PRODUCT_NOT_READY", "INTERNAL_SERVER_ERROR", "PLANNED_MAINTENANCE"}


def translate_api_exception(exc: plaid.ApiException):
    """Map a Plaid ``ApiException`` onto the provider error taxonomy."""
    status = getattr(exc, "status", None)
    error_type = error_code = None
    message = str(exc)
    try:
        body = json.loads(exc.body or "{}")
        error_type = body.get("error_type")
        error_code = body.get("error_code")
        message = body.get("error_message") or message
    except (TypeError, ValueError):
        pass

    transient = (
        status in (None, 0, 408, 429)
        or (status is not None and status >= 500)
        or error_type in TRANSIENT_ERROR_TYPES
        or error_code in TRANSIENT_ERROR_CODES
    )
    cls = ProviderTransientError if transient else ProviderPermanentError
    return cls(message, status_code=status, error_code=error_code)


class PlaidProvider:
    """Thin adapter over ``PlaidApi`` returning plain dicts."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        secret: Optional[str] = None,
        environment: str = config.PLAID_ENV,
        *,
        timeout: float = config.PLAID_TIMEOUT_SECONDS,
        webhook_url: Optional[str] = config.PLAID_WEBHOOK_URL,
        client: Optional[plaid_api.PlaidApi] = None,
    ):
        self.timeout = timeout
        self.webhook_url = webhook_url
        if client is not None:
            self.client = client
            return

        if not client_id or not secret:
            raise ProviderConfigurationError("Plaid credentials not set in .env")
        host = PLAID_HOSTS.get(environment)
        if host is None:
            raise ProviderConfigurationError(f"Unknown PLAID_ENV {environment!r}")

        configuration = plaid.Configuration(
            host=host,
            api_key={
                "clientId": client_id,
                "secret": secret,
            },
        )
        self.client = plaid_api.PlaidApi(plaid.ApiClient(configuration))

    @classmethod
    def from_env(cls) -> "PlaidProvider":
        return cls(config.PLAID_CLIENT_ID, config.PLAID_SECRET, config.PLAID_ENV)

    def _call(self, method, request) -> Dict[str, Any]:
        try:
            response = method(request, _request_timeout=self.timeout)
        except plaid.ApiException as exc:
            raise translate_api_exception(exc) from exc
        except TransportError as exc:
            raise ProviderTransientError(f"Plaid transport error: {exc}") from exc
        return response.to_dict()

    def create_link_token(self, user_id: str) -> str:
        """
        Generates a Link Token to initialize Plaid Link on the client side.
        """
        kwargs = dict(
            products=[Products("transactions")],
            client_name="Expense Tracker",
            country_codes=[CountryCode("US")],
            language="en",
            user=LinkTokenCreateRequestUser(client_user_id=user_id),
        )
        if self.webhook_url:
            kwargs["webhook"] = self.webhook_url
        response = self._call(self.client.link_token_create, LinkTokenCreateRequest(**kwargs))
        return response["link_token"]

    def exchange_public_token(self, public_token: str) -> Tuple[str, str]:
        """
        Exchanges the public token (from Plaid Link) for an access token.
        """
        request = ItemPublicTokenExchangeRequest(public_token=public_token)
        response = self._call(self.client.item_public_token_exchange, request)
        return response["access_token"], response["item_id"]

    def get_institution_id(self, access_token: str) -> Optional[str]:
        response = self._call(self.client.item_get, ItemGetRequest(access_token=access_token))
        return (response.get("item") or {}).get("institution_id")

    def list_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        response = self._call(self.client.accounts_get, AccountsGetRequest(access_token=access_token))
        return response.get("accounts", [])

    def get_transactions(
        self,
        access_token: str,
        start_date: datetime.date,
        end_date: datetime.date,
        *,
        count: int,
        offset: int,
        account_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """One page of /transactions/get: ``{"transactions": [...], "total_transactions": N}``."""
        options = dict(
            count=count,
            offset=offset,
            include_personal_finance_category=True,
        )
        if account_ids:
            options["account_ids"] = list(account_ids)

        request = TransactionsGetRequest(
            access_token=access_token,
            start_date=start_date,
            end_date=end_date,
            options=TransactionsGetRequestOptions(**options),
        )
        response = self._call(self.client.transactions_get, request)
        return {
            "transactions": response.get("transactions", []),
            "total_transactions": response.get("total_transactions", 0),
        }
