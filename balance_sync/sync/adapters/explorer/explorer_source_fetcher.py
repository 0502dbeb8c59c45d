import json
import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from balance_sync.core.concurrency.cancellation import CancellationToken
from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.adapters.explorer.explorer_errors import ExplorerApiError, ExplorerHttpError
from balance_sync.sync.domain.balance_math import wei_to_decimal
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import (
    MalformedBalanceError,
    SourceAuthorizationError,
    SourceUnavailableError,
)
from balance_sync.sync.domain.network import Network, Provenance
from balance_sync.sync.interfaces.source_fetcher import SourceFetcher

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
NO_TOKENS_MESSAGE = "No tokens found"


class ExplorerSourceFetcher(SourceFetcher):
    """
    Reads balances from an Etherscan-style block explorer.
    One call for the ERC-20 token list, one for the native coin.
    """

    def __init__(
        self,
        base_urls: Dict[Network, str],
        max_retries: int = 3,
        timeout: float = 10.0,
        time_source: Optional[TimeSource] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_urls = dict(base_urls)
        self.timeout = timeout
        self.time_source = time_source or SystemTimeSource()
        self.session = session or self._create_session(max_retries)

    @classmethod
    def from_settings(cls, settings, time_source: Optional[TimeSource] = None) -> "ExplorerSourceFetcher":
        return cls(
            base_urls={
                Network.MAINNET: settings.EXPLORER_URL_MAINNET,
                Network.TESTNET: settings.EXPLORER_URL_TESTNET,
            },
            max_retries=settings.EXPLORER_MAX_RETRIES,
            timeout=settings.EXPLORER_HTTP_TIMEOUT_SECONDS,
            time_source=time_source,
        )

    def _create_session(self, max_retries: int) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def fetch(
        self,
        address: str,
        network: Network,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BalanceSnapshot:
        tokens_data = self._get(network, {"module": "account", "action": "tokenlist", "address": address}, cancel_token)
        if tokens_data.get("status") != "1" and tokens_data.get("message") != NO_TOKENS_MESSAGE:
            raise ExplorerApiError("tokenlist", str(tokens_data.get("message") or "Unknown error"), tokens_data.get("result"))

        balance_data = self._get(
            network,
            {"module": "account", "action": "balance", "address": address, "tag": "latest"},
            cancel_token,
        )
        if balance_data.get("status") != "1":
            raise ExplorerApiError("balance", str(balance_data.get("message") or "Unknown error"), balance_data.get("result"))

        balances: Dict[str, str] = {}
        try:
            balances[network.native_symbol] = wei_to_decimal(balance_data.get("result"), NATIVE_DECIMALS)
        except MalformedBalanceError as e:
            raise SourceUnavailableError(f"malformed native balance for {address}: {e}") from e

        token_list = tokens_data.get("result")
        if isinstance(token_list, list):
            for token in token_list:
                self._add_token(balances, token)

        return BalanceSnapshot(
            user_id="",
            network=network,
            address=address,
            balances_table=balances,
            captured_at=self.time_source.now(),
            provenance=Provenance.LIVE,
            metadata={"source": "explorer"},
        )

    def _add_token(self, balances: Dict[str, str], token: Any) -> None:
        if not isinstance(token, dict) or not token.get("symbol"):
            logger.warning(f"Skipping explorer token entry without symbol: {token!r}")
            return
        symbol = str(token["symbol"])
        try:
            decimals = int(token.get("decimals") or 0)
            balances[symbol] = wei_to_decimal(token.get("balance"), decimals)
        except (ValueError, MalformedBalanceError) as e:
            logger.warning(f"Skipping malformed explorer balance for {symbol}: {e}")

    def _get(
        self,
        network: Network,
        params: Dict[str, str],
        cancel_token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        url = self.base_urls[network].rstrip("/") + "/"
        action = params["action"]
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Explorer network error on {action}: {e}")
            raise SourceUnavailableError(f"request failed: {e}") from e

        if response.status_code in (401, 403):
            logger.warning(f"Explorer rejected credentials on {action}: HTTP {response.status_code}")
            raise SourceAuthorizationError(f"explorer {action} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ExplorerHttpError(response.status_code, action)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Explorer invalid JSON on {action}: {e}")
            raise SourceUnavailableError("Invalid JSON response") from e
        if not isinstance(data, dict):
            raise SourceUnavailableError(f"unexpected explorer payload for {action}")
        return data
