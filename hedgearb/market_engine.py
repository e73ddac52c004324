# hedgearb/market_engine.py
import logging
from typing import Dict, List, Optional

import ccxt.async_support as ccxt

from .errors import HedgeArbError
from .exchange import CcxtVenue, ExchangeVenue
from .models import MarketType


class MarketEngine:
    """
    Builds the venue adapters from config and runs the startup diagnostics.
    A venue that fails its diagnostic stays registered but unavailable, so the
    risk gate rejects trades routed to it while the scanner simply gets no
    quotes from it.
    """
    def __init__(self, config: dict, logger: Optional[logging.Logger] = None, venue_names: Optional[List[str]] = None):
        self.cfg = config
        self.logger = logger or logging.getLogger("hedgearb.market")
        self.venue_names = venue_names or list(config['exchanges'].keys())
        self.venues: Dict[str, ExchangeVenue] = {}

    async def initialize(self) -> bool:
        """
        Connects to each venue: public API (load_markets) first, then the
        private API (balance) when credentials are configured.
        Returns False if ANY venue fails the diagnostic.
        """
        all_connected = True
        self.logger.info("📡 TESTING EXCHANGE CONNECTIONS...")

        for name in self.venue_names:
            creds = self.cfg['exchanges'].get(name) or {}
            try:
                venue = CcxtVenue(name, creds, self.cfg, self.logger)
            except AttributeError:
                self.logger.critical(f"   ❌ {name.upper():<10} | UNSUPPORTED: ccxt has no exchange called '{name}'.")
                all_connected = False
                continue

            self.venues[name] = venue
            try:
                await venue.initialize()
                if creds.get('api_key'):
                    await venue.fetch_free_balance(MarketType.SPOT)
                    auth = "OK"
                else:
                    auth = "NO KEYS (quotes only)"
                self.logger.info(f"   ✅ {name.upper():<10} | Markets: OK | Auth: {auth}")
            except HedgeArbError as e:
                all_connected = False
                self.logger.critical(f"   ❌ {name.upper():<10} | {self._describe(e)}")
                await venue.close()

        return all_connected

    @staticmethod
    def _describe(error: HedgeArbError) -> str:
        cause = error.__cause__
        if isinstance(cause, ccxt.AuthenticationError):
            return "AUTH FAILED: Invalid API Key or Secret."
        if isinstance(cause, ccxt.PermissionDenied):
            return "PERMISSION DENIED: Key missing trading or IP whitelist permissions."
        if isinstance(cause, ccxt.AccountSuspended):
            return "ACCOUNT SUSPENDED: Contact support immediately."
        if isinstance(cause, ccxt.RequestTimeout):
            return "TIMEOUT: Exchange API is slow or down."
        if isinstance(cause, ccxt.ExchangeNotAvailable):
            return "MAINTENANCE: Exchange is currently offline."
        return f"UNKNOWN ERROR: {error.message}"

    async def shutdown(self):
        """
        Gracefully closes all REST API sessions.
        """
        for venue in self.venues.values():
            await venue.close()
