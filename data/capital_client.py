import time
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import settings
from config.strategy import normalize_symbol
from models.types import BrokerPosition, Candle, EntryPlan, OrderResult, OrderType, Timeframe
from utils.logger import setup_logger

logger = setup_logger("CapitalClient")

_RESOLUTIONS = {
    Timeframe.M1: "MINUTE",
    Timeframe.M3: "MINUTE_3",
    Timeframe.M5: "MINUTE_5",
    Timeframe.M15: "MINUTE_15",
}


class CapitalApiError(RuntimeError):
    def __init__(self, status: int, message: str):
        super().__init__(f"Capital API error {status}: {message}")
        self.status = status


def _mid(value: Any) -> Optional[float]:
    """Mid of a {bid, ask} price object, or a plain number."""
    if isinstance(value, dict):
        bid, ask = value.get("bid"), value.get("ask")
        if bid is not None and ask is not None:
            return (float(bid) + float(ask)) / 2
        if bid is not None:
            return float(bid)
        if ask is not None:
            return float(ask)
        return None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_ts_ms(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _rows(payload: Any, keys: List[str]) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


class CapitalClient:
    """
    REST collaborator for Capital.com: candles, quotes, open positions and
    market orders. Serves as both the market data provider and the broker.
    """

    def __init__(
        self,
        api_key: str = settings.CAPITAL_API_KEY,
        identifier: str = settings.CAPITAL_IDENTIFIER,
        password: str = settings.CAPITAL_PASSWORD,
        base_url: str = settings.CAPITAL_API_BASE,
        epic_map: Optional[Dict[str, str]] = None,
        timeout: float = settings.CAPITAL_REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.metrics = defaultdict(int)
        self.api_key = api_key
        self.identifier = identifier
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.epic_map = {normalize_symbol(k): v for k, v in (epic_map or settings.CAPITAL_TICKER_EPIC_MAP).items()}
        self.timeout = timeout

        self._auth_lock = threading.Lock()
        self._cst: Optional[str] = None
        self._security_token: Optional[str] = None
        self._auth_expires_at = 0.0

        # Persistent session so every cycle reuses pooled connections
        if session is None:
            session = requests.Session()
            retries = Retry(total=3, backoff_factor=0.5, status_forcelist=[500, 502, 503, 504])
            adapter = HTTPAdapter(max_retries=retries, pool_connections=10, pool_maxsize=10)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _login(self):
        if not self.api_key:
            raise CapitalApiError(0, "missing CAPITAL_API_KEY")
        resp = self.session.post(
            f"{self.base_url}/api/v1/session",
            json={"identifier": self.identifier, "password": self.password},
            headers={"X-CAP-API-KEY": self.api_key, "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        if not resp.ok:
            raise CapitalApiError(resp.status_code, resp.text[:200] or resp.reason)
        cst = resp.headers.get("CST")
        token = resp.headers.get("X-SECURITY-TOKEN")
        if not cst or not token:
            raise CapitalApiError(resp.status_code, "session missing CST/X-SECURITY-TOKEN headers")
        self._cst, self._security_token = cst, token
        self._auth_expires_at = time.time() + settings.CAPITAL_SESSION_TTL_SECONDS
        self.metrics["logins"] += 1
        logger.info("Capital session established")

    def _auth_headers(self, force: bool = False) -> Dict[str, str]:
        with self._auth_lock:
            if force or not self._cst or time.time() >= self._auth_expires_at:
                self._login()
            return {
                "X-CAP-API-KEY": self.api_key,
                "CST": self._cst,
                "X-SECURITY-TOKEN": self._security_token,
                "Content-Type": "application/json",
            }

    def _request(self, method: str, path: str, params=None, body=None) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._auth_headers()
        resp = self.session.request(method, url, params=params, json=body, headers=headers, timeout=self.timeout)
        self.metrics["requests"] += 1
        if resp.status_code == 401:
            # Session tokens expire server-side before our TTL sometimes
            headers = self._auth_headers(force=True)
            resp = self.session.request(method, url, params=params, json=body, headers=headers, timeout=self.timeout)
        if not resp.ok:
            self.metrics["errors"] += 1
            raise CapitalApiError(resp.status_code, resp.text[:200] or resp.reason)
        if not resp.content:
            return None
        return resp.json()

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    def resolve_epic(self, symbol: str) -> str:
        ticker = normalize_symbol(symbol)
        return self.epic_map.get(ticker, ticker)

    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        epic = self.resolve_epic(symbol)
        payload = self._request(
            "GET",
            f"/api/v1/prices/{epic}",
            params={"resolution": _RESOLUTIONS[timeframe], "max": int(limit)},
        )
        candles: List[Candle] = []
        for row in _rows(payload, ["prices", "data"]):
            ts = _parse_ts_ms(row.get("snapshotTimeUTC") or row.get("snapshotTime"))
            prices = [_mid(row.get(k)) for k in ("openPrice", "highPrice", "lowPrice", "closePrice")]
            if ts is None or any(p is None for p in prices):
                self.metrics["candles_dropped"] += 1
                continue
            o, h, l, c = prices
            candles.append(Candle(ts, o, h, l, c, float(row.get("lastTradedVolume") or 0.0)))
        candles.sort(key=lambda x: x.timestamp)
        return candles

    def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        epic = self.resolve_epic(symbol)
        payload = self._request("GET", f"/api/v1/markets/{epic}") or {}
        snap = payload.get("snapshot") or {}
        bid = snap.get("bid")
        offer = snap.get("offer")
        price = None
        if bid is not None and offer is not None:
            price = (float(bid) + float(offer)) / 2
        return {
            "price": price,
            "bid": bid,
            "offer": offer,
            "ts": _parse_ts_ms(snap.get("updateTimeUTC") or snap.get("updateTime")),
        }

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------
    def list_open_positions(self, symbol: str) -> List[BrokerPosition]:
        payload = self._request("GET", "/api/v1/positions")
        out: List[BrokerPosition] = []
        for row in _rows(payload, ["positions", "data"]):
            position = row.get("position") or {}
            market = row.get("market") or {}
            direction = str(position.get("direction") or "").upper()
            side = "long" if direction == "BUY" else "short" if direction == "SELL" else None
            level = position.get("level")
            out.append(
                BrokerPosition(
                    epic=str(market.get("epic") or position.get("epic") or ""),
                    side=side,
                    entry_price=float(level) if level is not None else None,
                    deal_id=position.get("dealId"),
                    size=float(position["size"]) if position.get("size") is not None else None,
                )
            )
        return out

    def place_order(self, symbol: str, plan: EntryPlan, dry_run: bool) -> OrderResult:
        reference = plan.limit_level if plan.order_type is OrderType.LIMIT else plan.entry_reference_price
        size = round(plan.notional_usd * max(1, plan.leverage) / reference, 4) if reference else 0.0
        body: Dict[str, Any] = {
            "epic": self.resolve_epic(symbol),
            "direction": plan.side.value,
            "size": size,
            "dealReference": plan.deal_reference,
            "stopLevel": plan.stop_price,
            "profitLevel": plan.take_profit_price,
        }
        if dry_run:
            logger.info(f"[dry-run] would POST position {body}")
            return OrderResult(accepted=False, size=size, payload=body)
        if not size > 0:
            raise CapitalApiError(0, f"non-positive order size for {symbol}")

        if plan.order_type is OrderType.LIMIT:
            body.update({"type": "LIMIT", "level": plan.limit_level})
            payload = self._request("POST", "/api/v1/workingorders", body=body) or {}
        else:
            payload = self._request("POST", "/api/v1/positions", body=body) or {}
        order_id = payload.get("dealId") or payload.get("dealReference")
        self.metrics["orders"] += 1
        return OrderResult(accepted=bool(order_id), broker_order_id=order_id, size=size, payload=payload)
