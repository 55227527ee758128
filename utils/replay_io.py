import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from models.types import ReplayResult
from utils.logger import setup_logger

logger = setup_logger("ReplayIO")

_TRADE_COLUMNS = [
    "id", "day_key", "side", "entry_ts_ms", "exit_ts_ms", "hold_minutes", "entry_price", "stop_price",
    "take_profit_price", "exit_price", "exit_reason", "risk_abs", "risk_usd", "notional_usd", "r_multiple", "pnl_usd",
]


def to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _write_json(path: Path, payload: Any):
    with path.open("w", encoding="utf-8") as f:
        json.dump(to_jsonable(payload), f, indent=2)


def load_candles_file(path: str, symbol: Optional[str] = None) -> Dict[str, Any]:
    """
    Read a replay input document. JSON files carry ``{symbol, pipSize, candles}``;
    CSV files are one candle per row with a ``ts`` (or ``timestamp``) column.
    """
    file_path = Path(path)
    if file_path.suffix.lower() == ".csv":
        df = pd.read_csv(file_path)
        df.columns = [str(c).strip() for c in df.columns]
        if "ts" not in df.columns and "timestamp" in df.columns:
            df = df.rename(columns={"timestamp": "ts"})
        df = df.astype(object).where(pd.notna(df), None)
        payload: Dict[str, Any] = {"candles": df.to_dict(orient="records")}
    else:
        with file_path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        payload = raw if isinstance(raw, dict) else {"candles": raw}
    if symbol:
        payload["symbol"] = symbol
    return payload


def trades_frame(result: ReplayResult) -> pd.DataFrame:
    rows = [to_jsonable(t) for t in result.trades]
    return pd.DataFrame(rows, columns=_TRADE_COLUMNS)


def timeline_frame(result: ReplayResult) -> pd.DataFrame:
    rows = [
        {
            "ts_ms": e.ts_ms,
            "type": e.type,
            "state": e.state.value if e.state else "",
            "reason_codes": "|".join(e.reason_codes),
        }
        for e in result.timeline
    ]
    return pd.DataFrame(rows, columns=["ts_ms", "type", "state", "reason_codes"])


def write_replay_artifacts(out_dir: str, result: ReplayResult, config: Any) -> Path:
    out = Path(out_dir).resolve()
    out.mkdir(parents=True, exist_ok=True)

    _write_json(out / "summary.json", {**to_jsonable(result.summary), "diagnostics": result.diagnostics})
    _write_json(out / "config.json", config)
    _write_json(out / "trades.json", result.trades)
    _write_json(out / "timeline.json", result.timeline)
    trades_frame(result).to_csv(out / "trades.csv", index=False, float_format="%.8f")
    timeline_frame(result).to_csv(out / "timeline.csv", index=False)

    logger.info(f"Replay artifacts written to {out}")
    return out


def write_matrix_artifacts(out_dir: str, result: Any) -> Path:
    out = Path(out_dir).resolve()
    out.mkdir(parents=True, exist_ok=True)

    _write_json(
        out / "matrix.summary.json",
        {"overview": result.overview, "runs": result.runs, "scenario_summaries": result.scenarios},
    )
    pd.DataFrame([to_jsonable(r) for r in result.runs]).to_csv(out / "matrix.summary.csv", index=False, float_format="%.6f")
    pd.DataFrame([to_jsonable(a) for a in result.scenarios]).to_csv(
        out / "matrix.scenarios.csv", index=False, float_format="%.6f"
    )

    logger.info(f"Matrix artifacts written to {out}")
    return out
