import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import settings
from config.strategy import normalize_symbol
from data.candle_history import CandleHistoryStore, history_to_replay_input
from data.capital_client import CapitalApiError, CapitalClient
from models.types import Timeframe
from utils.logger import setup_logger

logger = setup_logger("fetch_history")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Append recent Capital.com candles to local history")
    parser.add_argument("--symbols", nargs="+", default=list(settings.SYMBOLS))
    parser.add_argument("--timeframe", choices=[tf.value for tf in Timeframe], default=Timeframe.M1.value)
    parser.add_argument("--limit", type=int, default=settings.MAX_CANDLES_PER_REQUEST)
    parser.add_argument("--root", default=settings.CANDLE_HISTORY_DIR)
    parser.add_argument("--export-dir", default=None, help="Also write {SYMBOL}.replay.json replay inputs here")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    client = CapitalClient()
    store = CandleHistoryStore(args.root)
    tf = Timeframe(args.timeframe)
    failures = 0
    for raw in args.symbols:
        symbol = normalize_symbol(raw)
        try:
            candles = client.fetch_candles(symbol, tf, max(1, args.limit))
        except (CapitalApiError, OSError) as e:
            logger.error(f"{symbol}: fetch failed: {e}")
            failures += 1
            continue
        record = store.append(symbol, tf, candles, epic=client.resolve_epic(symbol))
        if args.export_dir:
            out = Path(args.export_dir)
            out.mkdir(parents=True, exist_ok=True)
            with (out / f"{symbol}.replay.json").open("w", encoding="utf-8") as f:
                json.dump(history_to_replay_input(record), f)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
