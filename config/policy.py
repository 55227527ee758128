import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from config.strategy import StrategyConfig, apply_config_override, normalize_symbol
from utils.logger import setup_logger

logger = setup_logger("HybridPolicy")


@dataclass(slots=True)
class HybridPolicy:
    version: int = 1
    default_profile: str = settings.DEFAULT_PROFILE
    profiles: Dict[str, Dict[str, Any]] = field(default_factory=lambda: {settings.DEFAULT_PROFILE: {}})
    symbol_profiles: Dict[str, str] = field(default_factory=dict)
    symbols: List[str] = field(default_factory=lambda: list(settings.SYMBOLS))


def parse_hybrid_policy(raw: Any) -> HybridPolicy:
    if not isinstance(raw, dict):
        return HybridPolicy()

    default_profile = str(raw.get("defaultProfile") or settings.DEFAULT_PROFILE).strip() or settings.DEFAULT_PROFILE

    profiles: Dict[str, Dict[str, Any]] = {}
    profiles_raw = raw.get("profiles")
    if isinstance(profiles_raw, dict):
        for name, override in profiles_raw.items():
            name = str(name or "").strip()
            if not name:
                continue
            profiles[name] = override if isinstance(override, dict) else {}
    profiles.setdefault(default_profile, {})

    symbol_profiles: Dict[str, str] = {}
    symbol_profiles_raw = raw.get("symbolProfiles")
    if isinstance(symbol_profiles_raw, dict):
        for symbol_raw, profile_raw in symbol_profiles_raw.items():
            symbol = normalize_symbol(symbol_raw)
            profile = str(profile_raw or "").strip()
            if not symbol or profile not in profiles:
                if symbol:
                    logger.warning(f"Dropping symbol profile {symbol} -> {profile!r}: unknown profile")
                continue
            symbol_profiles[symbol] = profile

    symbols_raw = raw.get("symbols") if isinstance(raw.get("symbols"), list) else []
    symbols = [s for s in (normalize_symbol(x) for x in symbols_raw) if s]
    unique_symbols = list(dict.fromkeys(symbols or settings.SYMBOLS))

    try:
        version = int(raw.get("version", 1))
    except (TypeError, ValueError):
        version = 1

    return HybridPolicy(
        version=version,
        default_profile=default_profile,
        profiles=profiles,
        symbol_profiles=symbol_profiles,
        symbols=unique_symbols,
    )


def load_hybrid_policy(path: Optional[str] = None) -> HybridPolicy:
    policy_path = Path(path or settings.HYBRID_POLICY_FILE)
    if not policy_path.exists():
        logger.info(f"No hybrid policy at {policy_path}, using baseline only")
        return HybridPolicy()
    with policy_path.open("r", encoding="utf-8") as f:
        return parse_hybrid_policy(json.load(f))


def resolve_hybrid_selection(
    symbol_raw: str,
    policy: HybridPolicy,
    forced_profile: Optional[str] = None,
) -> Tuple[str, str, Dict[str, Any]]:
    """Pick the override profile for a symbol: forced, then per-symbol, then default."""
    symbol = normalize_symbol(symbol_raw)
    if not symbol:
        raise ValueError("Invalid symbol for hybrid selection")
    forced = str(forced_profile or "").strip()
    if forced and forced in policy.profiles:
        profile = forced
    else:
        profile = policy.symbol_profiles.get(symbol) or policy.default_profile
    return symbol, profile, policy.profiles.get(profile, {})


def resolve_effective_config(
    base: StrategyConfig,
    symbol_raw: str,
    policy: HybridPolicy,
    forced_profile: Optional[str] = None,
) -> Tuple[str, str, StrategyConfig]:
    symbol, profile, override = resolve_hybrid_selection(symbol_raw, policy, forced_profile)
    return symbol, profile, apply_config_override(base, override)
