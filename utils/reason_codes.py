from typing import Iterable, List


def dedupe_reason_codes(codes: Iterable[str]) -> List[str]:
    """Upper-case, strip and de-duplicate codes, keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for code in codes:
        normalized = str(code or "").strip().upper()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        out.append(normalized)
    return out


def compact_reason_codes(codes: Iterable[str], max_codes: int, max_len: int) -> List[str]:
    return [code[:max_len] for code in dedupe_reason_codes(codes)[:max_codes]]
