import json
from pathlib import Path
from datetime import datetime, timezone

from config.settings import JOURNAL_FILE


def append_journal_line(row: dict, path: str = JOURNAL_FILE) -> Path:
    record = dict(row)
    record["logged_at"] = datetime.now(timezone.utc).isoformat()
    journal_path = Path(path)
    journal_path.parent.mkdir(parents=True, exist_ok=True)
    with journal_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")
    return journal_path
