import threading
from dataclasses import dataclass
from datetime import datetime
from time import time
from typing import Dict, List, Optional, Sequence

import pandas as pd
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.settings import SESSION_TIMEZONE
from models.types import CycleResult, ReplayResult, State
from utils.logger import setup_logger

logger = setup_logger("ui")

_STATE_STYLES = {
    State.IDLE: "dim white",
    State.ASIA_RANGE_READY: "white",
    State.SWEEP_DETECTED: "yellow",
    State.CONFIRMING: "bold yellow",
    State.WAITING_RETRACE: "bold cyan",
    State.IN_TRADE: "bold green",
    State.DONE: "dim",
    State.COOLDOWN: "magenta",
}


def _local_time(ts_ms: Optional[int], fmt: str = "%H:%M:%S") -> str:
    if not ts_ms:
        return "-"
    ts = pd.to_datetime(ts_ms, unit="ms").tz_localize("UTC").tz_convert(SESSION_TIMEZONE)
    return ts.strftime(fmt)


@dataclass
class UIStatus:
    cycles: int = 0
    last_cycle_ts: float | None = None
    lock_skips: int = 0
    errors: int = 0
    last_error: str | None = None
    dry_run: bool = True
    store_kind: str = "memory"


class ConsoleUI():
    def __init__(self, console):
        logger.info("ConsoleUI initialized")
        self.console = console
        self.results: Dict[str, CycleResult] = {}
        self.dirty = False
        self.status = UIStatus()
        self.lock = threading.Lock()
        self.layout = self._init_layout()

    def _init_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="table", ratio=4),
            Layout(name="status", size=3),
        )
        return layout

    def cycle_finished(self, result: CycleResult):
        with self.lock:
            self.results[result.symbol] = result
        self.status.cycles += 1
        self.status.last_cycle_ts = time()
        if not result.run_lock_acquired:
            self.status.lock_skips += 1
        self.dirty = True

    def error(self, msg: str):
        self.status.errors += 1
        self.status.last_error = msg
        self.dirty = True

    def generate_status_panel(self) -> Panel:
        items = []
        if self.status.dry_run:
            items.append("[yellow]Mode: DRY RUN[/]")
        else:
            items.append("[bold red]Mode: LIVE[/]")
        items.append(f"[blue]Store:[/] {self.status.store_kind}")

        if self.status.last_cycle_ts is None:
            items.append("[yellow]Waiting for first cycle[/]")
        else:
            ts_str = datetime.fromtimestamp(self.status.last_cycle_ts).strftime("%H:%M:%S")
            items.append(f"[cyan]Last cycle:[/] {ts_str}")

        items.append(f"[magenta]Cycles:[/] {self.status.cycles}")
        if self.status.lock_skips:
            items.append(f"[yellow]Lock skips:[/] {self.status.lock_skips}")
        if self.status.last_error:
            items.append(f"[red]Error ({self.status.errors}):[/] {self.status.last_error}")

        return Panel(Text.from_markup("  |  ".join(items)), title="Status", border_style="blue")

    def generate_table(self) -> Table:
        table = Table(title="Session Sweep Scalper")
        table.add_column("Time", style="cyan", no_wrap=True)
        table.add_column("Symbol", style="magenta")
        table.add_column("Day", style="dim")
        table.add_column("State", justify="center")
        table.add_column("Lock", justify="center")
        table.add_column("Reason Codes", style="dim")

        with self.lock:
            rows = sorted(self.results.values(), key=lambda r: r.symbol)

        for result in rows:
            style = _STATE_STYLES.get(result.state, "white")
            # Leading code is always the cycle marker, skip it
            codes = [c for c in result.reason_codes if c != "SCALP_CYCLE_EXECUTED"]
            table.add_row(
                _local_time(result.generated_at_ms),
                result.symbol,
                result.day_key,
                f"[{style}]{result.state.value}[/]",
                "[green]ok[/]" if result.run_lock_acquired else "[yellow]held[/]",
                ", ".join(codes[:6]) or "-",
            )
        return table

    def generate_layout(self) -> Layout:
        self.layout["table"].update(self.generate_table())
        self.layout["status"].update(self.generate_status_panel())
        return self.layout


def replay_summary_table(result: ReplayResult, title: Optional[str] = None) -> Table:
    s = result.summary
    table = Table(title=title or f"Replay {s.symbol}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    net_style = "green" if s.net_r > 0 else "red" if s.net_r < 0 else "white"
    table.add_row("Window", f"{_local_time(s.start_ts_ms, '%Y-%m-%d %H:%M')} -> {_local_time(s.end_ts_ms, '%Y-%m-%d %H:%M')}")
    table.add_row("Runs", str(s.runs))
    table.add_row("Trades", f"{s.trades} ({s.wins}W / {s.losses}L)")
    table.add_row("Win rate", f"{s.win_rate_pct:.2f}%")
    table.add_row("Avg R", f"{s.avg_r:.3f}")
    table.add_row("Net R", f"[{net_style}]{s.net_r:.3f}[/]")
    table.add_row("Net PnL (USD)", f"{s.net_pnl_usd:.2f}")
    table.add_row("Max DD (R)", f"{s.max_drawdown_r:.3f}")
    table.add_row("Avg hold (min)", f"{s.avg_hold_minutes:.1f}")
    exits = ", ".join(f"{k}={v}" for k, v in sorted(s.exits_by_reason.items())) or "-"
    table.add_row("Exits", exits)
    top = ", ".join(f"{row['code']}({row['count']})" for row in result.diagnostics.top_reason_codes[:5]) or "-"
    table.add_row("Top codes", top)
    return table


def matrix_leaderboard_table(scenarios: Sequence, limit: int = 10) -> Table:
    table = Table(title="Scenario Robustness")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Scenario", style="magenta")
    table.add_column("Score", justify="right")
    table.add_column("Coverage", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Avg Net R", justify="right")
    table.add_column("Worst Net R", justify="right")
    table.add_column("Worst DD", justify="right")

    for rank, row in enumerate(list(scenarios)[:limit], start=1):
        style = "bold green" if rank == 1 else ""
        score = f"[{style}]{row.robustness_score:.3f}[/]" if style else f"{row.robustness_score:.3f}"
        table.add_row(
            str(rank),
            row.scenario_id,
            score,
            f"{row.trade_coverage_pct:.1f}%",
            str(row.total_trades),
            f"{row.avg_net_r:.3f}",
            f"{row.worst_net_r:.3f}",
            f"{row.worst_max_drawdown_r:.3f}",
        )
    return table


def cycle_results_table(results: List[CycleResult]) -> Table:
    table = Table(title="Cycle Results")
    table.add_column("Symbol", style="magenta")
    table.add_column("State", justify="center")
    table.add_column("Dry Run", justify="center")
    table.add_column("Reason Codes", style="dim")
    for result in results:
        style = _STATE_STYLES.get(result.state, "white")
        table.add_row(
            result.symbol,
            f"[{style}]{result.state.value}[/]",
            "yes" if result.dry_run else "no",
            ", ".join(result.reason_codes),
        )
    return table
