"""A Rich-powered console view of a learner's recorded sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..services.storage import (
    STATUS_COMPLETED,
    STATUS_ENDED,
    STATUS_FAILED,
    STATUS_RECORDING,
    SessionRecord,
    SessionRepository,
)


STATUS_STYLES: Dict[str, str] = {
    STATUS_RECORDING: "yellow",
    STATUS_ENDED: "cyan",
    STATUS_COMPLETED: "green",
    STATUS_FAILED: "red",
}


@dataclass
class SessionsSnapshot:
    sessions: List[SessionRecord]
    status_totals: Dict[str, int]
    total_messages: int


class SessionsUI:
    """Render a table of sessions with a small summary panel."""

    def __init__(
        self,
        repository: SessionRepository,
        user_id: str,
        *,
        limit: Optional[int] = None,
        console: Optional[Console] = None,
    ) -> None:
        self._repository = repository
        self._user_id = user_id
        self._limit = limit
        self._console = console or Console()

    def run(self) -> SessionsSnapshot:
        snapshot = self._collect_snapshot()
        console = self._console
        console.rule(f"[bold magenta]Sessions for {self._user_id}")

        if not snapshot.sessions:
            console.print(
                Panel(
                    "No sessions have been recorded for this user yet.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return snapshot

        console.print(self._build_table(snapshot.sessions))
        console.print(self._build_stats_panel(snapshot))
        return snapshot

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_status_label(status: str) -> Text:
        return Text(status, style=STATUS_STYLES.get(status, "white"))

    def _build_table(self, sessions: List[SessionRecord]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Session", style="bold", overflow="fold")
        table.add_column("Started", style="dim")
        table.add_column("Level", justify="center")
        table.add_column("Status")
        table.add_column("Messages", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Mix", overflow="fold")

        for session in sessions:
            duration = (
                f"{session.duration_seconds}s" if session.duration_seconds is not None else "-"
            )
            mixed = session.audio_urls.get("mixed")
            mix_label = Text(mixed, style="green") if mixed else Text(
                session.mix_error or "-", style="red" if session.mix_error else "dim"
            )
            table.add_row(
                session.session_id,
                session.started_at,
                session.user_level,
                self._build_status_label(session.status),
                str(session.total_messages),
                duration,
                mix_label,
            )
        return table

    def _build_stats_panel(self, snapshot: SessionsSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Sessions", str(len(snapshot.sessions)))
        metrics.add_row("Messages", str(snapshot.total_messages))

        statuses = Table.grid(expand=True, padding=(0, 1))
        statuses.add_column()
        statuses.add_column(justify="right", style="bold")
        for status, count in snapshot.status_totals.items():
            statuses.add_row(self._build_status_label(status), str(count))

        body = Group(metrics, Rule(style="magenta"), statuses)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)

    # ------------------------------------------------------------------
    # Data aggregation
    # ------------------------------------------------------------------
    def _collect_snapshot(self) -> SessionsSnapshot:
        sessions = self._repository.list_sessions(self._user_id, limit=self._limit)
        status_totals = {status: 0 for status in STATUS_STYLES}
        total_messages = 0
        for session in sessions:
            status_totals[session.status] = status_totals.get(session.status, 0) + 1
            total_messages += session.total_messages
        return SessionsSnapshot(
            sessions=sessions,
            status_totals=status_totals,
            total_messages=total_messages,
        )


__all__ = ["SessionsSnapshot", "SessionsUI"]
