"""Flight Deck - a TUI for watching and poking a tenant's memory index."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.message import Message
from textual.widgets import (
    Button,
    DataTable,
    DirectoryTree,
    Footer,
    Header,
    Input,
    Label,
    Log,
    Rule,
    Static,
)

from mempack.config import ResolvedConfig
from mempack.errors import MempackError
from mempack.ingesters import get_ingester
from mempack.manager import MemorySearchManager, SyncReport
from mempack.models import SearchResponse, Tenant
from mempack.status import MemorySearchStatus


def _engine(available: bool, error: str | None) -> str:
    if available:
        return "[green]up[/]"
    return f"[red]down[/] [dim]{error or ''}[/]"


class StatsPanel(Static):
    """Index status display."""

    def compose(self) -> ComposeResult:
        yield Static("[dim]Loading status...[/]", id="stats-content")

    def update_display(self, status: MemorySearchStatus) -> None:
        content = self.query_one("#stats-content", Static)
        dirty = "[yellow]DIRTY[/]" if status.dirty or status.sessions_dirty else "[cyan]CLEAN[/]"
        sources = "\n".join(
            f"  {name:<10}  [cyan]{counts.files:,}[/] files  [magenta]{counts.chunks:,}[/] chunks"
            for name, counts in sorted(status.sources.items())
        )
        provider = status.provider.provider or "none"
        if status.provider.fallback:
            provider += f" [yellow](fallback from {status.provider.fallback.from_provider})[/]"
        cache_bound = status.cache.max_entries or "unbounded"
        cache = f"{status.cache.entries:,} / {cache_bound}" if status.cache.enabled else "[dim]disabled[/]"
        last_sync = (
            datetime.fromtimestamp(status.last_sync_at / 1000).strftime("%H:%M:%S")
            if status.last_sync_at
            else "never"
        )

        content.update(f"""[b]INDEX[/b]  {dirty}

[b]SOURCES[/b]
{sources}

[b]ENGINES[/b]
  Lexical  {_engine(status.fts.available, status.fts.error)}
  Vector   {_engine(status.vector.available, status.vector.error)}

[b]PROVIDER[/b]
  {provider}
  [dim]{status.provider.model or ''}[/]

[b]CACHE[/b]    {cache}
[b]BATCH[/b]    {status.batch.failures}/{status.batch.limit} failures
[b]SYNCED[/b]   {last_sync}""")


class ResultsTable(DataTable):
    """Ranked search results."""

    def on_mount(self) -> None:
        self.add_columns("Score", "Path", "Lines", "Source", "Snippet")
        self.cursor_type = "row"

    def show(self, response: SearchResponse) -> None:
        self.clear()
        for r in response.results:
            snippet = r.snippet.replace("\n", " ")
            if len(snippet) > 60:
                snippet = snippet[:57] + "..."
            self.add_row(
                f"[yellow]{r.score:.3f}[/]",
                r.path,
                f"{r.start_line}-{r.end_line}",
                r.source,
                snippet,
            )


class FlightDeck(App):
    """The mempack Flight Deck - memory index console."""

    # Posted from worker threads
    class StatusUpdated(Message):
        def __init__(self, status: MemorySearchStatus) -> None:
            self.status = status
            super().__init__()

    class LogMessage(Message):
        def __init__(self, message: str) -> None:
            self.message = message
            super().__init__()

    class SearchFinished(Message):
        def __init__(self, query: str, response: SearchResponse) -> None:
            self.query = query
            self.response = response
            super().__init__()

    CSS = """
    Screen {
        background: $background;
    }

    #deck {
        layout: horizontal;
        height: 1fr;
    }

    #status-column {
        width: 42;
        padding: 0 1;
        border-right: tall $accent;
    }

    #search-column {
        width: 1fr;
        padding: 0 1;
    }

    #import-column {
        width: 32;
        padding: 0 1;
        border-left: tall $accent;
    }

    StatsPanel {
        height: auto;
        padding: 0 1;
        border: heavy $accent;
    }

    #controls {
        height: auto;
        margin: 1 0;
    }

    #controls Button {
        min-width: 10;
        margin-right: 1;
    }

    #query-input {
        margin: 0 0 1 0;
    }

    ResultsTable {
        height: 2fr;
        border: heavy $accent;
    }

    #deck-log {
        height: 1fr;
        border: heavy $accent;
    }

    .heading {
        color: $accent;
        text-style: bold underline;
    }

    #dir-tree {
        height: 1fr;
        border: heavy $accent;
    }
    """

    BINDINGS = [
        Binding("s", "sync", "Sync", show=True),
        Binding("f", "force_sync", "Full reindex", show=True),
        Binding("r", "refresh", "Refresh", show=True),
        Binding("q", "quit", "Quit", show=True),
    ]

    TITLE = "mempack Flight Deck"
    SUB_TITLE = "Memory Index Console"

    def __init__(self, manager: MemorySearchManager, owns_manager: bool = False) -> None:
        super().__init__()
        self.manager = manager
        self.owns_manager = owns_manager
        self.import_source: Path | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Container(id="deck"):
            with Vertical(id="status-column"):
                yield Label(f"TENANT {self.manager.tenant.key}", classes="heading")
                yield StatsPanel()
                with Horizontal(id="controls"):
                    yield Button("SYNC", id="sync-btn", variant="success")
                    yield Button("Reindex", id="force-btn", variant="warning")
                    yield Button("Import", id="import-btn", variant="primary")

            with Vertical(id="search-column"):
                yield Label("SEARCH", classes="heading")
                yield Input(placeholder="Search memory...", id="query-input")
                yield ResultsTable(id="results")
                yield Rule()
                yield Label("SYSTEM LOG", classes="heading")
                yield Log(id="deck-log", highlight=True, auto_scroll=True)

            with Vertical(id="import-column"):
                yield Label("IMPORT FOLDER", classes="heading")
                yield DirectoryTree(Path.cwd(), id="dir-tree")

        yield Footer()

    def on_mount(self) -> None:
        """Initialize the app on mount."""
        self._log("Flight Deck initialized")
        self._log("Type a query and press Enter, or press S to sync")
        self.refresh_status()

    def on_unmount(self) -> None:
        if self.owns_manager:
            self.manager.close()

    def _log(self, message: str) -> None:
        """Add a message to the system log."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.query_one("#deck-log", Log).write_line(f"[{timestamp}] {message}")

    # Worker results
    def on_flight_deck_status_updated(self, event: StatusUpdated) -> None:
        self.query_one(StatsPanel).update_display(event.status)

    def on_flight_deck_log_message(self, event: LogMessage) -> None:
        self._log(event.message)

    def on_flight_deck_search_finished(self, event: SearchFinished) -> None:
        response = event.response
        self.query_one("#results", ResultsTable).show(response)
        if response.unavailable_reason:
            self._log(f"Search unavailable: {response.unavailable_reason}")
            return
        lexical = "scan" if response.keyword_scan else "lexical"
        engines = "+".join(
            name for name, used in (("vector", response.vector_used), (lexical, response.keyword_used)) if used
        )
        self._log(f"{len(response)} results for '{event.query}' ({engines})")
        for warning in response.warnings:
            self._log(f"Warning: {warning}")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        query = event.value.strip()
        if query:
            self.run_search(query)

    def on_directory_tree_directory_selected(self, event: DirectoryTree.DirectorySelected) -> None:
        self.import_source = Path(event.path)
        self._log(f"Import source: {self.import_source}")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        """Handle button presses."""
        if event.button.id == "sync-btn":
            self.action_sync()
        elif event.button.id == "force-btn":
            self.action_force_sync()
        elif event.button.id == "import-btn":
            self.action_import()

    def action_sync(self) -> None:
        self.run_sync(force=False)

    def action_force_sync(self) -> None:
        self.run_sync(force=True)

    def action_refresh(self) -> None:
        self.refresh_status()

    def action_import(self) -> None:
        if self.import_source is None:
            self._log("Select a folder in the browser first")
            return
        self.run_import(self.import_source)

    # Workers

    @work(thread=True)
    def refresh_status(self) -> None:
        self.post_message(self.StatusUpdated(self.manager.status()))

    @work(exclusive=True, thread=True, group="search")
    def run_search(self, query: str) -> None:
        """Run a search in a background thread."""
        response = self.manager.search(query)
        self.post_message(self.SearchFinished(query, response))
        self.post_message(self.StatusUpdated(self.manager.status()))

    @work(exclusive=True, thread=True, group="sync")
    def run_sync(self, force: bool) -> None:
        """Run a sync pass in a background thread."""
        self.post_message(self.LogMessage("Full reindex started" if force else "Sync started"))
        try:
            report = self.manager.sync(force=force, reason="deck")
        except MempackError as e:
            self.post_message(self.LogMessage(f"[red]Sync failed: {e}[/]"))
        else:
            self.post_message(self.LogMessage(self._describe(report)))
        self.post_message(self.StatusUpdated(self.manager.status()))

    @work(exclusive=True, thread=True, group="sync")
    def run_import(self, source: Path) -> None:
        """Import a folder of notes, then sync."""
        ingester = get_ingester(source)
        if ingester is None:
            self.post_message(self.LogMessage(f"[red]Cannot import {source}[/]"))
            return
        count = 0
        for doc in ingester.ingest(source):
            self.manager.content.write(self.manager.tenant, doc.path, doc.content, updated_at=doc.updated_at)
            self.manager.notify_file_changed(doc.path)
            count += 1
        self.post_message(self.LogMessage(f"Imported {count} notes from {source}"))
        try:
            report = self.manager.sync(reason="deck-import")
        except MempackError as e:
            self.post_message(self.LogMessage(f"[red]Sync failed: {e}[/]"))
        else:
            self.post_message(self.LogMessage(self._describe(report)))
        self.post_message(self.StatusUpdated(self.manager.status()))

    @staticmethod
    def _describe(report: SyncReport) -> str:
        text = (
            f"[cyan]Synced {report.generation}: {report.notes_indexed} notes, "
            f"{report.sessions_indexed} sessions, {report.chunks_written} chunks "
            f"(cache {report.cache_hits} hit/{report.cache_misses} miss)[/]"
        )
        if not report.clean:
            text += f" [yellow]{len(report.stale_notes) + len(report.stale_sessions)} stale[/]"
        return text


def main(tenant: Tenant, config: ResolvedConfig) -> None:
    """Run the Flight Deck TUI."""
    app = FlightDeck(MemorySearchManager(tenant, config), owns_manager=True)
    app.run()


if __name__ == "__main__":
    from mempack.config import load_config

    main(Tenant("local", "default"), load_config())
