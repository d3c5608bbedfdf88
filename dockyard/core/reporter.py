# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# STREAM REPORTER
# -----------------------------------------------------------------------------
# Responsibility: Render build output, logs and exec output as it arrives, and
# summarize reports and status snapshots once an operation is over.
#
# Keeps the last few lines it printed so a failed build can show its tail.
# It only reads what it is given and never changes reconciliation state.
# -----------------------------------------------------------------------------

import codecs
from collections import deque
from collections.abc import AsyncIterable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from dockyard.domain.models import (
    BuildEvent,
    BuildEventKind,
    Outcome,
    ReconcileReport,
    StatusSnapshot,
)

DEFAULT_TAIL_LINES = 20

_OUTCOME_STYLE = {
    Outcome.SUCCESS: "green",
    Outcome.SKIPPED: "yellow",
    Outcome.FAILED: "red",
}


def _utf8_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


class StreamReporter:
    """
    Incremental renderer for build, log and exec streams.

    Args:
        console: Rich console to write to (a fresh one by default).
        tail_lines: How many recent lines to keep for failure diagnostics.
    """

    def __init__(self, console: Console | None = None, tail_lines: int = DEFAULT_TAIL_LINES) -> None:
        self.console = console or Console()
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._partial = ""
        self._decoder = _utf8_decoder()

    def _remember(self, text: str) -> None:
        for line in text.splitlines():
            if line.strip():
                self._tail.append(line)

    def tail(self) -> list[str]:
        """Most recent lines, oldest first."""
        return list(self._tail)

    def reset(self) -> None:
        self._tail.clear()
        self._partial = ""
        self._decoder = _utf8_decoder()

    # =========================================================================
    # STREAMS
    # =========================================================================

    def build_event(self, event: BuildEvent) -> None:
        if event.kind is BuildEventKind.STEP:
            self._remember(event.text)
            self.console.print(f"[dim]{escape(event.text)}[/dim]", highlight=False)
        elif event.kind is BuildEventKind.ERROR:
            self._remember(event.text)
            self.console.print(f"[red][BUILD] {escape(event.text)}[/red]")
        else:
            image_id = (event.image_id or "").split(":")[-1][:12]
            self.console.print(f"[green][BUILD] Image built: {image_id}[/green]")

    def log_line(self, line: str) -> None:
        self._remember(line)
        self.console.print(escape(line), highlight=False)

    def exec_output(self, chunk: bytes) -> None:
        """Write raw command output; partial lines are completed by the next chunk."""
        text = self._decoder.decode(chunk)
        if not text:
            return
        self.console.out(text, end="", highlight=False)
        *lines, self._partial = (self._partial + text).split("\n")
        for line in lines:
            self._remember(line)

    async def follow(self, lines: AsyncIterable[str]) -> int:
        """Print lines as they arrive and return how many were printed."""
        count = 0
        async for line in lines:
            self.log_line(line)
            count += 1
        return count

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    def render_report(self, report: ReconcileReport) -> None:
        table = Table(title=f"{report.container_name}", show_header=True, header_style="bold")
        table.add_column("Step")
        table.add_column("Outcome")
        table.add_column("Detail", overflow="fold")
        for step in report.steps:
            style = _OUTCOME_STYLE[step.outcome]
            table.add_row(step.step, f"[{style}]{step.outcome.value}[/{style}]", escape(step.detail))
        if report.steps:
            self.console.print(table)

        failure = report.failure
        if failure is None:
            self.console.print(f"[green]State: {report.state}[/green]")
            return

        body = f"[bold red]{escape(failure.detail)}[/bold red]\n\nLast confirmed state: {report.last_confirmed}"
        if failure.output_tail:
            body += "\n\n" + escape("\n".join(failure.output_tail))
        self.console.print(
            Panel(body, title=f"{failure.step.upper()} FAILED ({failure.error_kind.value})", border_style="red")
        )

    def render_status(self, snapshot: StatusSnapshot) -> None:
        table = Table(title=snapshot.container_name, show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("State", str(snapshot.state))
        if snapshot.container_id:
            table.add_row("Container", snapshot.container_id[:12])
        if snapshot.image:
            table.add_row("Image", escape(snapshot.image))
        for mount in snapshot.mounts:
            mode = "ro" if mount.readonly else "rw"
            table.add_row("Mount", escape(f"{mount.host_path} -> {mount.container_path} ({mode})"))
        for port in snapshot.ports:
            table.add_row("Port", str(port))
        if snapshot.env_var_keys:
            table.add_row("Env", ", ".join(snapshot.env_var_keys))
        self.console.print(table)
