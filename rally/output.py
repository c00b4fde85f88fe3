"""Rich console rendering of sessions and provider responses."""

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from rally.models import ERROR, PENDING, RATE_LIMITED, STREAMING, SUCCESS, TIMEOUT, ProviderResponse, ResponseMetrics, SessionState

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLES = {
    PENDING: "dim",
    STREAMING: "cyan",
    SUCCESS: "green",
    ERROR: "red",
    RATE_LIMITED: "yellow",
    TIMEOUT: "magenta",
}


def _response_preview(text: str, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def format_metrics(metrics: ResponseMetrics) -> str:
    parts: list[str] = []
    if metrics.latency_ms is not None:
        parts.append(f"{metrics.latency_ms / 1000:.1f}s")
    if metrics.first_token_latency_ms is not None:
        parts.append(f"first token {metrics.first_token_latency_ms} ms")
    if metrics.token_count_estimate is not None:
        parts.append(f"~{int(metrics.token_count_estimate)} tokens")
    if metrics.tokens_per_second:
        parts.append(f"{metrics.tokens_per_second:.1f} tok/s")
    return " | ".join(parts)


def _status_text(response: ProviderResponse) -> Text:
    label = response.status
    if response.status == SUCCESS and response.error_message:
        label = "success (fallback)"
    return Text(label, style=_STATUS_STYLES.get(response.status, ""))


def status_table(session: SessionState) -> Table:
    """Live progress table, one row per provider of the current turn."""
    table = Table(title=f"Prompt: {_response_preview(session.current_prompt, 12)}", expand=False)
    table.add_column("Provider", style="bold")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Chars", justify="right")
    table.add_column("First token", justify="right")
    table.add_column("Tok/s", justify="right")
    for resp in session.current_responses:
        m = resp.metrics
        table.add_row(
            resp.provider,
            _status_text(resp),
            f"{resp.streaming_progress}%",
            str(m.response_length),
            f"{m.first_token_latency_ms} ms" if m.first_token_latency_ms is not None else "-",
            f"{m.tokens_per_second:.1f}" if m.tokens_per_second is not None else "-",
        )
    return table


def print_responses(session: SessionState, full: bool = False) -> None:
    """Print every response of the current turn, numbered for selection."""
    console.print(Rule(f"[bold cyan]{len(session.current_responses)} responses[/bold cyan]"))
    for index, resp in enumerate(session.current_responses, start=1):
        body = Markdown(resp.response_text) if full else Text(_response_preview(resp.response_text))
        subtitle = format_metrics(resp.metrics)
        if resp.error_message:
            subtitle = f"{subtitle} | {resp.error_message}" if subtitle else resp.error_message
        console.print(
            Panel(
                body,
                title=f"[bold]{index}. {resp.provider}[/bold] ({resp.status})",
                subtitle=subtitle or None,
                border_style=_STATUS_STYLES.get(resp.status, "dim"),
            )
        )


def print_history(session: SessionState) -> None:
    """Print the closed turns of a session, oldest first."""
    if not session.conversation_history:
        return
    console.print(Rule("[bold green]Conversation[/bold green]"))
    for number, turn in enumerate(session.conversation_history, start=1):
        console.print(Text(f"{number}. You: {turn.user_prompt}", style="bold"))
        if turn.selected_response is not None:
            console.print(
                Text(
                    f"   {turn.selected_response.provider}: {_response_preview(turn.selected_response.response_text, 30)}",
                    style="dim",
                )
            )
