"""Click CLI: fan a prompt out to the configured providers and render the results."""

import asyncio
import json
import logging
import sys

import click
from dotenv import load_dotenv
from rich.live import Live
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from rally.errors import RallyError
from rally.healthcheck import run_health_checks
from rally.models import SessionState
from rally.orchestrator import Orchestrator
from rally.output import console, print_history, print_responses, status_table
from rally.snapshot import session_to_dict

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _parse_providers(providers_arg: str | None) -> list[str] | None:
    if not providers_arg:
        return None
    return [p.strip() for p in providers_arg.split(",") if p.strip()]


def _apply_overrides(config: AppConfig, timeout: float | None, simulate: bool) -> None:
    """Apply CLI overrides to every provider descriptor in place."""
    for model_cfg in config.models.values():
        if timeout is not None:
            model_cfg.timeout_sec = timeout
        if simulate:
            model_cfg.kind = "simulated"


async def _check_providers(orchestrator: Orchestrator, names: list[str]) -> list[str]:
    """Run health checks, print results, and ask whether to go on without the failures.

    Returns the provider ids that passed. Exits if none pass or the user
    declines to continue.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    selected = {n: orchestrator.providers[n] for n in names if n in orchestrator.providers}
    results = await run_health_checks(selected, orchestrator.client)

    failed: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)

    working = [n for n in names if n in results and n not in failed]
    if not failed:
        return working
    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)
    return working


async def _run_turn(
    orchestrator: Orchestrator,
    session_id: str,
    prompt: str,
    providers: list[str] | None,
    live: bool,
) -> SessionState:
    """Submit one prompt and follow its progress until every provider is done."""
    async with orchestrator.events.subscription(session_id) as updates:
        session = await orchestrator.submit_prompt(session_id, prompt, providers, wait=False)
        if live:
            with Live(status_table(session), console=console, transient=True, refresh_per_second=8) as display:
                while session.is_processing:
                    await updates.get()
                    session = await orchestrator.get_session(session_id)
                    display.update(status_table(session))
    return await orchestrator.wait_for_idle(session_id)


def _pick_response(session: SessionState) -> str | None:
    """Ask which response to keep. Returns its id, or None to skip."""
    choice = click.prompt(
        "Best response number (0 to skip)",
        type=click.IntRange(0, len(session.current_responses)),
        default=0,
    )
    if choice == 0:
        return None
    return session.current_responses[choice - 1].id


async def _run(
    config: AppConfig,
    prompt: str,
    providers: list[str] | None,
    select_provider: str | None,
    interactive: bool,
    as_json: bool,
    run_check: bool,
    full: bool,
) -> None:
    async with Orchestrator.from_config(config) as orchestrator:
        session = await orchestrator.create_session()
        if run_check:
            providers = await _check_providers(orchestrator, providers or session.enabled_providers)

        while True:
            session = await _run_turn(orchestrator, session.id, prompt, providers, live=not as_json)

            if select_provider:
                chosen = session.find_provider_response(select_provider)
                if chosen is None:
                    raise click.BadParameter(f"no response from {select_provider}", param_hint="--select")
                session = await orchestrator.select_best(session.id, chosen.id)

            if as_json:
                click.echo(json.dumps(session_to_dict(session), indent=2))
                return

            if not select_provider:
                print_responses(session, full=full)
            if not interactive:
                print_history(session)
                return

            if not select_provider:
                response_id = _pick_response(session)
                if response_id is not None:
                    session = await orchestrator.select_best(session.id, response_id)
            print_history(session)

            prompt = click.prompt("\nNext prompt (empty to quit)", default="", show_default=False).strip()
            if not prompt:
                return


@click.command()
@click.argument("prompt", required=False)
@click.option("--providers", "providers_arg", default=None, help="Comma-separated provider ids, overrides the enabled set")
@click.option("--select", "select_provider", default=None, help="Keep this provider's answer as the best one")
@click.option("--interactive", is_flag=True, help="Pick a best answer after each turn and keep the conversation going")
@click.option("--json", "as_json", is_flag=True, help="Print the final session snapshot as JSON")
@click.option("--full", is_flag=True, help="Render complete answers instead of previews")
@click.option("--timeout", default=None, type=float, help="Per-provider request timeout in seconds")
@click.option("--simulate", is_flag=True, help="Answer with offline simulated providers")
@click.option("--check", "run_check", is_flag=True, help="Ping the providers before submitting")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    prompt: str | None,
    providers_arg: str | None,
    select_provider: str | None,
    interactive: bool,
    as_json: bool,
    full: bool,
    timeout: float | None,
    simulate: bool,
    run_check: bool,
    verbose: bool,
) -> None:
    """Response Rally -- send one prompt to many AI providers and compare the answers.

    \b
    Examples:
      rally "Explain CRDTs in two sentences"
      rally "Haiku about SSE" --providers gpt,mistral --full
      rally "Compare asyncio and trio" --interactive
      rally "hello" --simulate --json
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    _apply_overrides(config, timeout, simulate)

    if not prompt:
        if not interactive:
            console.print("[bold red]Error:[/bold red] Provide a PROMPT argument or use --interactive.")
            sys.exit(1)
        prompt = click.prompt("Prompt").strip()

    try:
        asyncio.run(
            _run(
                config=config,
                prompt=prompt,
                providers=_parse_providers(providers_arg),
                select_provider=select_provider,
                interactive=interactive,
                as_json=as_json,
                run_check=run_check,
                full=full,
            )
        )
    except RallyError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
