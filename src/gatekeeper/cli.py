"""Command-line interface for Gatekeeper."""

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from gatekeeper.config import EnforcerConfig
from gatekeeper.core import GatekeeperError
from gatekeeper.enforcer import Enforcer
from gatekeeper.expression import compile_matcher
from gatekeeper.functions import BUILTIN_FUNCTIONS
from gatekeeper.model import Model
from gatekeeper.report import DecisionReport

app = typer.Typer(
    name="gatekeeper",
    help="Authorization decisions from access-control models and policies",
    add_completion=False,
)

EXIT_ALLOW = 0
EXIT_DENY = 1
EXIT_ERROR = 2


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Gatekeeper command-line tools."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def _build_enforcer(model: Path, policy: Path, config: Optional[Path]) -> Enforcer:
    for path in (model, policy, config):
        if path is not None and not path.exists():
            typer.echo(f"Error: File not found: {path}", err=True)
            raise typer.Exit(EXIT_ERROR)

    enforcer_config = EnforcerConfig.from_file(config) if config else EnforcerConfig()
    enforcer = Enforcer(Model.from_file(model), config=enforcer_config)
    enforcer.load_policy_file(policy)
    return enforcer


def _decide(
    model: Path,
    policy: Path,
    request: list[str],
    explain: bool,
    format: str,
    config: Optional[Path],
) -> None:
    try:
        enforcer = _build_enforcer(model, policy, config)
        decision = enforcer.decide(*request)
    except GatekeeperError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_ERROR)

    report = DecisionReport(decision, matcher=enforcer.model.matcher)
    if format == "json":
        typer.echo(report.to_json())
    elif explain:
        report.print()
    else:
        typer.echo("allow" if decision.allowed else "deny")

    raise typer.Exit(EXIT_ALLOW if decision.allowed else EXIT_DENY)


@app.command(name="enforce")
def enforce_cmd(
    model: Annotated[Path, typer.Argument(help="Path to the model file (YAML or JSON)")],
    policy: Annotated[Path, typer.Argument(help="Path to the policy file (YAML or JSON)")],
    request: Annotated[list[str], typer.Argument(help="Request values, e.g. alice data1 read")],
    explain: Annotated[
        bool,
        typer.Option("--explain", "-e", help="Show how each policy row was evaluated"),
    ] = False,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, json)"),
    ] = "console",
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Enforcer configuration file"),
    ] = None,
) -> None:
    """Decide a request. Exits 0 when allowed and 1 when denied."""
    _decide(model, policy, request, explain, format, config)


@app.command(name="explain")
def explain_cmd(
    model: Annotated[Path, typer.Argument(help="Path to the model file (YAML or JSON)")],
    policy: Annotated[Path, typer.Argument(help="Path to the policy file (YAML or JSON)")],
    request: Annotated[list[str], typer.Argument(help="Request values, e.g. alice data1 read")],
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Enforcer configuration file"),
    ] = None,
) -> None:
    """Decide a request and show the evaluation trace."""
    _decide(model, policy, request, True, "console", config)


@app.command(name="validate")
def validate_cmd(
    model: Annotated[Path, typer.Argument(help="Path to the model file (YAML or JSON)")],
) -> None:
    """Check that a model loads and its matchers compile."""
    if not model.exists():
        typer.echo(f"Error: File not found: {model}", err=True)
        raise typer.Exit(EXIT_ERROR)

    try:
        loaded = Model.from_file(model)
        matchers = {name: compile_matcher(text) for name, text in loaded.matchers.items()}
    except GatekeeperError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_ERROR)

    known = set(BUILTIN_FUNCTIONS) | set(loaded.role)
    for name, matcher in matchers.items():
        unknown = sorted(matcher.function_names() - known)
        if unknown:
            typer.echo(f"Warning: matcher '{name}' calls unregistered functions: {', '.join(unknown)}")

    typer.echo(f"Model {model} is valid")
    typer.echo(f"  Request: {', '.join(loaded.request_tokens())}")
    typer.echo(f"  Policy: {', '.join(loaded.policy_tokens())}")
    if loaded.role:
        typer.echo(f"  Roles: {', '.join(loaded.role)}")
    typer.echo(f"  Effect: {loaded.effect}")
    typer.echo(f"  Matchers: {len(matchers)}")


if __name__ == "__main__":
    app()
