"""CLI utilities for analyzing exported procedure documents."""

# purpose: let researchers analyze editor exports from the shell before submitting a run
# status: pilot
# depends_on: backend.labprotocol.services.protocol_analysis

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import typer

from .. import config
from ..registry import load_default_registry
from ..services.errors import CircularDependencyError, MalformedStepError
from ..services.protocol_analysis import ANALYSIS_TYPES, analyze_procedure
from ..services.validation import CATEGORY_ORDER, ValidationOptions, build_default_rules

app = typer.Typer(help="Protocol dependency and validation analysis commands")


def _load_document(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc}") from exc


@app.command()
def analyze(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported procedure JSON"),
    registry_dir: Optional[Path] = typer.Option(
        None, "--registry", help="Directory holding instruments.json and reagents.json"
    ),
    analysis_type: str = typer.Option(
        "full", "--type", help="full, dependencies, validation, resources, risks, optimizations"
    ),
    max_suggestions: int = typer.Option(config.ANALYSIS_MAX_SUGGESTIONS, "--max-suggestions", min=0),
    categories: Optional[List[str]] = typer.Option(None, "--category", help="Restrict validation categories"),
) -> None:
    """Analyze a procedure export and print the analysis record as JSON."""

    if analysis_type not in ANALYSIS_TYPES:
        raise typer.BadParameter(f"analysis type must be one of {', '.join(ANALYSIS_TYPES)}")
    unknown = sorted(set(categories or []) - set(CATEGORY_ORDER))
    if unknown:
        raise typer.BadParameter(f"unknown categories: {', '.join(unknown)}")

    document = _load_document(path)
    registry = load_default_registry(str(registry_dir) if registry_dir else None)
    options = ValidationOptions(categories=frozenset(categories)) if categories else None
    try:
        analysis = analyze_procedure(
            document,
            registry,
            analysis_type=analysis_type,
            options=options,
            max_suggestions=max_suggestions,
        )
    except (MalformedStepError, CircularDependencyError) as exc:
        typer.echo(json.dumps({"error": type(exc).__name__, "detail": str(exc)}), err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(analysis.model_dump_json(indent=2))


@app.command("rules")
def list_rules() -> None:
    """List the built-in validation rules."""

    for rule in build_default_rules():
        typer.echo(f"{rule.category:<11} {rule.severity:<8} {rule.id}: {rule.description}")


if __name__ == "__main__":
    app()
