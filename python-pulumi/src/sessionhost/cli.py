from __future__ import annotations

import json
import pathlib
import sys

import click

import sessionhost
import sessionhost.aws_iam
import sessionhost.aws_provider
import sessionhost.declaration
import sessionhost.junkdrawer
import sessionhost.outputs
import sessionhost.reconcile
import sessionhost.validate
from sessionhost.errors import PartialApply, SessionHostError


def _load(variant: str, path: pathlib.Path | None, region: str | None) -> sessionhost.declaration.Declaration:
    try:
        if path is not None:
            return sessionhost.declaration.load_declaration(path, region=region)
        return sessionhost.declaration.load_variant(variant, region=region)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _declaration_options(f):
    f = click.option("--region", default=None, help="Override the declared region.")(f)
    f = click.option(
        "--file",
        "path",
        type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
        default=None,
        help="Load a declaration file instead of a named variant.",
    )(f)
    return click.option(
        "--variant",
        default=sessionhost.declaration.DEFAULT_VARIANT,
        show_default=True,
        help="Named declaration under SESSIONHOST_ROOT.",
    )(f)


@click.group()
def cli():
    """Validate, order and apply session host declarations."""


@cli.command()
@_declaration_options
def validate(variant: str, path: pathlib.Path | None, region: str | None):
    """Run every static check and report all findings."""
    decl = _load(variant, path, region)
    errors = sessionhost.validate.check_graph(decl.graph)
    if not errors:
        click.secho(f"{decl.name}: {len(decl.graph)} entities, no findings", fg="green", bold=True)
        return

    for error in errors:
        click.secho(f"∙ {type(error).__name__}: {error}", fg="red")
    click.secho(f"{decl.name}: {len(errors)} finding(s)", fg="red", bold=True)
    sys.exit(1)


@cli.command()
@_declaration_options
def plan(variant: str, path: pathlib.Path | None, region: str | None):
    """Print the creation levels; entities in one level are created in parallel."""
    decl = _load(variant, path, region)
    try:
        sessionhost.validate.ensure_valid(decl.graph)
    except SessionHostError as exc:
        raise click.ClickException(str(exc)) from exc

    sessionhost.junkdrawer.print_levels(decl.graph.creation_levels())


@cli.command()
@_declaration_options
def policy(variant: str, path: pathlib.Path | None, region: str | None):
    """Print the trust and permission documents of every identity."""
    decl = _load(variant, path, region)
    documents = {
        identity.name: {
            "assume_role_policy": sessionhost.aws_iam.build_assume_role_policy(identity.trusted_services),
            "managed_policy_arns": list(identity.managed_policy_arns),
            "policy": sessionhost.aws_iam.build_policy_document(identity),
        }
        for identity in decl.graph.of_kind(sessionhost.Identity)
    }
    click.echo(json.dumps(documents, indent=2))


@cli.command()
@_declaration_options
@click.option("--max-workers", default=sessionhost.reconcile.DEFAULT_MAX_WORKERS, show_default=True)
@click.option("--yes", is_flag=True, help="Do not prompt before creating resources.")
def apply(variant: str, path: pathlib.Path | None, region: str | None, max_workers: int, yes: bool):
    """Create every entity directly through the AWS APIs and print the outputs."""
    decl = _load(variant, path, region)
    if not yes:
        click.confirm(f"create {len(decl.graph)} entities of {decl.name!r} in {decl.region}?", abort=True)

    provider = sessionhost.aws_provider.AWSProvider(decl.region, tags=decl.required_tags)
    reconciler = sessionhost.reconcile.Reconciler(decl.graph, provider, max_workers=max_workers)
    try:
        records = reconciler.run()
    except PartialApply as exc:
        click.secho(str(exc), fg="red", bold=True)
        sys.exit(2)
    except SessionHostError as exc:
        raise click.ClickException(str(exc)) from exc

    for key, value in sessionhost.outputs.project(decl.graph, records, decl.region).as_dict().items():
        click.secho(f"{key}: ", fg="white", bold=True, nl=False)
        click.echo(value)
