"""
image-delta CLI

Implements 3 CLI verbs on top of ``Incremental``:
- pull: Write the difference between two registry images to an OCI archive
- vet: Check that a destination has every layer an archive leaves out
- push: Push an OCI archive to a registry
"""
from __future__ import annotations

import dataclasses
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer

from .context import OperationContext
from .incremental import Authentications, Incremental
from .operations import run_and_exit
from .operations.printers import print_pull_summary, print_push_summary, print_vet_summary
from .settings import Settings, create_settings_from_env
from .storage.base import Credentials

app = typer.Typer(name="image-delta", help="Incremental container image transfer")


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _credentials(value: Optional[str]) -> Optional[Credentials]:
    return Credentials.parse(value) if value else None


def _settings(**overrides) -> Settings:
    """Environment settings with the command line flags that were given applied on top."""
    settings = create_settings_from_env()
    changes = {key: value for key, value in overrides.items() if value}
    return dataclasses.replace(settings, **changes) if changes else settings


def _create_incremental(settings: Settings, quiet: bool, auths: Authentications) -> Incremental:
    return Incremental(settings, report=None if quiet else sys.stderr, auths=auths)


@app.command()
def pull(
    base: str = typer.Argument(..., help="Base image reference, or 'scratch' for none"),
    final: str = typer.Argument(..., help="Final image reference"),
    output: Path = typer.Argument(..., help="Path of the OCI archive to write"),
    base_creds: Optional[str] = typer.Option(None, "--base-creds", help="USER:PASSWORD for the base registry"),
    final_creds: Optional[str] = typer.Option(None, "--final-creds", help="USER:PASSWORD for the final registry"),
    insecure_base: bool = typer.Option(False, "--insecure-base", help="Use HTTP / skip TLS verification for the base registry"),
    insecure_final: bool = typer.Option(False, "--insecure-final", help="Use HTTP / skip TLS verification for the final registry"),
    all_platforms: bool = typer.Option(False, "--all-platforms", help="Copy every platform of a manifest list"),
    tmpdir: Optional[str] = typer.Option(None, "--tmpdir", help="Directory for temporary files"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress copy progress"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Pull the layers of FINAL that BASE does not have into an OCI archive."""

    def _pull() -> None:
        _configure_logging(verbose)
        settings = _settings(tmpdir=tmpdir, insecure_base=insecure_base,
                             insecure_final=insecure_final, all_platforms=all_platforms)
        auths = Authentications(base_auth=_credentials(base_creds), final_auth=_credentials(final_creds))
        inc = _create_incremental(settings, quiet, auths)

        with inc.pull(OperationContext.background(), base, final) as archive:
            with open(output, "wb") as out:
                shutil.copyfileobj(archive, out)
        print_pull_summary(base, final, str(output))

    run_and_exit(_pull)


@app.command()
def vet(
    archive: Path = typer.Argument(..., help="OCI archive produced by pull"),
    dest: str = typer.Argument(..., help="Destination image reference"),
    dest_creds: Optional[str] = typer.Option(None, "--dest-creds", help="USER:PASSWORD for the destination registry"),
    insecure_dest: bool = typer.Option(False, "--insecure-dest", help="Use HTTP / skip TLS verification for the destination"),
    tmpdir: Optional[str] = typer.Option(None, "--tmpdir", help="Directory for temporary files"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Check that DEST has every layer ARCHIVE leaves out."""

    def _vet() -> None:
        _configure_logging(verbose)
        settings = _settings(tmpdir=tmpdir, insecure_push=insecure_dest)
        inc = _create_incremental(settings, True, Authentications(push_auth=_credentials(dest_creds)))

        inc.push_vet(OperationContext.background(), str(archive), dest)
        print_vet_summary(str(archive), dest)

    run_and_exit(_vet)


@app.command()
def push(
    archive: Path = typer.Argument(..., help="OCI archive produced by pull"),
    dest: str = typer.Argument(..., help="Destination image reference"),
    dest_creds: Optional[str] = typer.Option(None, "--dest-creds", help="USER:PASSWORD for the destination registry"),
    insecure_dest: bool = typer.Option(False, "--insecure-dest", help="Use HTTP / skip TLS verification for the destination"),
    all_platforms: bool = typer.Option(False, "--all-platforms", help="Push every platform of a manifest list"),
    tmpdir: Optional[str] = typer.Option(None, "--tmpdir", help="Directory for temporary files"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress copy progress"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Push ARCHIVE to DEST."""

    def _push() -> None:
        _configure_logging(verbose)
        settings = _settings(tmpdir=tmpdir, insecure_push=insecure_dest, all_platforms=all_platforms)
        inc = _create_incremental(settings, quiet, Authentications(push_auth=_credentials(dest_creds)))

        inc.push(OperationContext.background(), str(archive), dest)
        print_push_summary(str(archive), dest)

    run_and_exit(_push)


def main() -> None:
    """CLI entry point."""
    app()
