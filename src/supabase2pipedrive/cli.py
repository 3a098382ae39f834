"""CLI for supabase2pipedrive."""

import asyncio
import logging
import sys

import click

from supabase2pipedrive import __version__
from supabase2pipedrive.config import Settings, get_settings
from supabase2pipedrive.models import SyncStats
from supabase2pipedrive.pipedrive.client import PipedriveClient
from supabase2pipedrive.pipedrive.fields import PERSON_FIELDS, FieldMapper
from supabase2pipedrive.pipedrive.pagination import BulkFetcher
from supabase2pipedrive.supabase.client import SupabaseClient
from supabase2pipedrive.supabase.store import CRMStore
from supabase2pipedrive.syncer import BidirectionalSyncer


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request at INFO, which would leak the API token in URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _require_settings(ctx: click.Context) -> Settings:
    settings: Settings | None = ctx.obj.get("settings")
    if settings is None:
        click.echo(f"Error loading settings: {ctx.obj.get('settings_error')}", err=True)
        ctx.exit(1)
    return settings


def _echo_stats(label: str, stats: SyncStats) -> None:
    click.echo(f"\n{label}:")
    click.echo(f"  Created: {stats.created}")
    click.echo(f"  Updated: {stats.updated}")
    click.echo(f"  Skipped: {stats.skipped}")
    click.echo(f"  Errors: {stats.error_count}")
    if stats.errors:
        click.echo("\n  Error details:")
        for error in stats.errors[:5]:  # Show first 5
            click.echo(f"    - {error}")
        if len(stats.errors) > 5:
            click.echo(f"    ... and {len(stats.errors) - 5} more")


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log every reconciliation decision")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Sync people and organizations between Supabase and Pipedrive."""
    ctx.ensure_object(dict)
    configure_logging(verbose)

    # Load settings
    try:
        settings = get_settings()
        ctx.obj["settings"] = settings
    except Exception as e:
        ctx.obj["settings_error"] = str(e)


@main.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Run a full 2-way sync.

    Organizations are reconciled first, then people. For each matched pair the
    side that changed most recently since the last sync wins.
    """
    settings = _require_settings(ctx)

    async def run() -> None:
        pipedrive = PipedriveClient.from_settings(settings)
        supabase = SupabaseClient.from_settings(settings)
        syncer = BidirectionalSyncer(
            pipedrive,
            CRMStore(supabase),
            page_size=settings.page_size,
            pass_timeout=settings.pass_timeout,
            run_timeout=settings.run_timeout,
        )

        try:
            report = await syncer.run()
        finally:
            await pipedrive.close()
            await supabase.close()

        click.echo("\n" + "=" * 50)
        click.echo("SYNC COMPLETE")
        click.echo("=" * 50)
        _echo_stats("Organizations", report.organizations)
        _echo_stats("People", report.people)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nSync interrupted by user")
        ctx.exit(130)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@main.command("init-fields")
@click.pass_context
def init_fields(ctx: click.Context) -> None:
    """Create missing Pipedrive person fields.

    Safe to run multiple times - only adds fields that don't exist yet.
    """
    settings = _require_settings(ctx)

    async def run() -> None:
        client = PipedriveClient.from_settings(settings)
        try:
            fetcher = BulkFetcher(client, settings.page_size)
            mapping = await FieldMapper(client, fetcher).resolve_or_create_fields()
        finally:
            await client.close()

        click.echo(f"Resolved {len(mapping.keys)}/{len(PERSON_FIELDS)} person fields:")
        for name, spec in PERSON_FIELDS.items():
            click.echo(f"  {spec.name}: {mapping.keys.get(name, '<missing>')}")

    try:
        asyncio.run(run())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@main.command()
@click.pass_context
def fields(ctx: click.Context) -> None:
    """Show the person field mapping and enum options without changing Pipedrive."""
    settings = _require_settings(ctx)

    async def run() -> None:
        client = PipedriveClient.from_settings(settings)
        try:
            fetcher = BulkFetcher(client, settings.page_size)
            mapping = await FieldMapper(client, fetcher).resolve_or_create_fields(
                create_missing=False
            )
        finally:
            await client.close()

        for name, spec in PERSON_FIELDS.items():
            click.echo(f"{spec.name} ({spec.field_type}): {mapping.keys.get(name, '<missing>')}")
            for option_id, label in mapping.options.get(name, {}).items():
                click.echo(f"    {option_id}: {label}")

    try:
        asyncio.run(run())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show how much of the local CRM is linked to Pipedrive."""
    settings = _require_settings(ctx)

    async def run() -> None:
        supabase = SupabaseClient.from_settings(settings)
        try:
            store = CRMStore(supabase)
            organizations = await store.fetch_organizations()
            people = await store.fetch_people()
        finally:
            await supabase.close()

        for label, records in (("Organizations", organizations), ("People", people)):
            linked = sum(1 for record in records if record.external_id is not None)
            synced = sum(1 for record in records if record.last_external_sync is not None)
            click.echo(f"{label}: {len(records)}")
            click.echo(f"  Linked to Pipedrive: {linked}")
            click.echo(f"  Not linked: {len(records) - linked}")
            click.echo(f"  Ever synced: {synced}")

    try:
        asyncio.run(run())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


if __name__ == "__main__":
    main()
