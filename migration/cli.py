"""
Command line entry point: `questionnaire-migrate`.

Exit codes:
    0  every selected stage completed (row-level failures are reported, not fatal)
    1  at least one stage failed (fetch exhausted, source API error, store unavailable)
    2  configuration error
"""

import asyncio
from typing import Any, Dict, Optional, Sequence
import click
from core.config import Settings, settings as default_settings
from core.database import create_engine, create_session_maker
from core.exceptions import ConfigurationError, ExtractionError
from core.logging import setup_logging
from models.base import Base, MigrationMode
from migration.context import MigrationContext
from migration.orchestrator import MigrationOrchestrator, MigrationReport
from migration.paginator import SourcePaginator
from migration.rate_limiter import RateLimiter
from migration.retry import RetryPolicy
from migration.stages import STAGES, STAGE_NAMES
import logging

logger = logging.getLogger(__name__)

EXIT_FATAL_STAGE = 1
EXIT_CONFIGURATION = 2

TEST_IMPORT_LIMIT = 50


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj.get("settings") or default_settings


def _require_source(settings: Settings) -> None:
    if not settings.SOURCE_API_URL:
        raise ConfigurationError("SOURCE_API_URL is not set")
    if not settings.SOURCE_API_TOKEN:
        raise ConfigurationError("SOURCE_API_TOKEN is not set")


async def _migrate(
    obj: Dict[str, Any],
    settings: Settings,
    mode: MigrationMode,
    dry_run: bool,
    limit: Optional[int],
    stages: Sequence[str]
) -> MigrationReport:
    session_maker = obj.get("session_maker")
    engine = None
    if session_maker is None:
        engine = create_engine(settings.DATABASE_URL)
        session_maker = create_session_maker(engine)

    context = MigrationContext.create(
        settings,
        session_maker,
        mode=mode,
        dry_run=dry_run,
        record_limit=limit,
        http_client=obj.get("http_client")
    )
    try:
        return await MigrationOrchestrator(context).run(stages)
    finally:
        await context.close()
        if engine is not None:
            await engine.dispose()


def _execute(
    ctx: click.Context,
    mode: MigrationMode,
    dry_run: bool,
    limit: Optional[int],
    stages: Sequence[str]
) -> None:
    settings = _settings(ctx)
    try:
        _require_source(settings)
        report = asyncio.run(_migrate(ctx.obj, settings, mode, dry_run, limit, stages))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        ctx.exit(EXIT_CONFIGURATION)

    for line in report.summary_lines():
        click.echo(line)

    if report.has_fatal_errors:
        ctx.exit(EXIT_FATAL_STAGE)


def _mode(fresh: bool) -> MigrationMode:
    return MigrationMode.FRESH if fresh else MigrationMode.INCREMENTAL


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """Migrate the legacy questionnaire dataset into the relational target."""
    ctx.ensure_object(dict)
    setup_logging(log_level or _settings(ctx).LOG_LEVEL)


@cli.command()
@click.option("--fresh/--incremental", default=False, show_default=True,
              help="Fresh empties the selected stages first; incremental skips migrated records.")
@click.option("--dry-run/--execute", default=True, show_default=True,
              help="Dry runs transform everything but write nothing.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max source records per stage.")
@click.option("--stage", "stages", multiple=True, type=click.Choice(STAGE_NAMES),
              help="Run only this stage (repeatable).")
@click.pass_context
def run(ctx: click.Context, fresh: bool, dry_run: bool, limit: Optional[int], stages) -> None:
    """Run the migration (all stages by default)."""
    _execute(ctx, _mode(fresh), dry_run, limit, stages)


@cli.command()
@click.option("--fresh/--incremental", default=False, show_default=True)
@click.option("--dry-run/--execute", default=True, show_default=True)
@click.option("--limit", type=click.IntRange(min=1), default=None)
@click.pass_context
def answers(ctx: click.Context, fresh: bool, dry_run: bool, limit: Optional[int]) -> None:
    """Migrate answers only, against sheets and questions already in the target."""
    _execute(ctx, _mode(fresh), dry_run, limit, ["answers"])


@cli.command("test-import")
@click.option("--limit", type=click.IntRange(min=1), default=TEST_IMPORT_LIMIT, show_default=True)
@click.option("--dry-run/--execute", default=True, show_default=True)
@click.pass_context
def test_import(ctx: click.Context, limit: int, dry_run: bool) -> None:
    """Fresh import of a bounded subset of every entity type."""
    _execute(ctx, MigrationMode.FRESH, dry_run, limit, ())


async def _count(obj: Dict[str, Any], settings: Settings) -> Dict[str, int]:
    paginator = SourcePaginator(
        base_url=settings.SOURCE_API_URL,
        api_token=settings.SOURCE_API_TOKEN,
        rate_limiter=RateLimiter(settings.SOURCE_MIN_REQUEST_INTERVAL),
        retry_policy=RetryPolicy.linear(settings.SOURCE_MAX_ATTEMPTS, settings.SOURCE_RETRY_BACKOFF),
        page_size=settings.SOURCE_PAGE_SIZE,
        timeout=settings.SOURCE_TIMEOUT,
        client=obj.get("http_client")
    )
    async with paginator:
        return {stage.name: await paginator.count(stage.source_entity) for stage in STAGES}


@cli.command()
@click.pass_context
def count(ctx: click.Context) -> None:
    """Print record counts per source entity."""
    settings = _settings(ctx)
    try:
        _require_source(settings)
        counts = asyncio.run(_count(ctx.obj, settings))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        ctx.exit(EXIT_CONFIGURATION)
    except ExtractionError as e:
        click.echo(f"Count failed: {e}", err=True)
        ctx.exit(EXIT_FATAL_STAGE)

    for name, total in counts.items():
        click.echo(f"{name:<20} {total}")
    click.echo(f"{'total':<20} {sum(counts.values())}")


async def _init_db(obj: Dict[str, Any], settings: Settings) -> None:
    session_maker = obj.get("session_maker")
    if session_maker is not None:
        engine = session_maker.kw["bind"]
    else:
        engine = create_engine(settings.DATABASE_URL)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        if session_maker is None:
            await engine.dispose()


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create every target table."""
    asyncio.run(_init_db(ctx.obj, _settings(ctx)))
    click.echo("Tables created")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
