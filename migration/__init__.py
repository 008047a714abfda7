"""
Questionnaire migration pipeline.

Reads the legacy record API page by page and writes a normalized relational
copy, one entity-type stage at a time:

Modules:
    paginator: Rate-limited, retrying cursor pagination over the source API
    identity_map: External id to internal id mapping with a per-run cache
    revisions: Collapse sheet revisions into composite sheets
    answers: Project answers onto composite sheets (one per dedup key)
    values: Placeholder detection and answer value typing
    writer: Chunked upserts with row-level failure isolation and progress
    store: Target store access (upserts, truncation, run audit)
    stages: Stage definitions in dependency order
    transformers: Source record to target row mapping
    orchestrator: Runs the stages and reports per-stage results
    spreadsheet: Spreadsheet-importer answers through the same value rules
    cli: `questionnaire-migrate` command line

Pipeline:
    companies -> users -> sections -> subsections -> tags -> questions
    -> choices -> list_table_columns -> sheets -> answers

    A stage that hits a fatal error (fetch retries exhausted, source API
    error, target store unavailable) is marked failed and its dependents are
    skipped. Row-level failures are counted and the stage carries on.

Usage:
    from migration.context import MigrationContext
    from migration.orchestrator import MigrationOrchestrator

    context = MigrationContext.create(settings, session_maker, mode=MigrationMode.FRESH, dry_run=False)
    try:
        report = await MigrationOrchestrator(context).run()
    finally:
        await context.close()

    print(report.summary_lines())
"""

__all__ = [
    "MigrationContext",
    "MigrationOrchestrator",
    "MigrationReport",
    "SourcePaginator",
    "IdentityMap",
    "RevisionResolver",
    "AnswerProjector",
    "BatchWriter",
]
