"""
Call transcript analysis pipeline.

Orchestrates: Select records -> Analyze (bounded concurrency) -> Normalize ->
Reconcile into document_metadata and call_log

Usage:
    python -m call_analyzer.pipeline
    python -m call_analyzer.pipeline --limit 100 --offset 40
    python -m call_analyzer.pipeline --reanalyze empty_tags
    python -m call_analyzer.pipeline --reanalyze "sentiment_score.lt.3" --dry-run
    python -m call_analyzer.pipeline --tag-taxonomy --reanalyze empty_tags
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Optional

from .analysis_client import AnalysisClient
from .config import ConfigurationError, PipelineConfig
from .db.call_log_store import CallLogStore
from .db.connection import StoreError
from .db.document_store import DocumentStore
from .db.tag_store import TagStore
from .logging_utils import configure_safe_logging
from .models import RunSummary
from .orchestrator import BatchOrchestrator
from .prompts import build_tag_schema, build_tagging_prompt, load_example_schema
from .reconciler import StateReconciler
from .selector import InvalidFilterError, ReanalysisFilter, RecordSelector, SelectionError, SelectionMode

logger = logging.getLogger(__name__)


async def run_analysis(
    config: PipelineConfig,
    mode: SelectionMode = SelectionMode.NORMAL,
    reanalysis_filter: Optional[ReanalysisFilter] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    dry_run: bool = False,
    tag_taxonomy: bool = False,
    example_schema: Optional[Any] = None,
    document_store=None,
    call_log_store=None,
    tag_store=None,
) -> RunSummary:
    """
    Run the analysis pipeline once.

    Args:
        config: Pipeline settings
        mode: NORMAL analyzes records without results, REANALYSIS re-runs call_log rows
        reanalysis_filter: Which call_log rows to re-run (default: empty tags)
        limit: Maximum records to process
        offset: Eligible records to skip, e.g. a previous run's next_offset
        dry_run: Analyze without writing anything
        tag_taxonomy: Send the tags table as system prompt and tag schema
        example_schema: exampleJson sent with every request (ignored with tag_taxonomy)
        document_store, call_log_store, tag_store: Store overrides, default psycopg2 stores

    Returns:
        RunSummary for the run

    Raises:
        ConfigurationError: if tag_taxonomy is set and the tags table is empty
        SelectionError: if the stores cannot be read while selecting
    """
    document_store = document_store or DocumentStore(config.database_url)
    call_log_store = call_log_store or CallLogStore(config.database_url)

    system_prompt = None
    if tag_taxonomy:
        tags = (tag_store or TagStore(config.database_url)).fetch_tags()
        if not tags:
            raise ConfigurationError("No tags found, cannot build tagging prompt")
        system_prompt = build_tagging_prompt(tags)
        example_schema = build_tag_schema(tags)

    selector = RecordSelector(
        document_store,
        call_log_store,
        source_id=config.data_source_id,
        page_size=config.page_size,
    )
    reconciler = StateReconciler(document_store, call_log_store)

    async with AnalysisClient(config, system_prompt=system_prompt, example_schema=example_schema) as client:
        orchestrator = BatchOrchestrator(
            selector,
            analyze_fn=lambda record: client.analyze(record.content, record_id=record.id),
            reconcile_fn=reconciler.reconcile,
            batch_size=config.batch_size,
            max_concurrency=config.max_concurrency,
            batch_delay=config.batch_delay,
            dry_run=dry_run,
        )
        return await orchestrator.run(mode, reanalysis_filter, limit=limit, offset=offset)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Analyze call transcripts and write results to document_metadata and call_log"
    )
    parser.add_argument(
        "--reanalyze",
        type=str,
        metavar="FILTER",
        help="Re-run call_log rows matching FILTER ('empty_tags' or 'field.operator.value')",
    )
    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum records to process",
    )
    parser.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Eligible records to skip (resume from a previous run's next offset)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Records per batch (default: ANALYSIS_BATCH_SIZE or 20)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum concurrent analysis requests (default: ANALYSIS_MAX_CONCURRENCY or 5)",
    )
    parser.add_argument(
        "--source-id",
        type=str,
        help="Only analyze documents from this data source",
    )
    parser.add_argument(
        "--tag-taxonomy",
        action="store_true",
        help="Tag against the tags table instead of the chatflow's default prompt",
    )
    parser.add_argument(
        "--example-schema",
        type=str,
        help="JSON file sent as exampleJson",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Don't write to database",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        help="Environment file to load (default: .env.local)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        help="Also write the run log to this file",
    )

    args = parser.parse_args()
    configure_safe_logging(log_file=args.log_file)

    overrides = {}
    if args.batch_size:
        overrides["batch_size"] = args.batch_size
    if args.concurrency:
        overrides["max_concurrency"] = args.concurrency
    if args.source_id:
        overrides["data_source_id"] = args.source_id

    try:
        config = PipelineConfig.from_env(env_file=args.env_file, **overrides)
        reanalysis_filter = ReanalysisFilter.parse(args.reanalyze) if args.reanalyze else None
        example_schema = load_example_schema(args.example_schema) if args.example_schema else None
    except (ConfigurationError, InvalidFilterError) as e:
        logger.error(str(e))
        sys.exit(2)

    try:
        summary = asyncio.run(run_analysis(
            config,
            mode=SelectionMode.REANALYSIS if reanalysis_filter else SelectionMode.NORMAL,
            reanalysis_filter=reanalysis_filter,
            limit=args.limit,
            offset=args.offset,
            dry_run=args.dry_run,
            tag_taxonomy=args.tag_taxonomy,
            example_schema=example_schema,
        ))
    except (SelectionError, ConfigurationError, StoreError) as e:
        logger.error(f"Run aborted: {e}")
        sys.exit(1)

    if args.limit:
        logger.info(f"To continue after this run use --offset {summary.next_offset}")


if __name__ == "__main__":
    main()
