"""Operator commands: schema setup, imports, embedding backfills and status"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from voterchat.config import Settings, configure_logging
from voterchat.errors import VoterChatError
from voterchat.models.database import create_bills_tables, make_engine
from voterchat.services.bulk_embedding import (
    BulkEmbeddingProcessor,
    VoterRowEmbeddingTarget,
    discover_voter_embedding_tables,
)
from voterchat.services.data_importer import LegislativeDataImporter
from voterchat.services.embedding_service import build_embedding_service
from voterchat.services.importers.voter_importer import VoterImporter, VoterRowWriter
from voterchat.services.process_tracker import ProcessTracker
from voterchat.services.table_summary import TableSummaryService
from voterchat.services.voter_schema import SchemaIndexer, VoterSchema

logger = logging.getLogger("voterchat")


def _print_report(report) -> None:
    print(report.summary() if hasattr(report, "summary") else report)


async def cmd_init_db(settings: Settings, args) -> int:
    engine = make_engine(settings.require_bills_database())
    try:
        await create_bills_tables(engine)
        if settings.database.voter_url and settings.database.voter_schema:
            voter_engine = make_engine(settings.database.voter_url)
            try:
                await VoterSchema(voter_engine, settings.database.voter_schema,
                                  settings.voter_embedding.dimension).ensure_ddl_tables()
            finally:
                await voter_engine.dispose()
    finally:
        await engine.dispose()
    return 0


async def cmd_import(settings: Settings, args) -> int:
    engine = make_engine(settings.require_bills_database())
    importer = LegislativeDataImporter.from_settings(settings, engine)
    try:
        if args.phase == "all":
            reports = await importer.import_all(args.root)
            for report in reports.values():
                _print_report(report)
        elif args.phase == "sponsors":
            _print_report(await importer.import_sponsors(args.root))
        elif args.phase == "bills":
            _print_report(await importer.import_bills(args.root))
        elif args.phase == "votes":
            _print_report(await importer.import_votes(args.root))
    finally:
        await importer.bill_embeddings.embedder.aclose()
        await engine.dispose()
    return 0


async def cmd_embed(settings: Settings, args) -> int:
    if args.target == "bills":
        engine = make_engine(settings.require_bills_database())
        importer = LegislativeDataImporter.from_settings(settings, engine)
        importer.bill_embeddings.workers = args.workers
        try:
            _print_report(await importer.process_bills())
        finally:
            await importer.bill_embeddings.embedder.aclose()
            await engine.dispose()
        return 0

    settings.require_voter_database()
    settings.require_openai(settings.voter_embedding)
    schema = settings.database.voter_schema
    engine = make_engine(settings.database.voter_url)
    embedder = build_embedding_service(settings.voter_embedding)
    try:
        for table in await discover_voter_embedding_tables(engine, schema):
            processor = BulkEmbeddingProcessor(
                VoterRowEmbeddingTarget(engine, schema, table, settings.voter_embedding.dimension),
                embedder,
                batch_size=settings.imports.voter_embed_batch_size,
                workers=args.workers,
            )
            _print_report(await processor.run())
    finally:
        await embedder.aclose()
        await engine.dispose()
    return 0


async def cmd_voter(settings: Settings, args) -> int:
    settings.require_voter_database()
    schema_name = settings.database.voter_schema
    engine = make_engine(settings.database.voter_url)
    voter_schema = VoterSchema(engine, schema_name, settings.voter_embedding.dimension)
    try:
        if args.voter_command == "reset-schema":
            if not args.yes:
                print(f"Refusing to drop every table in schema {schema_name} without --yes")
                return 2
            await voter_schema.reset_schema()
            return 0

        api_key = settings.require_openai(settings.voter_embedding)
        bills_engine = make_engine(settings.require_bills_database())
        embedder = build_embedding_service(settings.voter_embedding)
        try:
            await voter_schema.ensure_ddl_tables()
            importer = VoterImporter(
                tracker=ProcessTracker(bills_engine),
                voter_schema=voter_schema,
                indexer=SchemaIndexer(engine, schema_name, embedder),
                summarizer=TableSummaryService(
                    api_key=api_key,
                    model=settings.imports.summary_model,
                    base_url=settings.voter_embedding.openai_base_url,
                ),
                writer=VoterRowWriter(engine, schema_name),
                insert_batch_size=settings.imports.voter_insert_batch_size,
                sample_size=settings.imports.summary_sample_size,
            )
            _print_report(await importer.process_directory(args.directory))
        finally:
            await embedder.aclose()
            await bills_engine.dispose()
    finally:
        await engine.dispose()
    return 0


async def cmd_status(settings: Settings, args) -> int:
    engine = make_engine(settings.require_bills_database())
    try:
        tracker = ProcessTracker(engine)
        print(await tracker.status_counts(args.category))
        if args.failed:
            for path in await tracker.list_paths("failed", args.category):
                print(path)
    finally:
        await engine.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voterchat", description="Voter chat data pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create tables, indexes and extensions")
    init_db.set_defaults(handler=cmd_init_db)

    import_cmd = subparsers.add_parser("import", help="Import the legislative corpus")
    import_cmd.add_argument("phase", choices=["all", "sponsors", "bills", "votes"])
    import_cmd.add_argument("root", help="Corpus root: <root>/<region>/<session>/<category>/*.json")
    import_cmd.set_defaults(handler=cmd_import)

    embed = subparsers.add_parser("embed", help="Backfill missing embeddings and rebuild indexes")
    embed.add_argument("target", choices=["bills", "voter"])
    embed.add_argument("--workers", type=int, default=1)
    embed.set_defaults(handler=cmd_embed)

    voter = subparsers.add_parser("voter", help="Voter extract commands")
    voter_commands = voter.add_subparsers(dest="voter_command", required=True)
    voter_import = voter_commands.add_parser("import", help="Import *.csv extracts from a directory")
    voter_import.add_argument("directory")
    reset = voter_commands.add_parser("reset-schema", help="Drop every table in the voter schema")
    reset.add_argument("--yes", action="store_true", help="Confirm the drop")
    voter.set_defaults(handler=cmd_voter)

    status = subparsers.add_parser("status", help="Show ingestion progress")
    status.add_argument("--category", choices=["bill", "vote", "people", "voter"])
    status.add_argument("--failed", action="store_true", help="List failed files")
    status.set_defaults(handler=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    try:
        return asyncio.run(args.handler(settings, args))
    except VoterChatError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
