"""Load knowledge files into the vector store.

Run whenever knowledge files are added or changed. Chunk ids are derived from
file names, so re-running over unchanged files does not grow the store, and
chunks a shorter version of a file no longer produces are removed. With
--prune, chunks of files that are gone from the directory are removed too.

Usage:
    python -m scripts.load_knowledge [directory] [--prune]
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from config.settings import Settings, get_settings, load_config
from observability.logger import setup_logging
from observability.metrics import MetricsCollector
from pipeline.loader import SUPPORTED_EXTENSIONS, FileDataLoader, discover_files, parse_chunk_id
from pipeline.rag import RAGEngine
from protocols.errors import ConfigurationError, IngestError, StorageError, UnreadableSource
from providers.factory import build_engine
from schemas.documents import IngestFailure, IngestReport

console = Console()


async def ingest_files(
    engine: RAGEngine,
    loader: FileDataLoader,
    files: list[Path],
) -> tuple[dict[str, int], IngestReport]:
    """Load and ingest each file. Returns per-file chunk counts and the merged report.

    A file that cannot be read is reported and skipped; the others still load.
    """
    counts: dict[str, int] = {}
    report = IngestReport()

    for file in files:
        console.print(f"📖 Processing: [cyan]{file.name}[/cyan]...")
        try:
            documents = loader.load(file)
        except UnreadableSource as e:
            console.print(f"   [red]❌ {e}[/red]")
            report = report.merge(
                IngestReport(failures=[IngestFailure(doc_id=file.name, error=str(e))])
            )
            continue

        try:
            await engine.prune_source(file.name, keep=len(documents))
        except StorageError as e:
            console.print(f"   [red]❌ {e}[/red]")
            report = report.merge(
                IngestReport(failures=[IngestFailure(doc_id=file.name, error=str(e))])
            )
            continue

        try:
            file_report = await engine.add_documents(documents, strict=True)
        except IngestError as e:
            file_report = e.report
            for failure in file_report.failures:
                console.print(f"   [red]❌ {failure.doc_id}: {failure.error}[/red]")

        counts[file.name] = len(file_report.stored)
        report = report.merge(file_report)
        console.print(f"   ✅ Loaded {len(file_report.stored)} document chunk(s)")

    return counts, report


async def prune_missing(engine: RAGEngine, files: list[Path]) -> list[str]:
    """Remove the chunks of every file that is no longer among ``files``."""
    present = {f.name for f in files}
    gone = sorted({
        parsed[0]
        for parsed in map(parse_chunk_id, await engine.store.ids())
        if parsed and parsed[0] not in present
    })
    removed: list[str] = []
    for filename in gone:
        removed.extend(await engine.prune_source(filename))
        console.print(f"🧹 Removed chunks of deleted file: [cyan]{filename}[/cyan]")
    return removed


def print_summary(
    counts: dict[str, int],
    report: IngestReport,
    store_total: int,
    metrics: MetricsCollector,
) -> None:
    table = Table(title="📚 Knowledge Base", show_lines=True)
    table.add_column("File", style="cyan")
    table.add_column("Chunks", justify="right", style="green")
    for name, count in counts.items():
        table.add_row(name, str(count))
    table.add_row("[bold]Total[/bold]", f"[bold]{sum(counts.values())}[/bold]")
    console.print(table)
    console.print(f"Vector store now holds {store_total} chunk(s).")
    if metrics.total_calls:
        console.print(
            f"Embedding calls: {metrics.total_calls} "
            f"({metrics.total_input_tokens:,} tokens, ~${metrics.total_cost_usd:.4f})"
        )
    if report.failures:
        console.print(f"[yellow]⚠️  {len(report.failures)} item(s) failed to load.[/yellow]")


async def run(directory: Path | None, settings: Settings, *, prune: bool = False) -> int:
    try:
        config = load_config(settings)
    except ConfigurationError as e:
        console.print(f"[red]❌ Configuration error: {e}[/red]")
        return 1

    knowledge_dir = directory or config.knowledge_dir
    if not knowledge_dir.is_dir():
        console.print(f"[red]❌ Knowledge directory not found: {knowledge_dir}[/red]")
        return 1

    files = discover_files(knowledge_dir)
    if not files:
        console.print(f"[yellow]⚠️  No knowledge files found in {knowledge_dir}[/yellow]")
        console.print(f"   Supported formats: {', '.join(SUPPORTED_EXTENSIONS)}")
        return 1

    console.print(f"📚 Found {len(files)} knowledge file(s):")
    for file in files:
        console.print(f"   - {file.name}")
    console.print()

    metrics = MetricsCollector()
    try:
        engine = build_engine(config, metrics)
    except StorageError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    loader = FileDataLoader(
        max_tokens=config.chunking.max_tokens,
        overlap_tokens=config.chunking.overlap_tokens,
    )
    counts, report = await ingest_files(engine, loader, files)
    if prune:
        try:
            await prune_missing(engine, files)
        except StorageError as e:
            console.print(f"[red]❌ {e}[/red]")
            return 1

    console.print()
    print_summary(counts, report, await engine.store.count(), metrics)
    if not report.ok:
        return 1

    console.print(
        f"\n✨ Successfully loaded {len(report.stored)} document chunk(s) into the vector store!"
    )
    console.print("💡 Try running: python -m scripts.chat")
    return 0


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    parser = argparse.ArgumentParser(description="Load knowledge files into the vector store")
    parser.add_argument(
        "directory", nargs="?", type=Path, default=None,
        help="Directory with .md/.txt files (default: KNOWLEDGE_DIR)",
    )
    parser.add_argument(
        "--prune", action="store_true",
        help="Also remove chunks of files no longer in the directory",
    )
    args = parser.parse_args(argv)

    try:
        settings = settings or get_settings()
    except ConfigurationError as e:
        console.print(f"[red]❌ Configuration error: {e}[/red]")
        return 1
    setup_logging(level=settings.log_level, fmt=settings.log_format, stream=sys.stderr)

    console.print("🚀 Starting knowledge base loading...\n")
    return asyncio.run(run(args.directory, settings, prune=args.prune))


if __name__ == "__main__":
    sys.exit(main())
