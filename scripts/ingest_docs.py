"""CLI script to ingest physiotherapy reference documents into Qdrant.

Usage:
    uv run scripts/ingest_docs.py --directory data/protocoles/ --category protocoles
    uv run scripts/ingest_docs.py --file data/etudes/lombalgie.pdf --category etudes
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from kine_rag.config import settings
from kine_rag.context import AppContext
from kine_rag.errors import KineRagError

SUPPORTED_SUFFIXES = (".md", ".txt", ".pdf")


async def ingest_file(ctx: AppContext, path: Path, category: str | None) -> int:
    """Ingest a single file. Returns number of documents stored or merged."""
    title = path.stem.replace("-", " ").replace("_", " ")
    metadata = {"source_file": path.name}
    if path.suffix.lower() == ".pdf":
        documents = await ctx.ingestion.ingest_pdf(
            path.read_bytes(), title, category, metadata, filename=path.name
        )
    else:
        documents = await ctx.ingestion.ingest_document(
            path.read_text(encoding="utf-8"), title, category, metadata
        )

    if not documents:
        print(f"  Skipped {path.name} (no ingestible content)")
        return 0
    merged = sum(1 for d in documents if d.metadata.get("duplicate_detected"))
    print(
        f"  {path.name} -> {len(documents)} chunks "
        f"({merged} merged into existing documents)"
    )
    return len(documents)


async def run(files: list[Path], category: str | None) -> int:
    ctx = AppContext.create(settings)
    try:
        print("Ensuring Qdrant collection exists...")
        await ctx.vector_store.ensure_collection()
        total = 0
        for f in files:
            print(f"\nIngesting {f.name}...")
            try:
                total += await ingest_file(ctx, f, category)
            except KineRagError as e:
                print(f"  Failed {f.name}: [{e.code}] {e.message}")
        return total
    finally:
        await ctx.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Ingest reference documents into Qdrant"
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--directory", type=Path, help="Directory of .md, .txt or .pdf files"
    )
    group.add_argument("--file", type=Path, help="Single file to ingest")
    parser.add_argument(
        "--category",
        type=str,
        default=None,
        help="Category stored with every document",
    )
    args = parser.parse_args()

    if args.file:
        if not args.file.exists():
            print(f"Error: File not found: {args.file}")
            sys.exit(1)
        files = [args.file]
    else:
        if not args.directory.exists():
            print(f"Error: Directory not found: {args.directory}")
            sys.exit(1)
        files = sorted(
            f
            for f in args.directory.iterdir()
            if f.suffix.lower() in SUPPORTED_SUFFIXES
        )
        if not files:
            print(f"No {', '.join(SUPPORTED_SUFFIXES)} files found in {args.directory}")
            sys.exit(1)
        print(f"Found {len(files)} files")

    total = asyncio.run(run(files, args.category))
    print(f"\nDone! Ingested {total} total chunks.")


if __name__ == "__main__":
    main()
