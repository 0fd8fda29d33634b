"""
Batch ingestion of extracted text files into the retrieval index.

Indexes every .txt / .md file (plain text) and .json file (transcript
segments: [{"text", "start", "end"}, ...]) in a directory:
- Budget: ProcessingBudgetGovernor backed by the processing_usage table
- Chunker: HierarchicalChunker (parent/child)
- Embeddings: OpenAI text-embedding-3-small
- Storage: PostgreSQL + pgvector with client_id isolation

Document IDs are derived from the file path, so re-running the script
replaces a file's previous chunks instead of duplicating them.

Usage:
    python ingest_text_files.py --dir ~/exports/ --client-id 00000000-0000-0000-0000-000000000001
"""

import sys
import json
import uuid
import time
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md"}
TRANSCRIPT_SUFFIXES = {".json"}


def document_id_for(filepath: Path, client_id: str) -> str:
    """Stable document UUID for a file within a tenant."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{client_id}:{filepath.resolve()}"))


def title_for(filepath: Path, text: str) -> str:
    """First substantial line of the text, else the file stem."""
    for line in text.split("\n"):
        line = line.strip().lstrip("#").strip()
        if len(line) > 10:
            return line[:200]
    return filepath.stem.replace("_", " ")


def ingest_file(filepath: Path, indexer, client_id: str, document_type: str):
    """Index a single file. Returns the IndexingResult."""
    document_id = document_id_for(filepath, client_id)
    size = filepath.stat().st_size

    if filepath.suffix.lower() in TRANSCRIPT_SUFFIXES:
        segments = json.loads(filepath.read_text(encoding="utf-8"))
        return indexer.index_transcript(
            client_id=client_id,
            document_id=document_id,
            name=filepath.name,
            segments=segments,
            file_size_bytes=size,
            metadata={"file_path": str(filepath)},
        )

    text = filepath.read_text(encoding="utf-8")
    return indexer.index_document(
        client_id=client_id,
        document_id=document_id,
        name=title_for(filepath, text),
        text=text,
        document_type=document_type,
        file_size_bytes=size,
        file_type="text",
        metadata={"file_path": str(filepath)},
    )


def main():
    arg_parser = argparse.ArgumentParser(description="Index extracted text files")
    arg_parser.add_argument(
        "--dir",
        type=str,
        required=True,
        help="Directory containing .txt/.md files and/or .json transcripts",
    )
    arg_parser.add_argument(
        "--client-id",
        type=str,
        required=True,
        help="Tenant client ID",
    )
    arg_parser.add_argument(
        "--document-type",
        type=str,
        default="unknown",
        help="Document type stored for plain text files (default: unknown)",
    )
    args = arg_parser.parse_args()

    input_dir = Path(args.dir)
    if not input_dir.exists():
        logger.error(f"Directory not found: {input_dir}")
        sys.exit(1)

    files = sorted(
        p for p in input_dir.iterdir()
        if p.suffix.lower() in TEXT_SUFFIXES | TRANSCRIPT_SUFFIXES
    )
    if not files:
        logger.error(f"No text or transcript files found in {input_dir}")
        sys.exit(1)

    logger.info(f"Found {len(files)} files in {input_dir}")

    from execution.clarity_rag.budget import ProcessingBudgetGovernor, PostgresUsageStore
    from execution.clarity_rag.embeddings import get_embedding_service
    from execution.clarity_rag.indexer import DocumentIndexer, STATUS_INDEXED, STATUS_REJECTED
    from execution.clarity_rag.vector_store import DocumentStore

    store = DocumentStore()
    store.connect()
    store.initialize_schema()

    indexer = DocumentIndexer(
        store,
        get_embedding_service(),
        governor=ProcessingBudgetGovernor(PostgresUsageStore(store)),
    )

    start_time = time.time()
    total_chunks = 0
    success_count = 0
    fail_count = 0
    skip_count = 0

    for i, filepath in enumerate(files):
        logger.info(f"[{i+1}/{len(files)}] Processing: {filepath.name}")
        try:
            result = ingest_file(filepath, indexer, args.client_id, args.document_type)
        except Exception as e:
            fail_count += 1
            logger.error(f"  FAILED: {e}")
            continue

        if result.status == STATUS_REJECTED:
            logger.warning(f"  Budget exhausted: {result.reason} Stopping.")
            skip_count += len(files) - i
            break
        if result.status == STATUS_INDEXED:
            total_chunks += result.chunks_created
            success_count += 1
            logger.info(
                f"  -> {result.parents_created} parents, {result.children_created} children"
            )
        else:
            skip_count += 1
            logger.warning(f"  Skipped {filepath.name}: no text")

    elapsed = time.time() - start_time
    store.close()

    # Summary
    print("\n" + "=" * 60)
    print("INGESTION COMPLETE")
    print("=" * 60)
    print(f"Files indexed:   {success_count}/{len(files)} ({fail_count} failed, {skip_count} skipped)")
    print(f"Total chunks:    {total_chunks}")
    print(f"Time elapsed:    {elapsed:.1f}s")
    print(f"Client ID:       {args.client_id}")
    print("=" * 60)


if __name__ == "__main__":
    main()
