"""Ingestion pipeline: load document → chunk → embed → upsert into ChromaDB.

Each document is processed batch-then-commit: every chunk is embedded first,
then all records are written with a single upsert while the document lock is
held. A failure before the commit leaves nothing of that document written.

Usage:
  python pipeline.py ingest --client acme --file about-us.txt
  python pipeline.py ingest --client acme --file listing.pdf --scope-id L-42
  python pipeline.py ingest --manifest requests.json
"""

import io
import logging
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Union

import docx
import fitz  # PyMuPDF
import orjson
from docx.opc.exceptions import PackageNotFoundError
from pydantic import ValidationError as PydanticValidationError

from schemas.document import (
    Document,
    DocumentResult,
    DocumentState,
    IngestionReport,
    IngestionRequest,
    IngestionType,
)
from schemas.errors import IngestionFailed, ProviderError, ValidationError
from schemas.settings import PipelineConfig
from schemas.vector_record import VectorMetadata, VectorRecord
from vectorstore.chunker import Chunker
from vectorstore.embedder import Embedder
from vectorstore.store import VectorStore

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".json", ".csv"}
PDF_EXTENSIONS = {".pdf"}
DOCX_EXTENSIONS = {".docx"}
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | PDF_EXTENSIONS | DOCX_EXTENSIONS


# ---------------------------------------------------------------------------
# Document loading
# ---------------------------------------------------------------------------

def extract_text(data: bytes, filename: str) -> str:
    """Extract plain text from an uploaded file's bytes, chosen by extension."""
    suffix = Path(filename).suffix.lower()
    if suffix in TEXT_EXTENSIONS:
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ValidationError(f"{filename} is not valid UTF-8: {e}") from e
    if suffix in PDF_EXTENSIONS:
        try:
            with fitz.open(stream=data, filetype="pdf") as pdf:
                pages = [page.get_text() for page in pdf]
        except (RuntimeError, ValueError) as e:
            raise ValidationError(f"Could not read PDF {filename}: {e}") from e
        logger.debug("Extracted %d pages from %s", len(pages), filename)
        return "\n".join(pages)
    if suffix in DOCX_EXTENSIONS:
        try:
            document = docx.Document(io.BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ValidationError(f"Could not read DOCX {filename}: {e}") from e
        return "\n".join(para.text for para in document.paragraphs)
    raise ValidationError(
        f"Unsupported file type '{suffix or filename}'; supported: {sorted(SUPPORTED_EXTENSIONS)}"
    )


def load_requests(path: Union[str, Path]) -> list[IngestionRequest]:
    """Load a JSON manifest holding one ingestion request or a list of them."""
    try:
        data = orjson.loads(Path(path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValidationError(f"Could not read manifest {path}: {e}") from e
    items = data if isinstance(data, list) else [data]
    try:
        return [IngestionRequest.model_validate(item) for item in items]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid request in manifest {path}: {e}") from e


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IngestionPipeline:
    """Turns ingestion requests into tenant-isolated vector records."""

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        chunker_factory: Callable[[int], Chunker] = Chunker,
    ):
        self.embedder = embedder
        self.store = store
        self.chunker_factory = chunker_factory

    def load_document(self, request: IngestionRequest, config: PipelineConfig) -> Document:
        """Validate a request against the tenant's config and resolve its text.

        Raises:
            ValidationError: the request cannot be ingested as given.
        """
        if not request.client_id:
            raise ValidationError("client_id is required")

        try:
            ingestion_type = IngestionType(request.ingestion_type)
        except ValueError:
            raise ValidationError(f"Unknown ingestionType '{request.ingestion_type}'") from None
        if not config.allows(ingestion_type.value):
            raise ValidationError(
                f"ingestionType '{ingestion_type.value}' is not enabled for this tenant"
            )
        if ingestion_type == IngestionType.SCOPED and not request.scope_id:
            raise ValidationError("scoped ingestion requires scopeId")
        if ingestion_type == IngestionType.GENERAL and request.scope_id:
            raise ValidationError("general ingestion must not carry a scopeId")

        if (request.document_content is None) == (request.file_path is None):
            raise ValidationError("exactly one of documentContent or filePath is required")

        if request.file_path is not None:
            path = Path(request.file_path)
            source = request.source or path.name
            try:
                data = path.read_bytes()
            except OSError as e:
                raise ValidationError(f"Could not read {path}: {e}") from e
            text = extract_text(data, path.name)
        else:
            source = request.source
            text = request.document_content
            if not source:
                raise ValidationError("source is required with documentContent")

        if not text.strip():
            raise ValidationError(f"{source} has no text content")

        return Document(
            client_id=request.client_id,
            source=source,
            ingestion_type=ingestion_type,
            text=text,
            scope_id=request.scope_id,
            scope_url=request.scope_url,
        )

    def ingest_document(self, request: IngestionRequest, config: PipelineConfig) -> DocumentResult:
        """Ingest one document. Failures are recorded on the result, not raised."""
        client = request.client_id
        result = DocumentResult(client_id=client, source=request.label)
        pipeline_start = time.perf_counter()

        try:
            # 1. Load and validate
            logger.info("[%s] STEP 1/4: Loading %s...", client, request.label)
            document = self.load_document(request, config)
            result.source = document.source

            # 2. Chunk
            t0 = time.perf_counter()
            chunks = self.chunker_factory(config.max_chunk_size).chunk_document(document)
            result.state = DocumentState.CHUNKED
            result.chunk_count = len(chunks)
            logger.info(
                "[%s] STEP 2/4 done: %d chunks from %s in %.2fs",
                client, len(chunks), document.source, time.perf_counter() - t0,
            )

            # 3. Embed every chunk before writing anything
            t0 = time.perf_counter()
            try:
                embeddings = self.embedder.embed([c.text for c in chunks], show_progress=False)
            except ProviderError as e:
                raise IngestionFailed(document.source, e) from e
            result.state = DocumentState.EMBEDDED
            logger.info(
                "[%s] STEP 3/4 done: %d embeddings in %.1fs",
                client, len(embeddings), time.perf_counter() - t0,
            )

            records = [
                VectorRecord(
                    id=chunk.id,
                    values=vector,
                    metadata=VectorMetadata(
                        client_id=chunk.client_id,
                        source=chunk.source,
                        chunk_index=chunk.chunk_index,
                        scope_id=chunk.scope_id,
                        scope_url=chunk.scope_url,
                    ),
                    text=chunk.text,
                )
                for chunk, vector in zip(chunks, embeddings)
            ]

            # 4. Commit
            t0 = time.perf_counter()
            field_map = config.metadata_field_map
            try:
                with self.store.document_lock(client, document.source, document.scope_id):
                    stored = self.store.upsert(records, field_map=field_map)
                    if config.prune_stale_chunks:
                        result.pruned = self.store.delete_stale_chunks(
                            client,
                            document.source,
                            keep=len(records),
                            scope_id=document.scope_id,
                            field_map=field_map,
                        )
            except ProviderError as e:
                raise IngestionFailed(document.source, e) from e
            result.state = DocumentState.UPSERTED
            result.vector_ids = [r.id for r in records]
            logger.info(
                "[%s] STEP 4/4 done: %d vectors stored in %.1fs",
                client, stored, time.perf_counter() - t0,
            )

        except (ValidationError, IngestionFailed) as e:
            result.state = DocumentState.FAILED
            result.error = str(e)
            logger.warning("[%s] Skipping %s: %s", client, result.source, e)
            return result

        logger.info(
            "[%s] Ingested %s in %.1fs",
            client, result.source, time.perf_counter() - pipeline_start,
        )
        return result

    def ingest_batch(
        self,
        requests: list[IngestionRequest],
        config: PipelineConfig,
        max_workers: int = 1,
    ) -> IngestionReport:
        """Ingest several documents; one failing document never stops the others.

        With ``max_workers > 1`` documents run concurrently in a bounded thread
        pool. Results keep the order of ``requests`` either way.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {max_workers}")

        overall_start = time.perf_counter()
        if max_workers == 1 or len(requests) <= 1:
            results = [self.ingest_document(r, config) for r in requests]
        else:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest") as pool:
                results = list(pool.map(lambda r: self.ingest_document(r, config), requests))

        report = IngestionReport(results=results)
        logger.info(
            "Batch complete in %.1fs: %d succeeded, %d failed",
            time.perf_counter() - overall_start, report.succeeded, report.failed,
        )
        return report


def print_report(report: IngestionReport):
    """Print a summary of the ingestion results."""
    print("\n" + "=" * 70)
    print("INGESTION SUMMARY")
    print("=" * 70)
    for result in report.results:
        status = "OK" if result.ok else "FAILED"
        print(f"\n  [{result.client_id}] {result.source}: {status}")
        print(f"    Chunks:  {result.chunk_count}")
        if result.pruned:
            print(f"    Pruned:  {result.pruned}")
        if result.error:
            print(f"    Error:   {result.error}")
    print(f"\n  TOTAL: {report.succeeded} succeeded, {report.failed} failed")
    print("=" * 70)

