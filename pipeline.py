#!/usr/bin/env python3
"""Command-line entry point for tenant document ingestion and retrieval.

Usage:
  python pipeline.py ingest --client acme --file about-us.txt          # General knowledge
  python pipeline.py ingest --client acme --file l42.pdf --scope-id L-42 # Listing-scoped
  python pipeline.py ingest --manifest requests.json --workers 4         # Batch from JSON

  python pipeline.py query --client acme "Who founded the company?"     # Gate + retrieve
  python pipeline.py vector-status                                      # ChromaDB stats
  python pipeline.py vector-status --client acme                        # One tenant's count
  python pipeline.py delete-tenant --client acme --yes                  # Drop a tenant's vectors

  python pipeline.py serve --port 3000                                  # Launch the HTTP API
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def cmd_ingest(args) -> int:
    """Ingest files (or a JSON manifest of requests) for one or more tenants."""
    from schemas.document import IngestionRequest, IngestionType
    from vectorstore.ingest import load_requests, print_report
    from webapp.services import build_services

    requests: list[IngestionRequest] = []
    if args.manifest:
        requests.extend(load_requests(args.manifest))
    if args.file:
        if not args.client:
            logger.error("--client is required with --file")
            return 2
        ingestion_type = IngestionType.SCOPED if args.scope_id else IngestionType.GENERAL
        requests.extend(
            IngestionRequest(
                client_id=args.client,
                ingestion_type=ingestion_type.value,
                file_path=f,
                scope_id=args.scope_id,
                scope_url=args.scope_url,
            )
            for f in args.file
        )
    if not requests:
        logger.error("Nothing to ingest: pass --file or --manifest")
        return 2

    services = build_services()
    workers = args.workers or services.settings.ingest_max_workers

    # Each tenant's documents are ingested under that tenant's pipeline config.
    by_tenant: dict[str, list[IngestionRequest]] = {}
    for request in requests:
        by_tenant.setdefault(request.client_id, []).append(request)

    failed = 0
    for client_id, tenant_requests in by_tenant.items():
        logger.info("=" * 60)
        logger.info("INGESTING: %s (%d documents)", client_id, len(tenant_requests))
        logger.info("=" * 60)
        tenant = services.tenants.get(client_id)
        report = services.pipeline.ingest_batch(tenant_requests, tenant.pipeline, max_workers=workers)
        print_report(report)
        failed += report.failed
    return 1 if failed else 0


def cmd_query(args) -> int:
    """Run a query through the relevance gate and retrieval."""
    from schemas.query import Query
    from webapp.services import build_services

    services = build_services()
    query = Query(text=args.query, client_id=args.client, scope_id=args.scope_id)
    response = services.engine.answer(query, top_k=args.top_k)

    print(f"\nQuery: \"{args.query}\"  [{args.client}]")
    print(f"Relevant: {response.is_relevant} ({response.reason})")
    if response.suggested_response:
        print(f"Response: {response.suggested_response}")
    for i, match in enumerate(response.matches or [], 1):
        meta = match.metadata
        print(f"\n[{i}] Score: {match.score:.4f} | {meta.get('source', '?')} #{meta.get('chunkIndex', '?')}")
        if meta.get("scopeId"):
            print(f"    Scope: {meta['scopeId']}")
        preview = match.text[:200].replace("\n", " ")
        print(f"    Text: {preview}...")
    print()
    return 0


def cmd_vector_status(args) -> int:
    """Show vector store statistics."""
    from webapp.services import build_services

    services = build_services()
    store = services.store

    print("\n" + "=" * 70)
    print("VECTOR STORE STATUS")
    print("=" * 70)
    if args.client:
        print(f"\n  Tenant: {args.client}")
        print(f"    Vectors stored: {store.count(args.client)}")
    else:
        stats = store.get_stats()
        print(f"\n  Collection: {stats['collection']} ({stats['location']})")
        print(f"    Vectors stored: {stats['count']}")
        print(f"    Dimension: {stats['dimension'] or '?'}")
        configured = set(services.tenants.known())
        for client_id in sorted(configured | set(stats["tenants"])):
            marker = "" if client_id in configured else "  (no tenant config)"
            print(f"    {client_id}: {stats['tenants'].get(client_id, 0)}{marker}")
    print("\n" + "=" * 70)
    return 0


def cmd_delete_tenant(args) -> int:
    """Delete every vector owned by one tenant."""
    from webapp.services import build_services

    if not args.yes:
        logger.error("Refusing to delete vectors of '%s' without --yes", args.client)
        return 2
    deleted = build_services().store.delete_tenant(args.client)
    print(f"Deleted {deleted} vectors for {args.client}")
    return 0


def cmd_serve(args) -> int:
    """Launch the HTTP API."""
    import uvicorn

    logger.info("=" * 60)
    logger.info("LAUNCHING RETRIEVAL API")
    logger.info("  http://localhost:%d", args.port)
    logger.info("=" * 60)

    uvicorn.run(
        "webapp.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
    return 0


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tenant knowledge ingestion and retrieval pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command")

    # Ingest
    ingest_parser = subparsers.add_parser("ingest", help="Ingest documents into the vector store")
    ingest_parser.add_argument("--client", default=None, help="Tenant client_id (required with --file)")
    ingest_parser.add_argument("--file", action="append", default=[], help="Document path (repeatable)")
    ingest_parser.add_argument("--manifest", default=None, help="JSON file with one or more ingestion requests")
    ingest_parser.add_argument("--scope-id", default=None, help="Sub-resource id (makes the ingestion scoped)")
    ingest_parser.add_argument("--scope-url", default=None, help="Sub-resource URL")
    ingest_parser.add_argument(
        "--workers", type=int, default=None, help="Documents ingested in parallel (default: INGEST_MAX_WORKERS)"
    )

    # Query
    query_parser = subparsers.add_parser("query", help="Query a tenant's knowledge base")
    query_parser.add_argument("query", help="Query text")
    query_parser.add_argument("--client", required=True, help="Tenant client_id")
    query_parser.add_argument("--scope-id", default=None, help="Restrict to one sub-resource")
    query_parser.add_argument("--top-k", type=int, default=None, help="Number of results")

    # Vector status
    status_parser = subparsers.add_parser("vector-status", help="Show vector store statistics")
    status_parser.add_argument("--client", default=None, help="Only count this tenant's vectors")

    # Delete tenant
    delete_parser = subparsers.add_parser("delete-tenant", help="Delete all vectors of a tenant")
    delete_parser.add_argument("--client", required=True, help="Tenant client_id")
    delete_parser.add_argument("--yes", action="store_true", help="Confirm the deletion")

    # Serve (HTTP API)
    serve_parser = subparsers.add_parser("serve", help="Launch the HTTP API")
    serve_parser.add_argument("--port", type=int, default=3000, help="Port (default: 3000)")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host (default: 0.0.0.0)")
    serve_parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "ingest": cmd_ingest,
        "query": cmd_query,
        "vector-status": cmd_vector_status,
        "delete-tenant": cmd_delete_tenant,
        "serve": cmd_serve,
    }

    try:
        sys.exit(commands[args.command](args))
    except Exception as e:
        logger.exception("Pipeline error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
