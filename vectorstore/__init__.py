"""Vector store module for the tenant knowledge retrieval pipeline.

Provides word-boundary chunking, OpenAI embedding generation and a
tenant-isolated ChromaDB gateway, plus the ingestion pipeline tying them
together.
"""
