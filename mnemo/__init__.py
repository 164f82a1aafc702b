"""
mnemo - durable, searchable memory for conversational AI clients.

This package contains the core modules for the mnemo system:
- storage: Relational system of record (embedded SQLite / networked PostgreSQL)
  and the backend selector that upgrades between them
- knowledge: Neo4j graph and Pinecone vector adapters, embeddings
- llm: Model provider gateway (local Ollama, hosted Anthropic)
- pipeline: Asynchronous enrichment queue, worker and reconciliation sweep
- services: Memory orchestrator facade (save/search/move/status)
- api: FastAPI operator surface
- config: Pydantic settings
- models: Domain models and enums
"""

__version__ = "0.1.0"
