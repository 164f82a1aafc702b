"""
Secondary indexes for mnemo.

- Neo4jGraphStore: relationship network (memories, concepts, relations)
- PineconeVectorStore: semantic similarity over memory content
- EmbeddingsService: OpenAI embeddings feeding the vector store

Both stores are best-effort: the relational store stays the source of truth
and the reconciliation sweep re-drives any leg that failed.
"""

from mnemo.knowledge.embeddings import EmbeddingsService
from mnemo.knowledge.neo4j_client import Neo4jGraphStore
from mnemo.knowledge.pinecone_client import PineconeVectorStore

__all__ = [
    "EmbeddingsService",
    "Neo4jGraphStore",
    "PineconeVectorStore",
]
