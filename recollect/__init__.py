"""
Recollect — Two-Tier Memory for Collection Agents

This package gives conversational collection agents (email, phone, SMS) a
memory that outlives a single conversation. Active conversations live in a
short-lived session cache; when a session goes quiet it is consolidated into a
durable, similarity-searchable archive of past interactions (episodic memory)
and the reusable strategies distilled from them (semantic memory).

Architecture (bottom to top):
    1. Adapters (language model, embeddings, retry harness)
    2. Session cache (SQLite or Redis, with an expiry index)
    3. Archive store (Chroma or in-memory vector collections)
    4. Memory manager (the facade every caller goes through)
    5. Retrieval orchestrator (agentic RAG pipeline)
    6. Consolidator (background short-term -> long-term migration)
    7. Memory system (wires and owns everything above)
"""

__version__ = "0.1.0"
