"""
Parley Services - External collaborators and process lifecycle.

- database: PostgreSQL chat store (degrades to no persistence)
- memory_client: Semantic memory service client
- llm_client: OpenAI-compatible streaming client
- attachments: Attachment decoding for the model context
- shutdown: Graceful shutdown coordinator
"""
