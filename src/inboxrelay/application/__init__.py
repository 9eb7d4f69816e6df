"""Application layer - mailbox sessions, schedulers and the ingestion use case."""
