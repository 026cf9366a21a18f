"""Conversation Store: Chat/Message records, invariants and serialization."""
