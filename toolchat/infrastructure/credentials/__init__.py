"""Credential store adapters."""

from toolchat.infrastructure.credentials.json_file_store import JsonFileCredentialStore
from toolchat.infrastructure.credentials.memory_store import InMemoryCredentialStore

__all__ = ["InMemoryCredentialStore", "JsonFileCredentialStore"]
