"""Document store: repository interface, DuckDB implementation, async gateway."""
from .base import ChatRepository
from .duckdb_store import DuckDBChatRepository
from .gateway import StoreGateway

__all__ = ["ChatRepository", "DuckDBChatRepository", "StoreGateway"]
