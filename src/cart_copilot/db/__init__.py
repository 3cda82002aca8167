# Database package
from .history_store import HistoryStore, InMemoryHistoryStore, PurchaseRecord, SQLiteHistoryStore

__all__ = ['HistoryStore', 'InMemoryHistoryStore', 'PurchaseRecord', 'SQLiteHistoryStore']
