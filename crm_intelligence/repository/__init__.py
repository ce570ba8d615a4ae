from crm_intelligence.repository.base import CustomerRepository, SegmentStore
from crm_intelligence.repository.memory import InMemoryRepository

__all__ = ["CustomerRepository", "SegmentStore", "InMemoryRepository"]
