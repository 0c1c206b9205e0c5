from src.infrastructure.schedules.in_memory import InMemoryScheduleStore
from src.infrastructure.schedules.postgres import PostgresScheduleStore

__all__ = ["InMemoryScheduleStore", "PostgresScheduleStore"]
