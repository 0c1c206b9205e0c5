from src.infrastructure.execution.http import HttpInvestmentExecutor
from src.infrastructure.execution.in_memory import InMemoryInvestmentExecutor

__all__ = ["HttpInvestmentExecutor", "InMemoryInvestmentExecutor"]
