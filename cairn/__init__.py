from .report import (
    AgentError,
    AuthenticationError,
    ConfigError,
    QuotaError,
    UnauthorizedError,
)
from .session import Result, Session

__all__ = [
    "AgentError",
    "AuthenticationError",
    "ConfigError",
    "QuotaError",
    "Result",
    "Session",
    "UnauthorizedError",
]
