from enum import Enum


class AgentError(Exception):
    """Base class for failures inside the question-answering agent."""


class LLMError(AgentError):
    """Model endpoint unreachable, misconfigured, or returned something unusable."""


class SQLViolation(str, Enum):
    EMPTY = "empty"
    MULTI_STATEMENT = "multi_statement"
    NOT_SELECT = "not_select"
    FORBIDDEN_KEYWORD = "forbidden_keyword"
    UNKNOWN_TABLE = "unknown_table"


class SQLValidationError(AgentError):
    def __init__(self, kind: SQLViolation, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class QueryExecutionError(AgentError):
    """The database rejected the statement. The message is fed back to the model."""


class QueryTimeoutError(AgentError):
    """The statement did not finish inside the time budget."""
