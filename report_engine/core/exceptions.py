"""Exception taxonomy for the report engine."""

from typing import List, Optional


class ReportEngineError(Exception):
    """Base class for all report engine errors."""
    pass


class SchemaDefinitionError(ReportEngineError, ValueError):
    """A table, column or relationship definition is malformed."""
    pass


class UnknownTableError(ReportEngineError, LookupError):
    """Raised when a table is not registered in the schema registry."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Table '{table_name}' not found in schema registry")


class UnknownColumnError(ReportEngineError, LookupError):
    """Raised when a column reference cannot be resolved against a table."""

    def __init__(self, identifier: str, table_name: str, message: Optional[str] = None):
        self.identifier = identifier
        self.table_name = table_name
        super().__init__(
            message or f"Column reference '{identifier}' does not exist in table '{table_name}' or its relationships"
        )


class DuplicateTableError(ReportEngineError):
    """Raised when registering a table name twice without the replace flag."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Table '{table_name}' is already registered")


class InvalidExpressionError(ReportEngineError):
    """A computed-column expression failed validation."""

    def __init__(self, expression: str, errors: List[str]):
        self.expression = expression
        self.errors = list(errors)
        super().__init__(f"Invalid expression '{expression}': {'; '.join(self.errors)}")


class QueryCompilationError(ReportEngineError):
    """Aggregate of every structural problem found while compiling a query specification."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__(f"Query specification is invalid ({len(self.problems)} problem(s)): {'; '.join(self.problems)}")


class ExecutionError(ReportEngineError):
    """Storage-layer failure while executing a compiled query."""

    def __init__(self, message: str, execution_id: Optional[int] = None):
        self.execution_id = execution_id
        super().__init__(message)


class ExecutionTimeoutError(ExecutionError):
    """Execution exceeded its configured timeout."""
    pass


class ConcurrentExecutionError(ExecutionError):
    """The report already has an execution in the running state."""
    pass


class CacheError(ReportEngineError):
    """Cache store failure. Never fatal: callers fall back to direct execution."""
    pass


class ExportError(ReportEngineError):
    """Result serialisation failed or the format is not supported."""
    pass


class ReportNotFoundError(ReportEngineError, LookupError):
    """Raised when a saved report does not exist or belongs to another tenant."""

    def __init__(self, report_id: int):
        self.report_id = report_id
        super().__init__(f"Report with ID {report_id} not found")
