# report_engine/reporting/storage.py
"""Storage collaborator: runs compiled statements against the data warehouse."""

from typing import Any, Dict, List

from sqlalchemy.orm import Session

from report_engine.query.schemas import CompiledQuery


class SqlAlchemyStorage:
    """Execute compiled queries on a SQLAlchemy session. Literal values always travel as bound parameters."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def execute_query(self, compiled: CompiledQuery) -> List[Dict[str, Any]]:
        result = self.db.execute(compiled.statement).mappings()
        if compiled.effective_limit is not None:
            rows = result.fetchmany(compiled.effective_limit)
            result.close()
        else:
            rows = result.all()
        return [dict(row) for row in rows]
