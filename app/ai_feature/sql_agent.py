"""
EXACT PATH - natural language to SQL with a repair loop

    Draft  -> model writes SQL from schema + question
    Validate -> sql_guard (read-only, single statement, known tables)
    Execute  -> ReadOnlyExecutor
    Repair   -> model rewrites SQL from the previous SQL + error

Validation and database errors are fed back to the model until a query
runs or SQL_MAX_ATTEMPTS is used up. A timeout stops the loop at once.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.ai_feature import prompts
from app.ai_feature.errors import (
    QueryExecutionError,
    QueryTimeoutError,
    SQLValidationError,
)
from app.ai_feature.executor import QueryResult, ReadOnlyExecutor
from app.ai_feature.llm import LLMClient, extract_sql
from app.ai_feature.schema_catalog import SchemaCatalog
from app.ai_feature.sql_guard import validate_sql
from app.ai_feature.trace import AgentTrace


@dataclass
class SQLOutcome:
    status: str  # ok / failed / timeout
    sql: Optional[str] = None
    result: Optional[QueryResult] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class SQLAgent:
    def __init__(
        self,
        llm: LLMClient,
        executor: ReadOnlyExecutor,
        catalog: SchemaCatalog,
        max_attempts: Optional[int] = None,
        dialect: str = "ANSI SQL",
    ):
        self.llm = llm
        self.executor = executor
        self.catalog = catalog
        self.max_attempts = max(1, max_attempts or settings.SQL_MAX_ATTEMPTS)
        self.dialect = dialect

    def _system_message(self) -> Dict[str, str]:
        return {
            "role": "system",
            "content": prompts.SQL_SYSTEM_PROMPT.format(
                dialect=self.dialect,
                row_limit=self.executor.row_limit,
                schema=self.catalog.to_prompt() or "(no tables available)",
            ),
        }

    async def draft(self, question: str, history: List[Dict[str, str]]) -> str:
        messages = [self._system_message(), *history]
        messages.append(
            {"role": "user", "content": prompts.SQL_DRAFT_PROMPT.format(question=question)}
        )
        return extract_sql(await self.llm.complete(messages))

    async def repair(self, question: str, sql: str, stage: str, error: str) -> str:
        messages = [
            self._system_message(),
            {
                "role": "user",
                "content": prompts.SQL_REPAIR_PROMPT.format(
                    question=question, sql=sql, stage=stage, error=error
                ),
            },
        ]
        return extract_sql(await self.llm.complete(messages))

    async def answer(
        self,
        question: str,
        history: Optional[List[Dict[str, str]]] = None,
        trace: Optional[AgentTrace] = None,
    ) -> SQLOutcome:
        """
        Run the Draft / Validate / Execute / Repair loop.

        Returns:
            SQLOutcome with status "ok", "failed" (attempts exhausted) or
            "timeout". Every failed attempt is listed in `attempts`.

        Raises:
            LLMError: the model could not be reached
        """
        trace = trace or AgentTrace()
        attempts: List[Dict[str, Any]] = []

        trace.log("draft", "Drafting SQL from the question")
        sql = await self.draft(question, history or [])

        for attempt in range(1, self.max_attempts + 1):
            stage = "validate"
            try:
                statement = validate_sql(sql, self.catalog.table_names())
                trace.log("validate", f"Attempt {attempt}: SQL passed validation")

                stage = "execute"
                result = await self.executor.run(statement)
                trace.log(
                    "execute",
                    f"Attempt {attempt}: {result.row_count} rows in {result.elapsed_ms} ms",
                )
                return SQLOutcome(
                    status="ok", sql=statement, result=result, attempts=attempts
                )

            except QueryTimeoutError as e:
                attempts.append(
                    {"attempt": attempt, "sql": sql, "stage": stage, "error": str(e)}
                )
                trace.log("execute", f"Attempt {attempt}: {e}", "warning")
                return SQLOutcome(
                    status="timeout", sql=sql, attempts=attempts, error=str(e)
                )

            except (SQLValidationError, QueryExecutionError) as e:
                error = str(e)
                attempts.append(
                    {"attempt": attempt, "sql": sql, "stage": stage, "error": error}
                )
                trace.log(stage, f"Attempt {attempt} failed: {error}", "warning")

            if attempt < self.max_attempts:
                trace.log("repair", f"Rewriting SQL after {stage} error")
                sql = await self.repair(question, sql, stage, attempts[-1]["error"])

        trace.log(
            "repair", f"Giving up after {self.max_attempts} attempts", "error"
        )
        return SQLOutcome(
            status="failed",
            sql=sql,
            attempts=attempts,
            error=attempts[-1]["error"] if attempts else None,
        )
