"""Orchestration layer.

Flow for one question:
1. Load (or open) the conversation
2. Route: insight / exact / prediction
3. Run the path (retrieve documents, NL -> SQL loop, or trend forecast)
4. Compose the final answer with the model
5. Store both turns with the full agent payload
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.config import settings
from app.core.schemas import AnswerStatus, QuestionPath
from app.ai_feature import forecast, prompts, retrieval
from app.ai_feature.executor import ReadOnlyExecutor
from app.ai_feature.llm import LLMClient, extract_json
from app.ai_feature.routing import RouteDecision, route_question
from app.ai_feature.schema_catalog import load_catalog
from app.ai_feature.sql_agent import SQLAgent
from app.ai_feature.trace import AgentTrace

logger = logging.getLogger(__name__)

# Rows shown to the model when it writes the final answer
ANSWER_PREVIEW_ROWS = 50

# Model replies that mean "no particular entity"
NO_ENTITY = {"", "all", "none", "null", "total"}


class ConversationNotFound(LookupError):
    pass


class AskService:
    def __init__(self, db: AsyncSession, llm: LLMClient, executor: ReadOnlyExecutor):
        self.db = db
        self.llm = llm
        self.executor = executor

    # ------------------------------------------------------------------
    # Conversation bookkeeping
    # ------------------------------------------------------------------

    async def _get_conversation(
        self, user: models.User, conversation_id: Optional[int], question: str
    ) -> models.Conversation:
        if conversation_id is None:
            conversation = models.Conversation(owner_id=user.id, title=question[:80])
            self.db.add(conversation)
            await self.db.flush()
            return conversation

        result = await self.db.execute(
            select(models.Conversation).where(
                models.Conversation.id == conversation_id,
                models.Conversation.owner_id == user.id,
            )
        )
        conversation = result.scalars().first()
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def _history(self, conversation: models.Conversation) -> List[Dict[str, str]]:
        result = await self.db.execute(
            select(models.Message)
            .where(models.Message.conversation_id == conversation.id)
            .order_by(models.Message.id.desc())
            .limit(settings.HISTORY_MESSAGES)
        )
        recent = list(reversed(result.scalars().all()))
        return [{"role": m.role, "content": m.content} for m in recent]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _run_exact(
        self, question: str, history: List[Dict[str, str]], trace: AgentTrace
    ) -> Dict[str, Any]:
        catalog = await load_catalog(self.executor.engine, settings.QUERYABLE_TABLES)
        trace.log("schema", f"Catalog: {', '.join(catalog.table_names()) or 'empty'}")

        agent = SQLAgent(
            self.llm,
            self.executor,
            catalog,
            dialect=self.executor.engine.dialect.name,
        )
        outcome = await agent.answer(question, history, trace)
        out: Dict[str, Any] = {"sql": outcome.sql, "attempts": outcome.attempts}

        if outcome.status == "timeout":
            out["status"] = AnswerStatus.TIMEOUT
            out["answer"] = (
                "The query took too long and was stopped. "
                "Try narrowing the date range or the number of entities."
            )
            return out

        if outcome.status != "ok":
            out["status"] = AnswerStatus.FAILED
            out["answer"] = (
                f"I could not build a working query after {len(outcome.attempts)} "
                f"attempt(s). Last error: {outcome.error}"
            )
            return out

        result = outcome.result
        out.update(
            status=AnswerStatus.OK,
            columns=result.columns,
            rows=result.rows,
            truncated=result.truncated,
        )

        preview = "\n".join(
            str(row) for row in result.rows[:ANSWER_PREVIEW_ROWS]
        ) or "(no rows)"
        truncation_note = (
            f"Only the first {len(result.rows)} rows were returned.\n"
            if result.truncated
            else ""
        )
        trace.log("compose", "Summarising query result")
        out["answer"] = await self.llm.complete(
            [
                {
                    "role": "user",
                    "content": prompts.SQL_ANSWER_PROMPT.format(
                        truncation_note=truncation_note,
                        question=question,
                        sql=outcome.sql,
                        columns=", ".join(result.columns),
                        rows=preview,
                    ),
                }
            ]
        )
        return out

    async def _run_insight(self, question: str, trace: AgentTrace) -> Dict[str, Any]:
        hits = await retrieval.search_documents(self.db, question)
        trace.log("retrieve", f"{len(hits)} relevant chunk(s)")

        if not hits:
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": "I could not find any documents relevant to this question.",
            }

        citations = []
        context = []
        for index, hit in enumerate(hits, start=1):
            context.append(f"[{index}] ({hit.document.title}) {hit.chunk.text}")
            citations.append(
                {
                    "index": index,
                    "document_id": hit.document.id,
                    "title": hit.document.title,
                    "chunk_id": hit.chunk.id,
                    "score": hit.score,
                    "snippet": hit.chunk.text[:240],
                }
            )

        trace.log("compose", "Answering from retrieved excerpts")
        answer = await self.llm.complete(
            [
                {
                    "role": "user",
                    "content": prompts.INSIGHT_PROMPT.format(
                        context="\n\n".join(context), question=question
                    ),
                }
            ]
        )
        return {"status": AnswerStatus.OK, "answer": answer, "citations": citations}

    async def _forecast_params(
        self, question: str, metrics: List[str], entities: List[str]
    ) -> Dict[str, Any]:
        """
        Metric, entity and horizon for a prediction question.

        A metric or entity the model names but the snapshot does not hold
        comes back under "unknown_metric" / "unknown_entity" instead of
        being swapped for something that exists.
        """
        reply = await self.llm.complete(
            [
                {
                    "role": "user",
                    "content": prompts.FORECAST_PARAMS_PROMPT.format(
                        metrics=", ".join(metrics),
                        entities=", ".join(entities) or "(none)",
                        question=question,
                    ),
                }
            ],
            json_mode=True,
        )
        data = extract_json(reply) or {}
        lowered_q = question.lower()
        params: Dict[str, Any] = {"metric": None, "entity": None}

        metric_lookup = {m.lower(): m for m in metrics}
        named_metric = str(data.get("metric") or "").strip()
        if named_metric:
            params["metric"] = metric_lookup.get(named_metric.lower())
            if params["metric"] is None:
                params["unknown_metric"] = named_metric
        else:
            # Model gave no metric: look for one in the question itself
            for candidate in metrics:
                if candidate.lower().replace("_", " ") in lowered_q or candidate.lower() in lowered_q:
                    params["metric"] = candidate
                    break
            if params["metric"] is None and len(metrics) == 1:
                params["metric"] = metrics[0]

        entity_lookup = {e.lower(): e for e in entities}
        named_entity = str(data.get("entity") or "").strip()
        if named_entity.lower() not in NO_ENTITY:
            params["entity"] = entity_lookup.get(named_entity.lower())
            if params["entity"] is None:
                params["unknown_entity"] = named_entity

        if data.get("horizon_days") is not None:
            params["horizon"] = forecast.clamp_horizon(data.get("horizon_days"))
        else:
            params["horizon"] = forecast.horizon_from_text(question)

        return params

    async def _run_prediction(self, question: str, trace: AgentTrace) -> Dict[str, Any]:
        metrics, entities = await forecast.known_series_keys(self.db)
        if not metrics:
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": "There is no snapshot history to forecast from yet.",
            }

        params = await self._forecast_params(question, metrics, entities)
        metric, entity, horizon = params["metric"], params["entity"], params["horizon"]
        trace.log(
            "forecast",
            f"metric={metric} entity={entity or 'all'} horizon={horizon}d",
        )
        if "unknown_metric" in params:
            trace.log("forecast", f"no series for metric {params['unknown_metric']}", "warning")
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": (
                    f"There is no history for the metric \"{params['unknown_metric']}\". "
                    f"Available metrics: {', '.join(metrics)}."
                ),
            }
        if "unknown_entity" in params:
            trace.log("forecast", f"no series for entity {params['unknown_entity']}", "warning")
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": (
                    f"There is no history for \"{params['unknown_entity']}\". "
                    f"Known entities: {', '.join(entities) or 'none'}."
                ),
            }
        if metric is None:
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": (
                    "I could not tell which metric to forecast. "
                    f"Available metrics: {', '.join(metrics)}."
                ),
            }

        series = await forecast.load_daily_series(self.db, metric, entity)
        try:
            result = forecast.linear_forecast(series, horizon)
        except ValueError as e:
            trace.log("forecast", str(e), "warning")
            return {
                "status": AnswerStatus.NO_DATA,
                "answer": f"Not enough history for {metric}: {e}.",
            }

        info = {
            "metric": metric,
            "entity": entity,
            "method": result.method,
            "slope": round(result.slope, 6),
            "history_points": result.history_points,
            "points": result.points,
        }

        trace.log("compose", "Explaining forecast")
        answer = await self.llm.complete(
            [
                {
                    "role": "user",
                    "content": prompts.FORECAST_ANSWER_PROMPT.format(
                        question=question,
                        metric=metric,
                        entity=entity or "all",
                        history_points=result.history_points,
                        slope=result.slope,
                        points="\n".join(
                            f"{p['date'].isoformat()}: {p['value']} "
                            f"({p['lower']} .. {p['upper']})"
                            for p in result.points
                        ),
                    ),
                }
            ]
        )
        return {"status": AnswerStatus.OK, "answer": answer, "forecast": info}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def ask(
        self, user: models.User, request: schemas.AskRequest
    ) -> schemas.AskResponse:
        """
        Answer one question and store both turns.

        Raises:
            ConversationNotFound: conversation_id not owned by the user
            LLMError: model unreachable (nothing is stored)
        """
        trace = AgentTrace(user.id)
        conversation = await self._get_conversation(
            user, request.conversation_id, request.question
        )
        history = await self._history(conversation)

        decision: RouteDecision = await route_question(
            request.question, self.llm, request.path
        )
        trace.log(
            "route",
            f"{decision.path.value} ({decision.method}, confidence {decision.confidence})",
        )

        if decision.path == QuestionPath.EXACT:
            out = await self._run_exact(request.question, history, trace)
        elif decision.path == QuestionPath.INSIGHT:
            out = await self._run_insight(request.question, trace)
        else:
            out = await self._run_prediction(request.question, trace)

        route = {
            "path": decision.path,
            "confidence": decision.confidence,
            "reason": decision.reason,
            "method": decision.method,
        }
        response = schemas.AskResponse(
            conversation_id=conversation.id,
            path=decision.path,
            status=out["status"],
            answer=out["answer"],
            sql=out.get("sql"),
            columns=out.get("columns", []),
            rows=out.get("rows", []),
            truncated=out.get("truncated", False),
            attempts=out.get("attempts", []),
            citations=out.get("citations", []),
            forecast=out.get("forecast"),
            route=route,
            trace=trace.get_steps(),
        )

        payload = response.model_dump(
            mode="json", exclude={"conversation_id", "answer", "path", "status"}
        )
        self.db.add(
            models.Message(
                conversation_id=conversation.id,
                role="user",
                content=request.question,
            )
        )
        self.db.add(
            models.Message(
                conversation_id=conversation.id,
                role="assistant",
                content=response.answer,
                path=decision.path.value,
                status=response.status.value,
                payload=payload,
            )
        )
        await self.db.commit()
        return response
