# Prompt templates for every model call the agent makes.
# Keep placeholders in sync with the callers in routing.py, sql_agent.py,
# forecast.py and service.py.

ROUTER_PROMPT = """You route questions about company data to one of three paths.

- "exact": the answer is a number, list or table computed from the database
  (counts, totals, averages, top-N, filters, comparisons over recorded data).
- "insight": the answer is in unstructured documents (policies, definitions,
  explanations, "why" and "how" questions, descriptions of processes).
- "prediction": the question asks about future values (forecast, predict,
  expect, next week/month, trend going forward).

Return STRICT JSON only:
{"path": "exact" | "insight" | "prediction", "confidence": 0.0-1.0, "reason": "<one short sentence>"}
"""


SQL_SYSTEM_PROMPT = """You are a careful analytics engineer writing SQL for {dialect}.

Rules:
- output exactly ONE read-only SELECT (a WITH ... SELECT is fine)
- use only the tables and columns listed in SCHEMA
- never modify data, never use SELECT INTO
- prefer explicit column lists and clear aliases
- aggregate in SQL, do not return raw rows when a total is asked for
- at most {row_limit} rows are returned to the user; order results meaningfully

SCHEMA:
{schema}

Reply with the SQL in one ```sql code block and nothing else."""


SQL_DRAFT_PROMPT = """QUESTION:
{question}"""


SQL_REPAIR_PROMPT = """The previous SQL for this question failed.

QUESTION:
{question}

PREVIOUS SQL:
{sql}

ERROR ({stage}):
{error}

Write a corrected query that fixes the error and still answers the question.
Reply with the SQL in one ```sql code block and nothing else."""


SQL_ANSWER_PROMPT = """Answer the user's question using only the query result below.
Be concise, mention concrete numbers, and say so if the result is empty.
{truncation_note}
QUESTION:
{question}

SQL:
{sql}

RESULT (columns: {columns}):
{rows}"""


INSIGHT_PROMPT = """Answer the question using only the numbered excerpts.
Cite excerpts inline as [1], [2]. If the excerpts do not contain the answer,
say you could not find it in the documents.

EXCERPTS:
{context}

QUESTION:
{question}"""


FORECAST_PARAMS_PROMPT = """Extract forecast parameters from the question.

Known metrics: {metrics}
Known entities: {entities}

Return STRICT JSON only:
{{"metric": "<one of the known metrics>", "entity": "<one of the known entities or null>", "horizon_days": <integer>}}

QUESTION:
{question}"""


FORECAST_ANSWER_PROMPT = """Explain this forecast to a business user in two or three sentences.
Mention the direction of the trend, the last forecast value and the uncertainty band.
It is a straight-line trend over daily history, not a guarantee.

QUESTION:
{question}

METRIC: {metric}  ENTITY: {entity}
HISTORY POINTS: {history_points}  DAILY SLOPE: {slope:.4f}
FORECAST:
{points}"""
