from datetime import date, datetime
from typing import Optional, List, Dict, Any, Literal, Union
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class QuestionPath(str, Enum):
    INSIGHT = "insight"  # RAG over documents
    EXACT = "exact"  # NL -> SQL
    PREDICTION = "prediction"  # forecast over snapshot history


class AnswerStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    NO_DATA = "no_data"


# =========================
# USER
# =========================
class UserBase(BaseModel):
    email: EmailStr


# No role field: signup always creates a plain user, admins are promoted in the db
class CreateUser(UserBase):
    password: str = Field(min_length=8)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(UserBase):
    id: int
    role: UserRole
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# ASK (conversational front end)
# =========================
class AskRequest(BaseModel):
    question: str = Field(min_length=1, max_length=2000)
    conversation_id: Optional[int] = None
    # Skip routing when the caller already knows which path it wants
    path: Optional[QuestionPath] = None


class RouteInfo(BaseModel):
    path: QuestionPath
    confidence: float
    reason: str
    method: str


class SQLAttempt(BaseModel):
    attempt: int
    sql: str
    stage: str  # validate / execute
    error: str


class Citation(BaseModel):
    index: int
    document_id: int
    title: str
    chunk_id: int
    score: float
    snippet: str


class ForecastPoint(BaseModel):
    date: date
    value: float
    lower: float
    upper: float


class ForecastInfo(BaseModel):
    metric: str
    entity: Optional[str] = None
    method: str
    slope: float
    history_points: int
    points: List[ForecastPoint]


class TraceStep(BaseModel):
    step: str
    message: str
    elapsed_ms: int


class AskResponse(BaseModel):
    conversation_id: int
    path: QuestionPath
    status: AnswerStatus
    answer: str
    sql: Optional[str] = None
    columns: List[str] = []
    rows: List[List[Any]] = []
    truncated: bool = False
    attempts: List[SQLAttempt] = []
    citations: List[Citation] = []
    forecast: Optional[ForecastInfo] = None
    route: RouteInfo
    trace: List[TraceStep] = []


class MessageResponse(BaseModel):
    id: int
    role: str
    content: str
    path: Optional[str] = None
    status: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationResponse(BaseModel):
    id: int
    title: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationDetail(ConversationResponse):
    messages: List[MessageResponse] = []


# =========================
# SCHEMA
# =========================
class ColumnResponse(BaseModel):
    name: str
    type: str
    nullable: bool
    primary_key: bool


class TableResponse(BaseModel):
    name: str
    columns: List[ColumnResponse]
    foreign_keys: List[Dict[str, Any]] = []


# =========================
# DOCUMENTS
# =========================
class DocumentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    source: Optional[str] = None
    content: str = Field(min_length=1)


class DocumentResponse(BaseModel):
    id: int
    title: str
    source: Optional[str] = None
    created_at: datetime
    chunk_count: int = 0


class SearchHit(BaseModel):
    document_id: int
    title: str
    chunk_id: int
    position: int
    score: float
    text: str


# =========================
# ETL
# =========================
class ApiIngestConfig(BaseModel):
    """
    Generic API ingestion config for ETL.
    """
    type: str = "generic"
    url: str
    headers: Dict[str, str] = {}
    params: Optional[Dict[str, Any]] = None
    source: Optional[str] = None


class ApiIngestRequest(BaseModel):
    api_config: ApiIngestConfig



# =========================
# MCP (JSON-RPC 2.0)
# =========================
class JsonRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"]
    method: str
    id: Optional[Union[int, str]] = None
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        # "id": null is still a request, only a missing id is a notification
        return "id" not in self.model_fields_set
