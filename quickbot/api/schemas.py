from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str
    chat_history: List[HistoryMessage] = Field(default_factory=list)
    model_override: Optional[str] = None


class ChatResponse(BaseModel):
    answer: str
    suggestedQuestions: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    code: str
    trace_id: str
    request_id: str


class IngestRequest(BaseModel):
    botId: str = Field(min_length=1)


class IngestResponse(BaseModel):
    success: bool


class FieldHint(BaseModel):
    userHint: Optional[str] = None


class FieldGenerateRequest(BaseModel):
    botId: str = Field(min_length=1)
    field: str
    context: FieldHint = Field(default_factory=FieldHint)
    currentValue: Optional[str] = None


class FieldGenerateResponse(BaseModel):
    field: str
    value: Union[str, List[str]]
