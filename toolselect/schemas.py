from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


EntityType = Literal["apps", "classes", "methods"]


class EntityQuery(BaseModel):
    """Uniform search payload shared by every get_* operation."""

    search_queries: List[str]
    top: int = 5
    threshold: float = 0.3
    categories: List[str] = Field(default_factory=list)
    apps: List[str] = Field(default_factory=list)
    classes: List[str] = Field(default_factory=list)
    methods: List[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    @field_validator("search_queries", mode="before")
    @classmethod
    def _wrap_single_query(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class CategoryRecord(BaseModel):
    slug: str
    name: str


class AppSummary(BaseModel):
    slug: str
    name: str
    description: Optional[str] = None


class ClassSummary(BaseModel):
    slug: str
    name: str
    description: Optional[str] = None
    app_slug: str


class MethodSummary(BaseModel):
    slug: str
    name: str
    description: Optional[str] = None
    class_slug: str
    app_slug: str


class MethodArgument(BaseModel):
    name: str
    type: str = "string"
    description: str = ""


class MethodDetail(MethodSummary):
    path: str
    http_verb: str
    arguments: List[MethodArgument] = Field(default_factory=list)
    return_type: Optional[str] = None
    return_description: Optional[str] = None


class MethodRecord(BaseModel):
    id: str
    class_id: str
    slug: str
    name: str
    path: str
    http_verb: str
    description: Optional[str] = None
    arguments: List[MethodArgument] = Field(default_factory=list)
    return_type: Optional[str] = None
    return_description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AskResponse(BaseModel):
    yes: bool = False
    no: bool = False
    answer: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LineOutput(BaseModel):
    code: str = ""
    logs: List[str] = Field(default_factory=list)
    last_value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    formatted_output: str = "(No output)"


class StepResult(BaseModel):
    success: bool = True
    outputs: List[LineOutput] = Field(default_factory=list)


class Thought(BaseModel):
    reasoning: Optional[str] = None


class GeneratedScript(BaseModel):
    lines: List[str] = Field(default_factory=list)
    thought: Thought = Field(default_factory=Thought)


class ExecutionHistoryItem(BaseModel):
    lines: List[str] = Field(default_factory=list)
    thought: Thought = Field(default_factory=Thought)
    result: StepResult = Field(default_factory=StepResult)
    finish_method_slugs: Optional[List[str]] = None


class StepTrace(ExecutionHistoryItem):
    step: int


class DebugTrace(BaseModel):
    system_prompt: str
    user_prompt: str
    execution_history: List[StepTrace] = Field(default_factory=list)
    finish_step: Optional[int] = None


class ToolSelectorResult(BaseModel):
    tools: List[MethodRecord] = Field(default_factory=list)
    reasoning: Optional[str] = None
    debug: Optional[DebugTrace] = None


class SelectToolsRequest(BaseModel):
    query: str
    chat_history: List[Dict[str, Any]] = Field(default_factory=list)
    max_steps: Optional[int] = Field(default=None, ge=1, le=10)
