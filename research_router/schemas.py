from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


ProviderKind = Literal["openai_compatible", "anthropic", "local_chat"]
Tier = Literal["local", "commercial", "fallback"]
Task = Literal["reasoning", "coding", "planning", "synthesis", "research", "general"]
Orchestration = Literal["simple", "phased_graph", "role_crew", "bounded_retry"]
ReportType = Literal["research_report", "resource_report", "outline_report", "custom_report"]
ResearchState = Literal[
    "created",
    "planning",
    "searching",
    "extracting",
    "verifying",
    "synthesizing",
    "completed",
    "failed",
]


class ModelConfig(BaseModel):
    id: str
    name: str
    provider_kind: ProviderKind
    provider: str
    endpoint: str
    wire_model_name: str
    max_tokens: int
    capabilities: FrozenSet[str] = frozenset()
    tier: Tier
    api_key_ref: Optional[str] = None
    # Sent when configured, but the model stays eligible without it
    optional_key_ref: Optional[str] = None

    model_config = {"frozen": True, "protected_namespaces": ()}


class ChatMessage(BaseModel):
    role: str
    content: str


class CrewAgent(BaseModel):
    role: str
    goal: str
    backstory: str = ""


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=1000, ge=0)
    timeout_s: float = 30.0


class LLMRequest(BaseModel):
    messages: List[ChatMessage]
    model: Optional[str] = None
    task: Optional[Task] = None
    fallback_chain: Optional[List[str]] = None
    orchestration: Orchestration = "simple"
    max_tokens: int = 2048
    temperature: float = 0.7
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Any] = None
    prefer_local: bool = True
    agents: Optional[List[CrewAgent]] = None
    retry_policy: Optional[RetryPolicy] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        aliases = {
            "fallbackChain": "fallback_chain",
            "maxTokens": "max_tokens",
            "preferLocal": "prefer_local",
            "toolChoice": "tool_choice",
        }
        for src, dst in aliases.items():
            if src in data and dst not in data:
                data = {**data, dst: data[src]}
        orch = str(data.get("orchestration") or "simple").strip().lower()
        orch_map = {
            "langgraph": "phased_graph",
            "crewai": "role_crew",
            "mastra": "bounded_retry",
        }
        data = {**data, "orchestration": orch_map.get(orch, orch)}
        return data


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class LLMResponse(BaseModel):
    success: bool
    model_used: str = "none"
    model_name: str = "none"
    provider: str = "none"
    content: str = ""
    usage: Optional[Usage] = None
    fallbacks_used: List[str] = Field(default_factory=list)
    orchestration: Orchestration = "simple"
    inference_type: Literal["local", "commercial", "fallback", "none"] = "none"
    error: Optional[str] = None
    execution_time_ms: int = 0

    @model_validator(mode="after")
    def check_invariants(self) -> "LLMResponse":
        if not self.success:
            self.content = ""
        return self


class SourceInfo(BaseModel):
    url: str
    title: str = ""
    domain: str = ""
    extracted_content: str = ""
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    publish_date: Optional[str] = None
    author: Optional[str] = None


class VerifiedFact(BaseModel):
    claim: str
    verified: bool = False
    supporting_domains: FrozenSet[str] = Field(default=frozenset(), alias="sources")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    model_config = {"populate_by_name": True}

    @field_validator("supporting_domains", mode="before")
    @classmethod
    def null_sources_as_empty(cls, value: Any) -> Any:
        return frozenset() if value is None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> Any:
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return 0.0


class ResearchTask(BaseModel):
    query: str
    sub_questions: List[str] = Field(default_factory=list)
    sources: List[SourceInfo] = Field(default_factory=list)
    verified_facts: List[VerifiedFact] = Field(default_factory=list)
    report: str = ""
    state: ResearchState = "created"
    history: List[ResearchState] = Field(default_factory=lambda: ["created"])
    errors: List[str] = Field(default_factory=list)

    def advance(self, state: ResearchState) -> None:
        self.state = state
        self.history.append(state)


class ResearchRequest(BaseModel):
    query: str
    report_type: ReportType = "research_report"
    max_sources: Optional[int] = Field(default=None, ge=1, le=50)
    include_fact_verification: bool = True
    prefer_local: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        aliases = {
            "reportType": "report_type",
            "maxSources": "max_sources",
            "includeFactVerification": "include_fact_verification",
            "preferLocal": "prefer_local",
        }
        for src, dst in aliases.items():
            if src in data and dst not in data:
                data = {**data, dst: data[src]}
        return data


class ResearchMetadata(BaseModel):
    total_sources: int = 0
    execution_time_ms: int = 0
    queries_executed: int = 0
    model_used: Optional[str] = None
    sub_questions: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class ResearchResponse(BaseModel):
    success: bool
    report: Optional[str] = None
    sources: List[SourceInfo] = Field(default_factory=list)
    facts_verified: List[VerifiedFact] = Field(default_factory=list)
    metadata: ResearchMetadata = Field(default_factory=ResearchMetadata)
    error: Optional[str] = None


# Structured outputs requested from the model.


class PlanPayload(BaseModel):
    questions: List[str]

    @model_validator(mode="before")
    @classmethod
    def accept_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "questions" not in data and "subQuestions" in data:
            return {**data, "questions": data["subQuestions"]}
        return data


class FactsPayload(BaseModel):
    facts: List[VerifiedFact]

    @field_validator("facts", mode="before")
    @classmethod
    def drop_malformed_facts(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        kept = []
        for item in value:
            try:
                kept.append(VerifiedFact.model_validate(item))
            except ValidationError:
                continue
        return kept


class CrawlRequest(BaseModel):
    url: str
    max_depth: int = Field(default=1, ge=0, le=5)
    max_pages: int = Field(default=10, ge=1, le=100)
