"""Pure dataclasses for sessions, turns and provider responses. No I/O."""

from dataclasses import dataclass, field

PENDING = "pending"
STREAMING = "streaming"
SUCCESS = "success"
ERROR = "error"
RATE_LIMITED = "rate-limited"
TIMEOUT = "timeout"

TERMINAL_STATUSES = frozenset({SUCCESS, ERROR, RATE_LIMITED, TIMEOUT})


@dataclass
class ResponseMetrics:
    latency_ms: int | None = None
    token_count_estimate: float | None = None  # int once the response is terminal
    response_length: int = 0
    first_token_latency_ms: int | None = None
    tokens_per_second: float | None = None


@dataclass
class ProviderResponse:
    id: str
    provider: str
    prompt: str
    timestamp: float               # epoch milliseconds, latency epoch
    response_text: str = ""
    status: str = PENDING
    metrics: ResponseMetrics = field(default_factory=ResponseMetrics)
    retry_count: int = 0
    error_message: str | None = None
    streaming_progress: int = 0    # 0-100
    is_streaming: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class ConversationTurn:
    id: str
    user_prompt: str
    selected_response: ProviderResponse | None
    all_responses: list[ProviderResponse] = field(default_factory=list)
    timestamp: float = 0.0


@dataclass
class SessionState:
    id: str
    user_id: str | None = None
    conversation_history: list[ConversationTurn] = field(default_factory=list)
    current_prompt: str = ""
    current_responses: list[ProviderResponse] = field(default_factory=list)
    is_processing: bool = False
    selected_response_id: str | None = None
    enabled_providers: list[str] = field(default_factory=list)
    generation: int = 0            # bumped by every submission, select and reset
    created_at: float = 0.0
    updated_at: float = 0.0

    def find_response(self, response_id: str) -> ProviderResponse | None:
        return next((r for r in self.current_responses if r.id == response_id), None)

    def find_provider_response(self, provider: str) -> ProviderResponse | None:
        return next((r for r in self.current_responses if r.provider == provider), None)
