"""camelCase snapshots of sessions for UI and push consumers.

Each snapshot is self-sufficient: a consumer can overwrite whatever it
held before with the latest one it received.
"""

from typing import Any

from rally.models import ConversationTurn, ProviderResponse, ResponseMetrics, SessionState


def metrics_to_dict(metrics: ResponseMetrics) -> dict[str, Any]:
    return {
        "latencyMs": metrics.latency_ms,
        "tokenCountEstimate": metrics.token_count_estimate,
        "responseLength": metrics.response_length,
        "firstTokenLatencyMs": metrics.first_token_latency_ms,
        "tokensPerSecond": metrics.tokens_per_second,
    }


def response_to_dict(response: ProviderResponse) -> dict[str, Any]:
    return {
        "id": response.id,
        "provider": response.provider,
        "prompt": response.prompt,
        "responseText": response.response_text,
        "status": response.status,
        "metrics": metrics_to_dict(response.metrics),
        "retryCount": response.retry_count,
        "errorMessage": response.error_message,
        "streamingProgress": response.streaming_progress,
        "isStreaming": response.is_streaming,
        "timestamp": response.timestamp,
    }


def turn_to_dict(turn: ConversationTurn) -> dict[str, Any]:
    return {
        "id": turn.id,
        "userPrompt": turn.user_prompt,
        "selectedResponse": response_to_dict(turn.selected_response) if turn.selected_response else None,
        "allResponses": [response_to_dict(r) for r in turn.all_responses],
        "timestamp": turn.timestamp,
    }


def session_to_dict(session: SessionState) -> dict[str, Any]:
    return {
        "id": session.id,
        "userId": session.user_id,
        "conversationHistory": [turn_to_dict(t) for t in session.conversation_history],
        "currentPrompt": session.current_prompt,
        "currentResponses": [response_to_dict(r) for r in session.current_responses],
        "isProcessing": session.is_processing,
        "selectedResponseId": session.selected_response_id,
        "enabledProviders": list(session.enabled_providers),
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
    }
