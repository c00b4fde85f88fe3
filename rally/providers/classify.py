"""Classification of provider failures into user-facing explanations."""

UNAUTHORIZED = "unauthorized"
RATE_LIMITED = "rate-limited"
QUOTA = "quota"
NOT_FOUND = "not-found"
UNCONFIGURED = "unconfigured"
GENERIC = "generic"

_TEMPLATES = {
    UNAUTHORIZED: "{name} API: Invalid API key or unauthorized access. Please check your API key.",
    RATE_LIMITED: "{name} API: Rate limit exceeded. Too many requests. Please try again shortly.",
    QUOTA: "{name} API: Insufficient balance. Your API key may have reached its usage limit.",
    NOT_FOUND: "{name} API: Model not found. Please check the model name.",
    UNCONFIGURED: "{name} API: Not configured. Set {detail} to enable this provider.",
    GENERIC: "{name} unavailable",
}

_MODEL_MISSING_WORDING = ("model not found", "model_not_found", "no such model", "does not exist", "unknown model")


def classify_failure(status_code: int | None, message: str = "") -> str:
    """Map an HTTP status and/or error wording onto a failure class.

    The status code wins when it is decisive; the message text is only
    consulted for otherwise ambiguous failures.
    """
    if status_code in (401, 403):
        return UNAUTHORIZED
    if status_code == 429:
        return RATE_LIMITED
    if status_code == 402:
        return QUOTA
    if status_code == 404:
        return NOT_FOUND

    lowered = message.lower()
    if "401" in lowered or "unauthorized" in lowered or "invalid api key" in lowered:
        return UNAUTHORIZED
    if "429" in lowered or "too many requests" in lowered or "rate limit" in lowered:
        return RATE_LIMITED
    if "balance" in lowered or "insufficient" in lowered or "quota" in lowered:
        return QUOTA
    if any(wording in lowered for wording in _MODEL_MISSING_WORDING):
        return NOT_FOUND
    return GENERIC


def failure_message(display_name: str, failure_class: str, detail: str = "") -> str:
    template = _TEMPLATES.get(failure_class, _TEMPLATES[GENERIC])
    return template.format(name=display_name, detail=detail)


def fallback_text(display_name: str, message: str) -> str:
    """Placeholder answer shown in place of a real response."""
    return (
        f"{display_name} Response: {message.rstrip('.')}. This is a fallback response because the "
        f"{display_name} API is currently unavailable. To use the real {display_name} service, "
        "please check your API key and account balance."
    )
