"""Prompt Builder — turns an operation + payload into a provider request body.

Every prompt asks explicitly for a JSON object with the operation's named
fields. OpenAI additionally gets a function/tool schema so the answer comes
back as strict tool-call arguments; Gemini is asked for
``application/json`` output; Anthropic gets a plain message request. The
proxy receives the structured payload and builds its own prompt server-side.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from smartcrm.ai.types import OperationType, ProviderName, RequestContext

SYSTEM_PROMPT = (
    "You are an AI assistant specialized in contact management and sales intelligence. "
    "Provide accurate, actionable insights. Always answer with a single JSON object and nothing else."
)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


# Named JSON fields requested per operation: {field: json-schema type}
OPERATION_FIELDS: dict[OperationType, dict[str, str]] = {
    OperationType.SCORING: {
        "score": "number",
        "confidence": "number",
        "breakdown": "object",
        "insights": "array",
        "reasoning": "array",
        "recommendations": "array",
        "nextBestActions": "array",
        "categories": "array",
        "tags": "array",
    },
    OperationType.ENRICHMENT: {
        "firstName": "string",
        "lastName": "string",
        "email": "string",
        "phone": "string",
        "title": "string",
        "company": "string",
        "industry": "string",
        "location": "object",
        "bio": "string",
        "socialProfiles": "object",
        "confidence": "number",
    },
    OperationType.EMAIL_GENERATION: {
        "subject": "string",
        "body": "string",
        "tone": "string",
        "callToAction": "string",
        "confidence": "number",
    },
    OperationType.EMAIL_ANALYSIS: {
        "sentiment": "string",
        "intent": "string",
        "urgency": "string",
        "keyPoints": "array",
        "suggestedResponse": "string",
        "confidence": "number",
    },
    OperationType.INSIGHTS: {
        "insights": "array",
        "categories": "array",
        "tags": "array",
        "confidence": "number",
    },
    OperationType.COMMUNICATION_ANALYSIS: {
        "preferredChannel": "string",
        "bestTimeToContact": "string",
        "responsePatterns": "array",
        "recommendations": "array",
        "confidence": "number",
    },
    OperationType.AUTOMATION_SUGGESTIONS: {
        "suggestions": "array",
        "confidence": "number",
    },
    OperationType.PREDICTIVE_ANALYTICS: {
        "conversionProbability": "number",
        "predictedCloseDays": "number",
        "dealValueEstimate": "number",
        "riskFactors": "array",
        "confidence": "number",
    },
    OperationType.RELATIONSHIP_MAPPING: {
        "relationships": "array",
        "decisionRole": "string",
        "influenceScore": "number",
        "confidence": "number",
    },
}

_TASKS: dict[OperationType, str] = {
    OperationType.SCORING: (
        "Score this contact as a sales lead from 0 to 100. Break the score down into fit, engagement, "
        "conversion probability and urgency, explain the reasoning, and list recommendations and next best actions. "
        "Add categories and tags that describe the contact."
    ),
    OperationType.ENRICHMENT: (
        "Enrich this contact profile. Fill in missing professional details only where they can be inferred "
        "with reasonable confidence; leave a field empty rather than guessing."
    ),
    OperationType.EMAIL_GENERATION: "Write a personalized outreach email to this contact.",
    OperationType.EMAIL_ANALYSIS: "Analyze the email in the payload: sentiment, intent, urgency and key points.",
    OperationType.INSIGHTS: (
        "Generate 2-3 actionable insights about this contact, each with a type, title, description, "
        "confidence, impact and suggested actions. Also return categories and tags describing the contact."
    ),
    OperationType.COMMUNICATION_ANALYSIS: "Analyze how and when this contact prefers to communicate.",
    OperationType.AUTOMATION_SUGGESTIONS: "Suggest automation workflows that would help manage this contact.",
    OperationType.PREDICTIVE_ANALYTICS: "Predict the likely outcome of the opportunity with this contact.",
    OperationType.RELATIONSHIP_MAPPING: "Map this contact's relationships and role in the buying decision.",
}

_FUNCTION_NAMES: dict[OperationType, str] = {op: f"submit_{op.value}" for op in OperationType}


def operation_schema(operation: OperationType) -> dict:
    """JSON schema of the object the model is asked to return."""
    fields = OPERATION_FIELDS[operation]
    return {
        "type": "object",
        "properties": {name: {"type": kind} for name, kind in fields.items()},
        "required": [name for name in fields if name != "confidence"],
    }


def build_prompt(
    operation: OperationType,
    payload: Mapping[str, Any],
    context: RequestContext | None = None,
) -> tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for an operation."""
    context = context or RequestContext()
    fields = ", ".join(OPERATION_FIELDS[operation])

    lines = [_TASKS[operation], ""]
    if context.business_context:
        lines += [f"Business context: {context.business_context}", ""]
    lines += [
        "Input data (JSON):",
        json.dumps(dict(payload), ensure_ascii=False, sort_keys=True, default=str, indent=2),
        "",
        f"Respond with a JSON object with exactly these keys: {fields}.",
        "confidence is an integer from 0 to 100.",
    ]
    return SYSTEM_PROMPT, "\n".join(lines)


def build_payload(
    provider: ProviderName,
    model: str,
    operation: OperationType,
    payload: Mapping[str, Any],
    context: RequestContext | None = None,
) -> dict:
    """Build the provider-specific request body."""
    if provider == ProviderName.PROXY:
        ctx = context or RequestContext()
        return {
            "operation": operation.value,
            "payload": dict(payload),
            "context": {
                "contactId": ctx.subject_id,
                "userId": ctx.user_id,
                "sessionId": ctx.session_id,
                "businessContext": ctx.business_context,
            },
            "aiProvider": ProviderName.OPENAI.value,
            "model": model,
        }

    system_prompt, user_prompt = build_prompt(operation, payload, context)

    if provider == ProviderName.OPENAI:
        function_name = _FUNCTION_NAMES[operation]
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": DEFAULT_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": function_name,
                        "description": f"Return the {operation.value.replace('_', ' ')} result",
                        "parameters": operation_schema(operation),
                    },
                }
            ],
            "tool_choice": {"type": "function", "function": {"name": function_name}},
        }

    if provider == ProviderName.GEMINI:
        return {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {
                "temperature": DEFAULT_TEMPERATURE,
                "maxOutputTokens": DEFAULT_MAX_TOKENS,
                "responseMimeType": "application/json",
            },
        }

    if provider == ProviderName.ANTHROPIC:
        return {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": DEFAULT_TEMPERATURE,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }

    raise ValueError(f"No payload builder for provider: {provider}")
