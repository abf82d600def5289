"""Gemini model factory for lead agents."""

import copy

import google.generativeai as genai

from mca_platform.app.config import get_settings


# Fields that JSON Schema allows but Gemini's function declarations reject
_UNSUPPORTED_KEYS = {
    "$defs", "definitions", "title", "default", "examples",
    "additionalProperties", "maximum", "minimum", "exclusiveMaximum",
    "exclusiveMinimum", "maxLength", "minLength", "pattern",
    "maxItems", "minItems", "uniqueItems",
}


def _inline_defs(schema: dict) -> dict:
    """Clean a JSON Schema for Gemini consumption.

    Resolves $defs/$ref references (inlines them) and strips fields
    that the Google genai SDK doesn't support (title, default, etc.).
    """
    schema = copy.deepcopy(schema)
    defs = schema.pop("$defs", None) or schema.pop("definitions", None)

    def _resolve(node):
        if isinstance(node, dict):
            if "$ref" in node:
                ref_name = node["$ref"].rsplit("/", 1)[-1]
                if defs and ref_name in defs:
                    resolved = copy.deepcopy(defs[ref_name])
                    _resolve(resolved)
                    return resolved
                return node
            for key in _UNSUPPORTED_KEYS:
                node.pop(key, None)
            for key, value in list(node.items()):
                node[key] = _resolve(value)
        elif isinstance(node, list):
            for i, item in enumerate(node):
                node[i] = _resolve(item)
        return node

    return _resolve(schema)


def build_tools(tool_schema: list[dict]) -> list[dict] | None:
    """Wrap tool declarations in the ``function_declarations`` envelope.

    Each declaration is ``{"name", "description", "parameters"}``. Tools
    without arguments omit ``parameters`` entirely; Gemini rejects an
    empty object schema.
    """
    if not tool_schema:
        return None

    declarations = []
    for tool in tool_schema:
        declaration = {"name": tool["name"], "description": tool.get("description", "")}
        params = tool.get("parameters") or {}
        if params.get("properties"):
            declaration["parameters"] = _inline_defs(params)
        declarations.append(declaration)
    return [{"function_declarations": declarations}]


def get_model(
    model_name: str | None = None,
    temperature: float = 0.7,
    system_instruction: str | None = None,
    tool_schema: list[dict] | None = None,
    max_output_tokens: int | None = None,
):
    """Return a configured Gemini GenerativeModel instance.

    Args:
        model_name: Gemini model identifier (defaults to settings.gemini_model).
        temperature: Generation temperature (0.0-2.0).
        system_instruction: Optional system-level instruction.
        tool_schema: Optional tool declarations the model may call.
        max_output_tokens: Optional cap on reply length.

    Returns:
        A ``google.generativeai.GenerativeModel`` ready for generation.
    """
    settings = get_settings()
    genai.configure(api_key=settings.gemini_api_key)

    generation_config = {"temperature": temperature}
    if max_output_tokens:
        generation_config["max_output_tokens"] = max_output_tokens

    return genai.GenerativeModel(
        model_name=model_name or settings.gemini_model,
        generation_config=generation_config,
        system_instruction=system_instruction,
        tools=build_tools(tool_schema or []),
    )
