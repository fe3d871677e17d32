"""Model gateway and tolerant JSON decoding.

Every planning and validation component reaches the model through
``ModelGateway`` and decodes replies with ``parse_plan_json`` or
``parse_json_object``. Decoding never raises; a ``None`` result means "no
answer from the model" and callers fall back deterministically.
"""

from .client import ChatMessage, ModelGateway, OllamaChatGateway, request_json
from .json_decode import parse_json_object, parse_plan_json

__all__ = [
    "ChatMessage",
    "ModelGateway",
    "OllamaChatGateway",
    "request_json",
    "parse_json_object",
    "parse_plan_json",
]
