from __future__ import annotations

from typing import Any

from copilot_override.config import ServiceConfig

MODELS_CREATED_AT = 1687882411
MODELS_OWNER = "copilot-override"


def build_models_response(config: ServiceConfig) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model,
                "object": "model",
                "created": MODELS_CREATED_AT,
                "owned_by": MODELS_OWNER,
            }
            for model in config.available_models()
        ],
    }
