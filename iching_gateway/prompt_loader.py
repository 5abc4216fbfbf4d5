"""
Prompt Loader — reads the reading prompt definition from YAML.

The prompt file owns everything about *what* the provider is asked: the
system prompt, a jinja2 user template, the structured-output schema, the
name of the result field, and the contract ``version`` that is embedded in
every cache fingerprint.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Template
from pydantic import BaseModel, Field

from iching_gateway.models import ReadingRequest

logger = logging.getLogger(__name__)


class ReadingPrompt(BaseModel):
    """Prompt/response contract for one reading call."""
    version: str = "v1"
    system_prompt: str
    user_prompt_template: str | None = Field(
        None,
        description="Jinja2 template for the user message. "
                    "If omitted, the raw request JSON is forwarded.",
    )
    response_schema: dict[str, Any] | None = Field(
        None, description="Structured-output json_schema object ({name, strict, schema})",
    )
    result_field: str = "reading"
    stub_reading: dict[str, Any] = Field(default_factory=dict)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its dict."""
    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def load_reading_prompt(path: str | Path) -> ReadingPrompt:
    """Parse the prompt YAML at ``path``.  Raises if missing or invalid."""
    path = Path(path)
    prompt = ReadingPrompt.model_validate(_load_yaml(path))
    logger.info("Loaded prompt %s (version=%s)", path.name, prompt.version)
    return prompt


def build_messages(prompt: ReadingPrompt, request: ReadingRequest) -> list[dict[str, Any]]:
    """Build the system + user messages for ``request``."""
    payload = request.model_dump(by_alias=True, exclude_none=True)
    payload_json = json.dumps(payload, ensure_ascii=False)

    if prompt.user_prompt_template:
        user_msg = Template(prompt.user_prompt_template).render(
            question=request.question.strip(),
            method=request.method,
            primary=payload.get("primary") or {},
            relating=payload.get("relating") or {},
            changing_lines=request.changing_lines,
            payload_json=payload_json,
        )
    else:
        user_msg = payload_json

    return [
        {"role": "system", "content": prompt.system_prompt},
        {"role": "user", "content": user_msg},
    ]
