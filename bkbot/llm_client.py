import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional

from openai import OpenAI

from .models import ModelTurn, ToolCall


logger = logging.getLogger(__name__)


def load_prompt(name: str, default: str, base: Optional[str] = None) -> str:
    """Prompt text from `<PROMPT_BASE>/<name>.txt` when present, else the built-in default."""
    base = base or os.environ.get("PROMPT_BASE", "config/prompts")
    path = os.path.join(base, name + ".txt")
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.warning("Could not read prompt %s: %s", path, e)
    return default


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from model output, tolerant of ``` fences and chatter."""
    if not text:
        return None
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("` \n")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except ValueError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(cleaned[start: end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


class OpenAIChatModel:
    """Thin wrapper over the OpenAI chat completions API.

    Used three ways: strict-JSON classification, tool-calling turns for the
    agent loop, and image description for product identification.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        vision_model: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.vision_model = vision_model or model
        if client is not None:
            self.client = client
        elif base_url:
            self.client = OpenAI(api_key=api_key, base_url=base_url)
        else:
            self.client = OpenAI(api_key=api_key)

    def complete_json(self, system: str, user: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=0,
                response_format={"type": "json_object"},
            )
            text = resp.choices[0].message.content if resp and resp.choices else ""
        except Exception as e:
            logger.warning("JSON completion failed: %s", e)
            return None
        return extract_json(text)

    def step(self, system: str, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> ModelTurn:
        """One tool-calling round. Raises whatever the SDK raises."""
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}] + list(messages),
            tools=tools,
            tool_choice="auto",
            temperature=0.2,
        )
        message = resp.choices[0].message
        calls: List[ToolCall] = []
        for tc in message.tool_calls or []:
            raw_args = tc.function.arguments or "{}"
            try:
                args = json.loads(raw_args)
            except ValueError:
                args = {"_raw": raw_args}
            calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=args if isinstance(args, dict) else {}))
        return ModelTurn(text=message.content, tool_calls=calls)

    def describe_image(self, system: str, prompt: str, image_bytes: bytes, mime_type: str = "image/jpeg") -> Optional[Dict[str, Any]]:
        img_b64 = base64.b64encode(image_bytes).decode("utf-8")
        try:
            resp = self.client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {"role": "system", "content": system},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{img_b64}"}},
                        ],
                    },
                ],
                temperature=0,
            )
            text = resp.choices[0].message.content if resp and resp.choices else ""
        except Exception as e:
            logger.warning("Vision request failed: %s", e)
            return None
        return extract_json(text)


def image_content(text: str, image_bytes: bytes, mime_type: str = "image/jpeg") -> List[Dict[str, Any]]:
    """User-turn content with an attached image, in chat-completions format."""
    img_b64 = base64.b64encode(image_bytes).decode("utf-8")
    return [
        {"type": "text", "text": text or "Identifica este producto."},
        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{img_b64}"}},
    ]
